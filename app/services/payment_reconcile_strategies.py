# app/services/payment_reconcile_strategies.py
from __future__ import annotations

import logging
from typing import List, Optional, Protocol, Sequence

from app.adapters.paystack import PaymentProvider, ProviderTransaction
from app.services.errors import PaymentProviderError
from app.services.payment_reconcile_types import OrderSnapshot, VerificationResult

log = logging.getLogger(__name__)


class VerificationStrategy(Protocol):
    name: str

    async def lookup(
        self, provider: PaymentProvider, order: OrderSnapshot
    ) -> Optional[ProviderTransaction]: ...


class StoredReferenceStrategy:
    """订单上已记录的 payment_reference 直接 verify"""

    name = "stored_reference"

    async def lookup(
        self, provider: PaymentProvider, order: OrderSnapshot
    ) -> Optional[ProviderTransaction]:
        if not order.payment_reference:
            return None
        return await provider.verify_by_reference(order.payment_reference)


class MetadataSearchStrategy:
    """在 Paystack 交易 metadata 里按订单号查找（reference 缺失 / 写错时）"""

    name = "metadata_search"

    async def lookup(
        self, provider: PaymentProvider, order: OrderSnapshot
    ) -> Optional[ProviderTransaction]:
        return await provider.find_by_order_number(order.order_number)


class OrderNumberAsReferenceStrategy:
    """兜底：部分老订单结账时直接拿订单号当 reference"""

    name = "order_number_reference"

    async def lookup(
        self, provider: PaymentProvider, order: OrderSnapshot
    ) -> Optional[ProviderTransaction]:
        if order.payment_reference == order.order_number:
            return None
        return await provider.verify_by_reference(order.order_number)


def default_strategies() -> List[VerificationStrategy]:
    return [
        StoredReferenceStrategy(),
        MetadataSearchStrategy(),
        OrderNumberAsReferenceStrategy(),
    ]


async def verify_order(
    provider: PaymentProvider,
    order: OrderSnapshot,
    strategies: Sequence[VerificationStrategy],
) -> Optional[VerificationResult]:
    """
    按顺序尝试核实策略，第一个拿到交易的胜出。

    单个策略的 PaymentProviderError 只记日志、按“没找到”处理，继续下一个；
    全部落空返回 None（无证据 = 不动）。
    """
    for s in strategies:
        try:
            tx = await s.lookup(provider, order)
        except PaymentProviderError as e:
            log.warning(
                "[RECONCILIATION] strategy failed: strategy=%s order_id=%s order_number=%s err=%s",
                s.name,
                order.id,
                order.order_number,
                e,
            )
            continue
        if tx is not None:
            log.info(
                "[RECONCILIATION] transaction found: strategy=%s order_id=%s reference=%s status=%s",
                s.name,
                order.id,
                tx.reference,
                tx.status,
            )
            return VerificationResult(strategy=s.name, transaction=tx)
    return None
