# app/services/payment_status.py
from __future__ import annotations

from typing import Optional, Union

from app.models.enums import OrderStatus, PaymentStatus

NON_TERMINAL: frozenset[PaymentStatus] = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PROCESSING}
)
TERMINAL: frozenset[PaymentStatus] = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
)

# Paystack transaction.status → 内部支付状态
_PROVIDER_STATUS_MAP = {
    "success": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "abandoned": PaymentStatus.CANCELLED,
    "pending": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
}


def _coerce(status: Union[PaymentStatus, str]) -> PaymentStatus:
    return PaymentStatus(str(status).upper())


def is_terminal(status: Union[PaymentStatus, str]) -> bool:
    return _coerce(status) in TERMINAL


def can_transition(old: Union[PaymentStatus, str], new: Union[PaymentStatus, str]) -> bool:
    """
    支付状态只允许：非终态 → 终态（以及原地不动）。

    终态之间、终态回退到非终态、非终态之间互转，一律拒绝。
    """
    o, n = _coerce(old), _coerce(new)
    if o == n:
        return True
    return o in NON_TERMINAL and n in TERMINAL


def fulfillment_status_for(status: Union[PaymentStatus, str]) -> Optional[OrderStatus]:
    """支付终态推导履约状态；非终态不推导（返回 None）。"""
    s = _coerce(status)
    if s == PaymentStatus.COMPLETED:
        return OrderStatus.CONFIRMED
    if s in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
        return OrderStatus.CANCELLED
    return None


def map_provider_status(raw: Optional[str]) -> PaymentStatus:
    # 未知 / 空状态一律按 PENDING 处理：不构成可修正的证据
    key = (raw or "").strip().lower()
    return _PROVIDER_STATUS_MAP.get(key, PaymentStatus.PENDING)
