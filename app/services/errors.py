# app/services/errors.py
from __future__ import annotations

from typing import Optional


class InsufficientStockError(Exception):
    """可售不足 / 出库会把在手数量打成负数（结账边界直接失败）"""

    def __init__(self, product_id: int, requested: int, available: int) -> None:
        self.product_id = int(product_id)
        self.requested = int(requested)
        self.available = int(available)
        super().__init__(
            f"insufficient stock: product_id={self.product_id} "
            f"requested={self.requested} available={self.available}"
        )


class ProductNotFoundError(Exception):
    """商品不存在"""

    def __init__(self, product_id: int) -> None:
        self.product_id = int(product_id)
        super().__init__(f"product not found: id={self.product_id}")


class PaymentProviderError(Exception):
    """支付渠道调用失败（网络 / 5xx / 响应不可解析），由单个核实策略吞掉"""

    def __init__(
        self,
        message: str,
        *,
        reference: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.reference = reference
        self.status_code = status_code
        super().__init__(f"{message} (reference={reference} status_code={status_code})")


class ReconciliationRunError(Exception):
    """对账整轮失败（选单 / 批次准备阶段），本轮中止，等下一次调度重试"""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"reconciliation aborted at stage={stage}: {cause!r}")
