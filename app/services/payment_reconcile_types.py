# app/services/payment_reconcile_types.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import StrEnum
from typing import Any, Dict, List, Optional

from app.adapters.paystack import ProviderTransaction
from app.models.enums import PaymentStatus


class ReconcileMode(StrEnum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class ReconcileOptions:
    """
    单次对账参数。

    only_unconfirmed 仅作为预设标签保留，不影响选单：选单本来就只取
    非终态（PENDING / PROCESSING）订单。
    """

    mode: ReconcileMode = ReconcileMode.SCHEDULED
    time_range_hours: int = 24
    batch_size: int = 50
    only_unconfirmed: bool = False
    batch_delay_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.time_range_hours <= 0:
            raise ValueError(f"time_range_hours must be positive, got {self.time_range_hours}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.batch_delay_seconds < 0:
            raise ValueError("batch_delay_seconds must be >= 0")

    def with_overrides(self, **kw: Any) -> "ReconcileOptions":
        return replace(self, **{k: v for k, v in kw.items() if v is not None})


# 调度预设：高频只看未确认的近 4 小时，日常看 24 小时，每日全面扫一周
PRESETS: Dict[str, ReconcileOptions] = {
    "frequent": ReconcileOptions(
        mode=ReconcileMode.SCHEDULED, time_range_hours=4, batch_size=30, only_unconfirmed=True
    ),
    "regular": ReconcileOptions(mode=ReconcileMode.SCHEDULED, time_range_hours=24, batch_size=50),
    "comprehensive": ReconcileOptions(
        mode=ReconcileMode.SCHEDULED, time_range_hours=168, batch_size=100
    ),
    "manual": ReconcileOptions(
        mode=ReconcileMode.MANUAL, time_range_hours=4, batch_size=50, only_unconfirmed=True
    ),
    "emergency": ReconcileOptions(
        mode=ReconcileMode.EMERGENCY, time_range_hours=1, batch_size=20, batch_delay_seconds=0.0
    ),
}


def preset(name: str) -> ReconcileOptions:
    try:
        return PRESETS[name]
    except KeyError:
        raise ValueError(f"unknown reconcile preset: {name!r}") from None


@dataclass(frozen=True)
class OrderSnapshot:
    """选单时读出的订单快照；修正用条件 UPDATE，不依赖 ORM 对象状态。"""

    id: int
    order_number: str
    payment_status: PaymentStatus
    payment_reference: Optional[str]
    total: Decimal
    currency: str
    customer_email: Optional[str]
    customer_name: Optional[str]
    user_id: Optional[int]


@dataclass(frozen=True)
class VerificationResult:
    strategy: str
    transaction: ProviderTransaction

    @property
    def by_metadata(self) -> bool:
        return self.strategy == "metadata_search"


@dataclass
class PaymentDiscrepancy:
    order_id: int
    order_number: str
    database_status: PaymentStatus
    paystack_status: PaymentStatus
    amount: Decimal
    payment_reference: Optional[str]
    reason: str
    found_reference: Optional[str] = None
    strategy: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "database_status": str(self.database_status),
            "paystack_status": str(self.paystack_status),
            "amount": str(self.amount),
            "payment_reference": self.payment_reference,
            "found_reference": self.found_reference,
            "strategy": self.strategy,
            "reason": self.reason,
        }


@dataclass
class ReconcileSummary:
    mode: ReconcileMode = ReconcileMode.SCHEDULED
    total_processed: int = 0
    discrepancies_found: int = 0
    successful_updates: int = 0
    failed_updates: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    discrepancies: List[PaymentDiscrepancy] = field(default_factory=list)
    duration_seconds: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "mode": str(self.mode),
            "total_processed": self.total_processed,
            "discrepancies_found": self.discrepancies_found,
            "successful_updates": self.successful_updates,
            "failed_updates": self.failed_updates,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "duration_seconds": round(self.duration_seconds, 3),
        }
