# app/services/notification_dispatcher.py
from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

log = logging.getLogger(__name__)


class NotificationKind:
    """通知模板名（与邮件 / 短信模板一一对应）"""

    PAYMENT_CONFIRMATION = "payment-confirmation"
    PAYMENT_FAILED = "payment-failed"
    ORDER_CANCELLED = "order-cancelled"
    ADMIN_ORDER_UPDATE = "admin-order-update"
    ADMIN_RECONCILIATION_REPORT = "admin-reconciliation-report"
    LOW_STOCK = "low-stock"
    OUT_OF_STOCK = "out-of-stock"


class NotificationDispatcher(Protocol):
    async def notify(self, kind: str, recipient: str, template_data: Dict[str, Any]) -> None: ...


class LoggingNotificationDispatcher:
    """默认实现：只落日志。真实的邮件 / 短信队列在核心之外实现同一协议。"""

    async def notify(self, kind: str, recipient: str, template_data: Dict[str, Any]) -> None:
        log.info("notify kind=%s recipient=%s data=%s", kind, recipient, template_data)


async def dispatch_safely(
    dispatcher: NotificationDispatcher,
    kind: str,
    recipient: str,
    template_data: Dict[str, Any],
) -> bool:
    """
    fire-and-forget：通知失败只记日志，绝不向调用方抛出。

    返回是否投递成功（便于测试 / 统计）。
    """
    try:
        await dispatcher.notify(kind, recipient, template_data)
        return True
    except Exception:
        log.exception("notification failed: kind=%s recipient=%s", kind, recipient)
        return False
