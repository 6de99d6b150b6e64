# app/adapters/paystack.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

import httpx

from app.services.errors import PaymentProviderError

log = logging.getLogger(__name__)

PAYSTACK_BASE_URL = "https://api.paystack.co"

# metadata 里订单号可能出现的键（前端 / 老版本结账写法不统一）
_ORDER_NUMBER_KEYS = ("order_number", "orderNumber")


@dataclass
class ProviderTransaction:
    """Paystack 交易快照（只保留对账需要的字段，amount 单位为 kobo）"""

    reference: str
    status: str
    amount: int = 0
    currency: str = "NGN"
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def amount_major(self) -> float:
        return self.amount / 100


class PaymentProvider(Protocol):
    """
    支付渠道核实接口

    - 找不到交易返回 None（不是错误）；
    - 网络 / 5xx / 响应不可解析抛 PaymentProviderError。
    """

    async def verify_by_reference(self, reference: str) -> Optional[ProviderTransaction]: ...

    async def find_by_order_number(self, order_number: str) -> Optional[ProviderTransaction]: ...


def _to_transaction(data: Dict[str, Any]) -> ProviderTransaction:
    meta = data.get("metadata")
    if not isinstance(meta, dict):
        meta = {}
    return ProviderTransaction(
        reference=str(data.get("reference") or ""),
        status=str(data.get("status") or ""),
        amount=int(data.get("amount") or 0),
        currency=str(data.get("currency") or "NGN"),
        metadata=meta,
        raw=data,
    )


def metadata_matches(metadata: Dict[str, Any], order_number: str) -> bool:
    """metadata.order_number / orderNumber / custom_fields[*].value 任一命中即算。"""
    if not metadata:
        return False
    for key in _ORDER_NUMBER_KEYS:
        if str(metadata.get(key) or "") == order_number:
            return True
    for cf in metadata.get("custom_fields") or []:
        if not isinstance(cf, dict):
            continue
        name = str(cf.get("variable_name") or cf.get("display_name") or "").lower()
        if name.replace(" ", "_") in ("order_number", "ordernumber") and str(
            cf.get("value") or ""
        ) == order_number:
            return True
    return False


def _is_status_false(resp: httpx.Response) -> bool:
    try:
        body = resp.json()
    except ValueError:
        return False
    return isinstance(body, dict) and body.get("status") is False


class PaystackClient:
    """
    Paystack REST 客户端（httpx.AsyncClient）

        client = PaystackClient(secret_key=settings.PAYSTACK_SECRET_KEY)
        await client.start()
        tx = await client.verify_by_reference("ref_123")
        await client.close()

    transport 参数留给测试注入 httpx.MockTransport。
    """

    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str = PAYSTACK_BASE_URL,
        timeout: float = 30.0,
        search_page_size: int = 100,
        search_max_pages: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not secret_key:
            raise ValueError("PAYSTACK_SECRET_KEY is required")
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout = float(timeout)
        self._page_size = int(search_page_size)
        self._max_pages = int(search_max_pages)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ---------- 生命周期 ----------

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={
                "Authorization": f"Bearer {self._secret_key}",
                "Content-Type": "application/json",
            },
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "PaystackClient":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ---------- 对外接口 ----------

    async def verify_by_reference(self, reference: str) -> Optional[ProviderTransaction]:
        """GET /transaction/verify/{reference}；404 / status=false 视为不存在。"""
        if not reference:
            return None
        body = await self._get(
            f"/transaction/verify/{quote(reference, safe='')}", reference=reference
        )
        if body is None or not body.get("status"):
            return None
        data = body.get("data")
        if not isinstance(data, dict):
            return None
        return _to_transaction(data)

    async def find_by_order_number(self, order_number: str) -> Optional[ProviderTransaction]:
        """
        翻 GET /transaction 列表，按 metadata 匹配订单号。

        Paystack 没有按 metadata 查询的接口，只能分页扫最近的交易；
        最多扫 search_max_pages 页，命中第一条即返回。
        """
        if not order_number:
            return None
        for page in range(1, self._max_pages + 1):
            body = await self._get(
                "/transaction",
                params={"perPage": self._page_size, "page": page},
                reference=order_number,
            )
            if body is None or not body.get("status"):
                return None
            rows: List[Dict[str, Any]] = [r for r in body.get("data") or [] if isinstance(r, dict)]
            for row in rows:
                meta = row.get("metadata")
                if isinstance(meta, dict) and metadata_matches(meta, order_number):
                    return _to_transaction(row)
            if len(rows) < self._page_size:
                break
        return None

    # ---------- 内部 ----------

    async def _get(
        self,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        if self._client is None:
            raise RuntimeError("PaystackClient.start() has not been called")
        try:
            resp = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise PaymentProviderError(
                f"paystack request failed: {path}: {e}", reference=reference
            ) from e

        if resp.status_code == 404:
            return None
        # 未知 reference 时 Paystack 回 400 + {"status": false}，按“不存在”处理
        if resp.status_code == 400 and _is_status_false(resp):
            return None
        if resp.status_code >= 400:
            raise PaymentProviderError(
                f"paystack http error: {path}",
                reference=reference,
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as e:
            raise PaymentProviderError(
                f"paystack returned invalid json: {path}",
                reference=reference,
                status_code=resp.status_code,
            ) from e
        if not isinstance(body, dict):
            raise PaymentProviderError(
                f"paystack returned unexpected body: {path}",
                reference=reference,
                status_code=resp.status_code,
            )
        return body
