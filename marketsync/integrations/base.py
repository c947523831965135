from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar

import httpx

from marketsync.core.enums import MarketplaceCode
from marketsync.core.errors import AdapterError, ValidationError
from marketsync.schemas.marketplace import OrdersPage, RawOrder, StockUpdateResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectionCheck:
    ok: bool
    message: str


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_datetime(value: Any) -> datetime | None:
    """Accept epoch seconds or ISO-8601 strings; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=UTC)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=UTC)
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable marketplace timestamp %r", value)
        return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


class MarketplaceAdapter(ABC):
    """
    One marketplace API behind the fixed capability set the engines rely on.

    Every HTTP failure (status, transport, timeout, undecodable body) leaves this
    class as `AdapterError`; nothing httpx-specific escapes to callers.
    """

    marketplace: ClassVar[MarketplaceCode]
    required_credentials: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        *,
        credentials: dict[str, Any] | None,
        base_url: str,
        timeout_seconds: float = 30.0,
        shop_id: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        creds = dict(credentials or {})
        if shop_id and "shop_id" not in creds:
            creds["shop_id"] = shop_id
        missing = [k for k in self.required_credentials if not creds.get(k)]
        if missing:
            raise ValidationError(f"{self.marketplace} account is missing credentials: {', '.join(missing)}")

        self.credentials = creds
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout=timeout_seconds)
        self._transport = transport

    # --- contract ---

    @abstractmethod
    async def get_orders(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        status: str | None = None,
    ) -> OrdersPage: ...

    @abstractmethod
    async def get_order(self, external_order_id: str) -> RawOrder: ...

    @abstractmethod
    async def update_stock(
        self,
        external_product_id: str,
        quantity: int,
        external_variant_id: str | None = None,
    ) -> StockUpdateResult: ...

    @abstractmethod
    async def get_profile(self) -> dict[str, Any]: ...

    @abstractmethod
    def normalize_order(self, order: dict[str, Any]) -> RawOrder: ...

    def to_raw_order(self, order: dict[str, Any]) -> RawOrder:
        """`normalize_order`, with a malformed upstream record surfaced as `AdapterError`."""
        try:
            return self.normalize_order(order)
        except (ValueError, TypeError, AttributeError) as e:
            ref = order.get("order_sn") or order.get("order_id") or order.get("invoice_ref_num") or "?"
            raise self._error(
                f"{self.marketplace} returned a malformed order record ({ref}): {e}",
                code="malformed_order",
            ) from e

    async def test_connection(self) -> ConnectionCheck:
        try:
            await self.get_profile()
        except AdapterError as e:
            return ConnectionCheck(ok=False, message=str(e))
        return ConnectionCheck(ok=True, message="Connection successful")

    # --- transport ---

    def sign_request(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
    ) -> tuple[dict[str, str], dict[str, Any]]:
        """Return (headers, params) for one request. Subclasses add auth here."""
        return {"Content-Type": "application/json"}, params

    def _error(self, message: str, *, status_code: int | None = None, code: str | None = None) -> AdapterError:
        return AdapterError(message, marketplace=self.marketplace.value, status_code=status_code, code=code)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        headers, query = self.sign_request(method, path, query)
        url = f"{self.base_url}{path}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.request(method, url, params=query, json=json, headers=headers)
                r.raise_for_status()
        except httpx.TimeoutException as e:
            raise self._error(f"{self.marketplace} request timed out: {method} {path}") from e
        except httpx.HTTPStatusError as e:
            code = None
            message = e.response.text[:500]
            try:
                body = e.response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                code = optional_str(body.get("code") or body.get("error"))
                message = str(body.get("message") or message)
            raise self._error(
                f"{self.marketplace} request failed: {method} {path}: {message}",
                status_code=e.response.status_code,
                code=code,
            ) from e
        except httpx.TransportError as e:
            raise self._error(f"{self.marketplace} transport error: {method} {path}: {e}") from e

        try:
            payload = r.json()
        except ValueError as e:
            raise self._error(f"{self.marketplace} returned a non-JSON body for {path}", status_code=r.status_code) from e
        if not isinstance(payload, dict):
            raise self._error(f"{self.marketplace} returned an unexpected body for {path}", status_code=r.status_code)
        return payload
