from __future__ import annotations

import hashlib
import hmac
import time
from datetime import UTC, datetime
from typing import Any

from marketsync.core.enums import MarketplaceCode
from marketsync.integrations.base import (
    MarketplaceAdapter,
    optional_str,
    parse_datetime,
    to_decimal,
    to_int,
)
from marketsync.schemas.marketplace import OrdersPage, RawOrder, RawOrderItem, StockUpdateResult


def _full_name(first: Any, last: Any) -> str | None:
    name = " ".join(str(p).strip() for p in (first, last) if p)
    return name or None


def sign_lazada(path: str, params: dict[str, Any], secret: str) -> str:
    """Lazada open API signature: HMAC-SHA256 over path + sorted key/value pairs, upper hex."""
    concatenated = "".join(f"{k}{params[k]}" for k in sorted(params))
    return hmac.new(
        secret.encode("utf-8"),
        f"{path}{concatenated}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest().upper()


class LazadaAdapter(MarketplaceAdapter):
    marketplace = MarketplaceCode.LAZADA
    required_credentials = ("app_key", "app_secret", "access_token")

    def sign_request(self, method: str, path: str, params: dict[str, Any]) -> tuple[dict[str, str], dict[str, Any]]:
        signed: dict[str, Any] = {
            "app_key": str(self.credentials["app_key"]),
            "timestamp": str(int(time.time() * 1000)),
            "sign_method": "sha256",
            "access_token": str(self.credentials["access_token"]),
            **params,
        }
        signed["sign"] = sign_lazada(path, signed, str(self.credentials["app_secret"]))
        return {"Content-Type": "application/json"}, signed

    async def _checked(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        payload = await self.request(method, path, **kwargs)
        code = str(payload.get("code", "0"))
        if code != "0":
            raise self._error(f"LAZADA {path} failed: {payload.get('message') or code}", code=code)
        return payload

    async def get_profile(self) -> dict[str, Any]:
        return await self._checked("GET", "/seller/get")

    async def get_orders(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        status: str | None = None,
    ) -> OrdersPage:
        params: dict[str, Any] = {
            "offset": (max(1, page) - 1) * limit,
            "limit": limit,
            "status": status,
            "sort_direction": "DESC",
            "sort_by": "created_at",
            "created_after": date_from.astimezone(UTC).isoformat() if date_from else None,
            "created_before": date_to.astimezone(UTC).isoformat() if date_to else None,
        }
        payload = await self._checked("GET", "/orders/get", params=params)
        data = payload.get("data") or {}
        orders = [o for o in data.get("orders") or [] if isinstance(o, dict)]
        return OrdersPage(
            data=[self.to_raw_order(o) for o in orders],
            has_more=len(orders) == limit,
            total=to_int(data.get("count")),
        )

    async def get_order(self, external_order_id: str) -> RawOrder:
        payload = await self._checked("GET", "/order/get", params={"order_id": external_order_id})
        data = payload.get("data")
        if not isinstance(data, dict) or not data:
            raise self._error(f"LAZADA order not found: {external_order_id}", status_code=404)
        return self.to_raw_order(data)

    async def _first_sku_id(self, external_product_id: str) -> int:
        payload = await self._checked("GET", "/product/item/get", params={"item_id": external_product_id})
        skus = (payload.get("data") or {}).get("skus") or []
        if not skus:
            raise self._error(f"LAZADA product {external_product_id} has no SKUs")
        return to_int(skus[0].get("SkuId") or skus[0].get("sku_id"))

    async def update_stock(
        self,
        external_product_id: str,
        quantity: int,
        external_variant_id: str | None = None,
    ) -> StockUpdateResult:
        sku_id = to_int(external_variant_id) if external_variant_id else await self._first_sku_id(external_product_id)
        body = {
            "Request": {
                "item_id": to_int(external_product_id),
                "skus": [{"sku_id": sku_id, "quantity": int(quantity)}],
            }
        }
        payload = await self._checked("POST", "/product/price_quantity/update", json=body)
        data = payload.get("data")
        return StockUpdateResult(
            success=True,
            external_product_id=external_product_id,
            external_variant_id=external_variant_id,
            quantity=int(quantity),
            raw=data if isinstance(data, dict) else {},
        )

    def normalize_order(self, order: dict[str, Any]) -> RawOrder:
        shipping = order.get("address_shipping") or {}
        billing = order.get("address_billing") or {}
        statuses = order.get("statuses") or []
        items: list[RawOrderItem] = []
        for item in order.get("order_items") or []:
            qty = to_int(item.get("quantity"), 1)
            price = to_decimal(item.get("item_price"))
            items.append(
                RawOrderItem(
                    sku=optional_str(item.get("sku")),
                    name=optional_str(item.get("name")),
                    variant_name=optional_str(item.get("variation")),
                    external_product_id=optional_str(item.get("product_id")),
                    external_variant_id=optional_str(item.get("sku_id")),
                    quantity=qty,
                    unit_price=price,
                    total_price=price * qty,
                    raw=item,
                )
            )
        return RawOrder(
            external_order_id=str(order.get("order_number") or order.get("order_id") or ""),
            status=optional_str(statuses[0]) if statuses else None,
            total_amount=to_decimal(order.get("price")),
            shipping_cost=to_decimal(order.get("shipping_fee")),
            order_date=parse_datetime(order.get("created_at")),
            customer_info={
                "name": _full_name(order.get("customer_first_name"), order.get("customer_last_name")),
                "phone": billing.get("phone"),
                "email": None,
            },
            shipping_address={
                "name": _full_name(shipping.get("first_name"), shipping.get("last_name")),
                "phone": shipping.get("phone"),
                "address": shipping.get("address1"),
                "city": shipping.get("city"),
                "province": shipping.get("region"),
                "postal_code": shipping.get("post_code"),
                "country": shipping.get("country"),
            },
            items=items,
            raw=order,
        )
