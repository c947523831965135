from __future__ import annotations

import hashlib
import hmac
import time
from datetime import datetime
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


class ShopeeAdapter(MarketplaceAdapter):
    """Shopee Open Platform v2: HMAC-SHA256 signed headers, offset paging plus a detail fetch."""

    marketplace = MarketplaceCode.SHOPEE
    required_credentials = ("partner_id", "partner_key", "access_token", "shop_id")

    def sign_request(self, method: str, path: str, params: dict[str, Any]) -> tuple[dict[str, str], dict[str, Any]]:
        timestamp = str(int(time.time()))
        partner_id = str(self.credentials["partner_id"])
        shop_id = str(self.credentials["shop_id"])
        access_token = str(self.credentials["access_token"])
        base_string = f"{partner_id}{path}{timestamp}{access_token}{shop_id}"
        signature = hmac.new(
            str(self.credentials["partner_key"]).encode("utf-8"),
            base_string.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "X-Shopee-Partner-Id": partner_id,
            "X-Shopee-Shop-Id": shop_id,
            "X-Shopee-Timestamp": timestamp,
            "X-Shopee-Signature": signature,
        }
        return headers, params

    async def _checked(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        payload = await self.request(method, path, **kwargs)
        if payload.get("error"):
            raise self._error(
                f"SHOPEE {path} failed: {payload.get('message') or payload['error']}",
                code=str(payload["error"]),
            )
        return payload

    async def get_profile(self) -> dict[str, Any]:
        return await self._checked("GET", "/api/v2/shop/get_shop_info")

    async def _order_details(self, order_sns: list[str]) -> list[dict[str, Any]]:
        payload = await self._checked(
            "GET",
            "/api/v2/order/get_order_detail",
            params={"order_sn_list": ",".join(order_sns)},
        )
        rows = (payload.get("response") or {}).get("order_list") or []
        return [r for r in rows if isinstance(r, dict)]

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
            "page_size": limit,
            "order_status": status,
            "time_from": int(date_from.timestamp()) if date_from else None,
            "time_to": int(date_to.timestamp()) if date_to else None,
        }
        payload = await self._checked("GET", "/api/v2/order/get_order_list", params=params)
        response = payload.get("response") or {}
        listed = [o for o in response.get("order_list") or [] if isinstance(o, dict) and o.get("order_sn")]
        if not listed:
            return OrdersPage(data=[], has_more=False, total=to_int(response.get("total_count")))

        details = await self._order_details([str(o["order_sn"]) for o in listed])
        has_more = response.get("more")
        return OrdersPage(
            data=[self.to_raw_order(d) for d in details],
            has_more=bool(has_more) if has_more is not None else len(listed) == limit,
            total=to_int(response.get("total_count")),
        )

    async def get_order(self, external_order_id: str) -> RawOrder:
        details = await self._order_details([external_order_id])
        if not details:
            raise self._error(f"SHOPEE order not found: {external_order_id}", status_code=404)
        return self.to_raw_order(details[0])

    async def update_stock(
        self,
        external_product_id: str,
        quantity: int,
        external_variant_id: str | None = None,
    ) -> StockUpdateResult:
        body = {
            "item_id": to_int(external_product_id),
            # model_id 0 addresses an item without variants.
            "stock_list": [{"model_id": to_int(external_variant_id), "normal_stock": int(quantity)}],
        }
        payload = await self._checked("POST", "/api/v2/product/update_stock", json=body)
        return StockUpdateResult(
            success=True,
            external_product_id=external_product_id,
            external_variant_id=external_variant_id,
            quantity=int(quantity),
            raw=payload.get("response") or {},
        )

    def normalize_order(self, order: dict[str, Any]) -> RawOrder:
        address = order.get("recipient_address") or {}
        items: list[RawOrderItem] = []
        for item in order.get("item_list") or []:
            qty = to_int(item.get("model_quantity_purchased"), 1)
            price = to_decimal(item.get("model_discounted_price") or item.get("model_original_price"))
            items.append(
                RawOrderItem(
                    sku=optional_str(item.get("model_sku") or item.get("item_sku")),
                    name=optional_str(item.get("item_name")),
                    variant_name=optional_str(item.get("model_name")),
                    external_product_id=optional_str(item.get("item_id")),
                    external_variant_id=optional_str(item.get("model_id")),
                    quantity=qty,
                    unit_price=price,
                    total_price=price * qty,
                    raw=item,
                )
            )
        return RawOrder(
            external_order_id=str(order.get("order_sn") or ""),
            status=optional_str(order.get("order_status")),
            total_amount=to_decimal(order.get("total_amount")),
            shipping_cost=to_decimal(order.get("estimated_shipping_fee")),
            order_date=parse_datetime(order.get("create_time")),
            customer_info={"name": address.get("name"), "phone": address.get("phone"), "email": None},
            shipping_address=address or None,
            notes=optional_str(order.get("message_to_seller")),
            items=items,
            raw=order,
        )
