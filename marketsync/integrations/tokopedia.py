from __future__ import annotations

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


class TokopediaAdapter(MarketplaceAdapter):
    marketplace = MarketplaceCode.TOKOPEDIA
    required_credentials = ("fs_id", "client_id", "access_token")

    @property
    def fs_id(self) -> str:
        return str(self.credentials["fs_id"])

    def sign_request(self, method: str, path: str, params: dict[str, Any]) -> tuple[dict[str, str], dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {self.credentials['access_token']}",
            "Content-Type": "application/json",
            "X-Tkpd-Client-Id": str(self.credentials["client_id"]),
        }
        return headers, params

    async def get_profile(self) -> dict[str, Any]:
        return await self.request("GET", f"/v1/shop/{self.fs_id}/info")

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
            "page": max(1, page),
            "per_page": limit,
            "status": status,
            "from_date": date_from.date().isoformat() if date_from else None,
            "to_date": date_to.date().isoformat() if date_to else None,
        }
        payload = await self.request("GET", "/v2/order/list", params=params)
        orders = [o for o in payload.get("data") or [] if isinstance(o, dict)]
        meta = payload.get("meta") or {}
        return OrdersPage(
            data=[self.to_raw_order(o) for o in orders],
            has_more=len(orders) == limit,
            total=to_int(meta.get("total_data")),
        )

    async def get_order(self, external_order_id: str) -> RawOrder:
        payload = await self.request(
            "GET",
            f"/v2/fs/{self.fs_id}/order",
            params={"invoice_num": external_order_id},
        )
        data = payload.get("data")
        if isinstance(data, dict):
            data = [data]
        orders = [o for o in data or [] if isinstance(o, dict)]
        if not orders:
            raise self._error(f"TOKOPEDIA order not found: {external_order_id}", status_code=404)
        return self.to_raw_order(orders[0])

    async def update_stock(
        self,
        external_product_id: str,
        quantity: int,
        external_variant_id: str | None = None,
    ) -> StockUpdateResult:
        product: dict[str, Any] = {"product_id": to_int(external_product_id), "stock": int(quantity)}
        if external_variant_id:
            product["variant_id"] = to_int(external_variant_id)
        payload = await self.request(
            "POST",
            f"/inventory/v1/fs/{self.fs_id}/stock",
            json={"products": [product]},
        )
        header = payload.get("header") or {}
        if str(header.get("error_code", "")) != "0":
            raise self._error(
                f"TOKOPEDIA stock update failed: {header.get('reason') or 'unknown error'}",
                code=optional_str(header.get("error_code")),
            )
        data = payload.get("data")
        return StockUpdateResult(
            success=True,
            external_product_id=external_product_id,
            external_variant_id=external_variant_id,
            quantity=int(quantity),
            raw=data if isinstance(data, dict) else {},
        )

    def normalize_order(self, order: dict[str, Any]) -> RawOrder:
        amt = order.get("amt") or {}
        buyer = order.get("buyer") or {}
        recipient = order.get("recipient") or {}
        items = [
            RawOrderItem(
                sku=optional_str(p.get("sku")),
                name=optional_str(p.get("name")),
                external_product_id=optional_str(p.get("id")),
                external_variant_id=optional_str(p.get("variant_id")),
                quantity=to_int(p.get("quantity"), 1),
                unit_price=to_decimal(p.get("price")),
                total_price=to_decimal(p.get("total_price")) if p.get("total_price") is not None else None,
                raw=p,
            )
            for p in order.get("products") or []
            if isinstance(p, dict)
        ]
        return RawOrder(
            external_order_id=str(order.get("invoice_number") or ""),
            status=optional_str(order.get("order_status")),
            total_amount=to_decimal(amt.get("total")),
            shipping_cost=to_decimal(amt.get("shipping_cost")),
            order_date=parse_datetime(order.get("create_time")),
            customer_info={"name": buyer.get("name"), "phone": buyer.get("phone"), "email": buyer.get("email")},
            shipping_address={
                "name": recipient.get("name"),
                "phone": recipient.get("phone"),
                "address": recipient.get("address"),
                "city": recipient.get("city"),
                "province": recipient.get("province"),
                "postal_code": recipient.get("postal_code"),
            },
            items=items,
            raw=order,
        )
