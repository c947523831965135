from __future__ import annotations

import httpx

from marketsync.core.config import Settings, get_settings
from marketsync.core.enums import MarketplaceCode
from marketsync.core.errors import ValidationError
from marketsync.integrations.base import MarketplaceAdapter
from marketsync.integrations.lazada import LazadaAdapter
from marketsync.integrations.shopee import ShopeeAdapter
from marketsync.integrations.tokopedia import TokopediaAdapter
from marketsync.models.marketplace_account import MarketplaceAccount


ADAPTERS: dict[MarketplaceCode, type[MarketplaceAdapter]] = {
    MarketplaceCode.SHOPEE: ShopeeAdapter,
    MarketplaceCode.TOKOPEDIA: TokopediaAdapter,
    MarketplaceCode.LAZADA: LazadaAdapter,
}


def _base_url(code: MarketplaceCode, settings: Settings) -> str:
    return {
        MarketplaceCode.SHOPEE: settings.shopee_base_url,
        MarketplaceCode.TOKOPEDIA: settings.tokopedia_base_url,
        MarketplaceCode.LAZADA: settings.lazada_base_url,
    }[code]


def create_adapter(
    account: MarketplaceAccount,
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> MarketplaceAdapter:
    settings = settings or get_settings()
    try:
        code = MarketplaceCode(str(account.marketplace).upper())
    except ValueError as e:
        raise ValidationError(f"Marketplace integration not implemented: {account.marketplace}") from e
    adapter_cls = ADAPTERS.get(code)
    if adapter_cls is None:
        raise ValidationError(f"Marketplace integration not implemented: {code}")

    return adapter_cls(
        credentials=account.credentials,
        base_url=_base_url(code, settings),
        timeout_seconds=settings.marketplace_http_timeout_seconds,
        shop_id=account.shop_id,
        transport=transport,
    )
