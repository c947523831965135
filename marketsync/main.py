from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy import text

from marketsync.api.v1.router import api_router
from marketsync.core.config import get_settings
from marketsync.core.db import SessionLocal, engine
from marketsync.core.security import require_basic_auth
from marketsync.services.runtime import build_engines
from marketsync.services.scheduler import order_status_monitor_loop, order_sync_loop, stock_sync_sweep_loop


logger = logging.getLogger(__name__)

_BACKGROUND_TASKS = ("order_sync_task", "order_status_task", "stock_sync_sweep_task")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Marketsync",
        version="1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.engines = build_engines(session_factory=SessionLocal, settings=settings)

    if settings.cors_origin_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origin_list,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/healthz/deep")
    async def deep_healthz() -> JSONResponse:
        payload: dict[str, Any] = {"status": "ok", "checks": {"database": "ok"}}
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as exc:
            payload["status"] = "error"
            payload["checks"]["database"] = "error"
            payload["error"] = f"{exc.__class__.__name__}: {exc}"
            return JSONResponse(status_code=503, content=payload)
        return JSONResponse(status_code=200, content=payload)

    @app.get("/openapi.json", include_in_schema=False, dependencies=[Depends(require_basic_auth)])
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/docs", include_in_schema=False, dependencies=[Depends(require_basic_auth)])
    async def swagger_ui_html():
        return get_swagger_ui_html(openapi_url="/openapi.json", title=app.title)

    @app.on_event("startup")
    async def startup() -> None:
        engines = app.state.engines
        if settings.order_sync_enabled:
            app.state.order_sync_task = asyncio.create_task(order_sync_loop(settings, engines.orders))
            app.state.order_status_task = asyncio.create_task(order_status_monitor_loop(settings, engines.orders))
        if settings.stock_sync_sweep_enabled:
            app.state.stock_sync_sweep_task = asyncio.create_task(stock_sync_sweep_loop(settings, engines.stock_sync))
        logger.info("Marketsync started")

    @app.on_event("shutdown")
    async def shutdown() -> None:
        for name in _BACKGROUND_TASKS:
            task = getattr(app.state, name, None)
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    app.include_router(api_router, prefix="/api/v1")
    return app


app = create_app()
