from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
from collections.abc import Awaitable, Callable
from datetime import timedelta

from sqlalchemy import text

from marketsync.core.config import Settings
from marketsync.models.base import utcnow
from marketsync.services.order_reconciliation import OrderReconciliationEngine
from marketsync.services.stock_sync import StockSyncEngine


logger = logging.getLogger(__name__)
SessionLocal = None


def _lock_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def _try_acquire_or_renew_lock(*, name: str, holder: str, ttl_seconds: int) -> bool:
    now = utcnow()
    expires = now + timedelta(seconds=max(30, int(ttl_seconds)))

    stmt = text(
        "INSERT INTO job_locks (name, locked_at, locked_by, expires_at) "
        "VALUES (:name, :locked_at, :locked_by, :expires_at) "
        "ON CONFLICT (name) DO UPDATE SET "
        "locked_at = excluded.locked_at, "
        "locked_by = excluded.locked_by, "
        "expires_at = excluded.expires_at "
        "WHERE job_locks.expires_at <= :locked_at OR job_locks.locked_by = :locked_by"
    )

    async with _get_session_local()() as session:
        async with session.begin():
            res = await session.execute(
                stmt,
                {
                    "name": name,
                    "locked_at": now,
                    "locked_by": holder,
                    "expires_at": expires,
                },
            )
            return bool(res.rowcount == 1)


def _get_session_local():
    global SessionLocal
    if SessionLocal is None:
        from marketsync.core.db import SessionLocal as _SessionLocal

        SessionLocal = _SessionLocal
    return SessionLocal


async def run_periodic_job(
    *,
    name: str,
    interval_seconds: int,
    job: Callable[[], Awaitable[object]],
    settings: Settings,
    enabled: Callable[[], bool] = lambda: True,
) -> None:
    """
    Run `job` every `interval_seconds` while holding the `job_locks` row `name`.

    Only one process runs a given job at a time. A failing tick is logged and
    followed by a backoff; cancellation stops the loop.
    """
    holder = _lock_holder_id()
    tick = max(10, int(interval_seconds))
    backoff = max(30, int(settings.scheduler_error_backoff_seconds))
    cooldown_until = utcnow()

    while True:
        try:
            if not enabled():
                await asyncio.sleep(tick)
                continue

            now = utcnow()
            if now < cooldown_until:
                wait_seconds = (cooldown_until - now).total_seconds()
                await asyncio.sleep(min(tick, max(1.0, wait_seconds)))
                continue

            acquired = await _try_acquire_or_renew_lock(
                name=name,
                holder=holder,
                ttl_seconds=max(settings.scheduler_lock_ttl_seconds, tick * 2),
            )
            if not acquired:
                await asyncio.sleep(tick)
                continue

            await job()

        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled job %s failed", name)
            cooldown_until = utcnow() + timedelta(seconds=backoff)

        await asyncio.sleep(tick + random.uniform(0, 3))


async def order_sync_loop(settings: Settings, engine: OrderReconciliationEngine) -> None:
    if not settings.order_sync_enabled:
        return
    await run_periodic_job(
        name="order_sync",
        interval_seconds=settings.order_sync_interval_seconds,
        job=engine.reconcile_all_accounts,
        settings=settings,
        enabled=lambda: settings.order_sync_enabled,
    )


async def order_status_monitor_loop(settings: Settings, engine: OrderReconciliationEngine) -> None:
    if not settings.order_sync_enabled:
        return
    await run_periodic_job(
        name="order_status_monitor",
        interval_seconds=settings.order_status_monitor_interval_seconds,
        job=engine.refresh_order_statuses,
        settings=settings,
        enabled=lambda: settings.order_sync_enabled,
    )


async def stock_sync_sweep_loop(settings: Settings, engine: StockSyncEngine) -> None:
    if not settings.stock_sync_sweep_enabled:
        return
    await run_periodic_job(
        name="stock_sync_sweep",
        interval_seconds=settings.stock_sync_sweep_interval_seconds,
        job=engine.sweep_recent_inventory,
        settings=settings,
        enabled=lambda: settings.stock_sync_sweep_enabled,
    )
