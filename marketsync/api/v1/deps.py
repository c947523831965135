from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.errors import AdapterError, NotFoundError
from marketsync.services.runtime import Engines


def get_engines(request: Request) -> Engines:
    return request.app.state.engines


@asynccontextmanager
async def begin_tx(session: AsyncSession):
    # Handlers are also called directly in tests with a shared session that may
    # already have an autobegun transaction; use a SAVEPOINT then.
    if session.in_transaction():
        async with session.begin_nested():
            yield
    else:
        async with session.begin():
            yield


def http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, AdapterError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=409, detail=str(e))
