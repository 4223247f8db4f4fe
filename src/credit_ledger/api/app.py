"""
Application factory for the credit ledger HTTP surface.

Run:
  uvicorn credit_ledger.api.app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from ..services.ledger_engine import LedgerEngine
from .router import get_ledger_engine, router


def create_app(engine: Optional[LedgerEngine] = None) -> FastAPI:
    """Build the app; pass `engine` to bypass the settings-driven wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ledger_engine = app.dependency_overrides.get(get_ledger_engine, get_ledger_engine)()
        await ledger_engine.db.ensure_indexes()
        yield

    app = FastAPI(title="Unified credit ledger", lifespan=lifespan)
    app.include_router(router)
    if engine is not None:
        app.dependency_overrides[get_ledger_engine] = lambda: engine

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
