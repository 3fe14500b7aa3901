"""
FastAPI application factory.

Paid endpoints are registered by the host application; pass their paths in
`paid_routes` so the pre-authorization middleware bills them, e.g.::

    app = create_app(paid_routes={"/api/bfl/generate": ("bfl", "generate")})

Run with:
  uvicorn --factory credit_ledger.app:create_app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.middleware import CreditPreAuthMiddleware, payment_required_body
from .api.router import router
from .config import Settings, settings as default_settings
from .errors import InsufficientBalanceAtDebit, PaymentRequired, UnknownPlan, UnsupportedModel
from .services.credit_service import CreditService
from .services.factory import create_credit_service


logger = logging.getLogger(__name__)


def create_app(
    config: Optional[Settings] = None,
    credit_service: Optional[CreditService] = None,
    paid_routes: Optional[Mapping[str, Tuple[str, str]]] = None,
) -> FastAPI:
    config = config or default_settings
    logging.basicConfig(level=config.LOG_LEVEL)
    service = credit_service or create_credit_service(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ensure_indexes = getattr(service.db, "ensure_indexes", None)
        if ensure_indexes is not None:
            await ensure_indexes()
        await service.seed_plans()
        yield

    app = FastAPI(title="Credit ledger", lifespan=lifespan)
    app.state.credit_service = service
    app.include_router(router)

    if paid_routes:
        app.add_middleware(
            CreditPreAuthMiddleware,
            credit_service=service,
            routes=paid_routes,
            user_id_header=config.USER_ID_HEADER,
        )

    @app.exception_handler(UnknownPlan)
    async def _unknown_plan(request: Request, exc: UnknownPlan) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(UnsupportedModel)
    async def _unsupported_model(request: Request, exc: UnsupportedModel) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(PaymentRequired)
    async def _payment_required(request: Request, exc: PaymentRequired) -> JSONResponse:
        return JSONResponse(status_code=402, content=payment_required_body(exc))

    @app.exception_handler(InsufficientBalanceAtDebit)
    async def _insufficient_at_debit(
        request: Request, exc: InsufficientBalanceAtDebit
    ) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    return app
