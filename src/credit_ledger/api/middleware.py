"""
FastAPI/Starlette middleware that bills paid endpoints after they succeed.

Flow:
  1. Before request: price the JSON body and check the balance. Nothing is
     written; a short balance answers 402 without calling the endpoint.
  2. Request is executed.
  3. After a successful response: debit the authorized cost under the
     authorization's idempotency key and report it in `X-Credits-Deducted`.
  A failed endpoint (status >= 400 or an exception) is never charged.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Mapping, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import InsufficientBalanceAtDebit, PaymentRequired, UnsupportedModel
from ..models.billing import PreAuthorization
from ..pricing.base import PricedRequest
from ..services.credit_service import CreditService


logger = logging.getLogger(__name__)

PAYMENT_SUGGESTION = "Buy plan or reduce n/size"


def payment_required_body(exc: PaymentRequired) -> dict[str, Any]:
    return {
        "responseStatus": "error",
        "message": "Payment Required",
        "data": {**exc.to_dict(), "suggestion": PAYMENT_SUGGESTION},
    }


class CreditPreAuthMiddleware(BaseHTTPMiddleware):
    """
    Applies only to paths listed in `routes`, each mapped to the
    `(provider, operation)` pair used to price its request body.

    - 401 if the user header is missing.
    - 402 with the required and current balance if the user cannot pay.
    - 400 if the body names a model the pricing table does not know.
    - If the debit loses a race at confirm time the response is still
      returned unchanged, with `X-Credits-Unbilled` set.
    """

    def __init__(
        self,
        app: Any,
        credit_service: CreditService,
        *,
        routes: Mapping[str, Tuple[str, str]],
        user_id_header: str = "X-User-Id",
        history_id_key: str = "historyId",
    ) -> None:
        super().__init__(app)
        self.credit_service = credit_service
        self.routes = {path.rstrip("/") or "/": target for path, target in routes.items()}
        self.user_id_header = user_id_header
        self.history_id_key = history_id_key

    def _route_for(self, path: str) -> Optional[Tuple[str, str]]:
        return self.routes.get(path.rstrip("/") or "/")

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        target = self._route_for(request.url.path)
        if target is None or request.method != "POST":
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing user identification ({self.user_id_header} header)."},
            )

        try:
            params = await request.json()
        except ValueError:
            # Invalid JSON or a body that is not UTF-8
            return JSONResponse(status_code=400, content={"detail": "Request body must be JSON."})
        if not isinstance(params, dict):
            return JSONResponse(status_code=400, content={"detail": "Request body must be a JSON object."})

        provider, operation = target
        try:
            authorization = await self.credit_service.pre_authorize(
                user_id, PricedRequest(provider=provider, operation=operation, params=params)
            )
        except PaymentRequired as exc:
            return JSONResponse(status_code=402, content=payment_required_body(exc))
        except UnsupportedModel as exc:
            return JSONResponse(status_code=400, content={"detail": str(exc)})

        request.state.credit_authorization = authorization

        response = await call_next(request)
        if response.status_code >= 400:
            logger.info(
                "Paid request failed; not charging",
                extra={"path": request.url.path, "user_id": user_id, "status": response.status_code},
            )
            return response

        body_bytes = b"".join([chunk async for chunk in response.body_iterator])
        headers = dict(response.headers)
        headers.pop("content-length", None)

        charged = await self._confirm(
            request, user_id, authorization, self._history_id(body_bytes)
        )
        if charged:
            headers["X-Credits-Deducted"] = str(authorization.cost)
        else:
            headers["X-Credits-Unbilled"] = str(authorization.cost)

        return Response(
            content=body_bytes,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )

    async def _confirm(
        self,
        request: Request,
        user_id: str,
        authorization: PreAuthorization,
        history_id: Optional[str],
    ) -> bool:
        try:
            await self.credit_service.confirm_authorization(
                user_id,
                authorization,
                history_id=history_id,
                correlation_id=request.headers.get("X-Request-Id"),
            )
        except InsufficientBalanceAtDebit as exc:
            logger.error(
                "Paid request succeeded but could not be billed: %s",
                exc,
                extra={
                    "path": request.url.path,
                    "user_id": user_id,
                    "idempotency_key": authorization.idempotency_key,
                },
            )
            return False
        return True

    def _history_id(self, body_bytes: bytes) -> Optional[str]:
        if not body_bytes:
            return None
        try:
            data = json.loads(body_bytes)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Credit middleware: response is not JSON: %s", e)
            return None
        if isinstance(data, dict) and data.get(self.history_id_key) is not None:
            return str(data[self.history_id_key])
        return None
