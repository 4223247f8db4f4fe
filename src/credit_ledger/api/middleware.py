"""
FastAPI/Starlette middleware that wraps paid endpoints in the two-phase
reserve → commit/release protocol.

Flow:
  1. Before request: reserve the route's configured cost.
  2. Request is executed while the hold guarantees the funds.
  3. After response: a 2xx/3xx response commits the hold; an error
     response or an exception releases it.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import AccountLockTimeout, CreditLedgerError, InsufficientCredits
from ..models.transaction import SourcePlatform, TransactionKind
from ..services.ledger_engine import LedgerEngine


logger = logging.getLogger(__name__)


class CreditReservationMiddleware(BaseHTTPMiddleware):
    """
    Reserve credits before a request and settle the hold from the outcome.

    - The cost comes from the longest `route_costs` prefix matching the
      path, else `default_cost`. A client-supplied `cost_header` is only
      honoured when one is configured, and a malformed value is a 400.
    - Successful responses commit the hold with `kind`/`source_platform`
      and the request's idempotency key, so client retries are charged once.
    - Failed responses and exceptions release the hold.
    """

    def __init__(
        self,
        app: Any,
        engine: LedgerEngine,
        *,
        kind: TransactionKind,
        source_platform: SourcePlatform,
        path_prefix: str = "/api",
        account_id_header: str = "X-Account-Id",
        cost_header: Optional[str] = None,
        idempotency_header: str = "Idempotency-Key",
        default_cost: int = 1,
        route_costs: Optional[Mapping[str, int]] = None,
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        costs: Dict[str, int] = dict(route_costs or {})
        for prefix, cost in [("default", default_cost), *costs.items()]:
            if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
                raise ValueError(f"Credit cost for {prefix!r} must be a positive integer, got {cost!r}")
        self.engine = engine
        self.kind = kind
        self.source_platform = source_platform
        self.path_prefix = path_prefix.rstrip("/")
        self.account_id_header = account_id_header
        self.cost_header = cost_header
        self.idempotency_header = idempotency_header
        self.default_cost = default_cost
        # Longest prefix first so "/api/story/long" wins over "/api/story".
        self.route_costs = sorted(
            ((prefix.rstrip("/"), cost) for prefix, cost in costs.items()),
            key=lambda item: len(item[0]),
            reverse=True,
        )
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    def _route_cost(self, path: str) -> int:
        for prefix, cost in self.route_costs:
            if path == prefix or path.startswith(prefix + "/"):
                return cost
        return self.default_cost

    def _cost(self, request: Request) -> int:
        """Raises ValueError for a cost header that is not a positive integer."""
        if self.cost_header is not None:
            raw = request.headers.get(self.cost_header)
            if raw is not None:
                cost = int(raw.strip())
                if cost <= 0:
                    raise ValueError(f"non-positive cost {cost}")
                return cost
        return self._route_cost(request.url.path)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        account_id = request.headers.get(self.account_id_header)
        if not account_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing account identification ({self.account_id_header} header)."},
            )

        try:
            cost = self._cost(request)
        except ValueError:
            return JSONResponse(
                status_code=400,
                content={"detail": f"{self.cost_header} must be a positive integer."},
            )

        correlation_id = request.headers.get("X-Request-Id")
        try:
            reservation = await self.engine.reserve(
                account_id=account_id,
                amount=cost,
                purpose=f"{request.method} {request.url.path}",
                reference_id=correlation_id,
                reference_type="http_request",
                correlation_id=correlation_id,
            )
        except InsufficientCredits as exc:
            return JSONResponse(
                status_code=402,
                content={
                    "detail": "Insufficient credits for this request.",
                    "code": exc.code,
                    "available": exc.available,
                },
            )
        except AccountLockTimeout as exc:
            return JSONResponse(
                status_code=503,
                content={"detail": "Account busy, retry the request.", "code": exc.code},
            )

        request.state.credit_reservation = reservation

        try:
            response = await call_next(request)
        except Exception:
            await self.engine.release(reservation.id, correlation_id=correlation_id)  # type: ignore[arg-type]
            raise

        if response.status_code >= 400:
            await self.engine.release(reservation.id, correlation_id=correlation_id)  # type: ignore[arg-type]
            return response

        try:
            result = await self.engine.commit(
                reservation.id,  # type: ignore[arg-type]
                kind=self.kind,
                source_platform=self.source_platform,
                idempotency_key=request.headers.get(self.idempotency_header),
                correlation_id=correlation_id,
            )
        except CreditLedgerError as exc:
            logger.error(
                "Credit middleware: could not commit reservation %s: %s",
                reservation.id,
                exc,
                extra={"path": request.url.path, "account_id": account_id},
            )
            await self._release_after_failed_commit(reservation.id, correlation_id)  # type: ignore[arg-type]
            return response

        response.headers["X-Credits-Charged"] = str(reservation.amount)
        response.headers["X-Credits-Balance"] = str(result.new_balance)
        return response

    async def _release_after_failed_commit(
        self, reservation_id: str, correlation_id: Optional[str]
    ) -> None:
        try:
            await self.engine.release(reservation_id, correlation_id=correlation_id)
        except CreditLedgerError as exc:
            logger.warning(
                "Credit middleware: hold %s left to the expiry sweep: %s",
                reservation_id,
                exc,
            )
