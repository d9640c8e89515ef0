"""
CasperFlow SDK - API Key Middleware
FastAPI middleware that admits requests carrying an entitled API key.
"""

import logging
from typing import Callable, Set

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import MalformedKeyError
from .verification import VerificationService

logger = logging.getLogger("casperflow.middleware")


class ApiKeyMiddleware(BaseHTTPMiddleware):
    """
    Gates a merchant's paid routes behind CasperFlow subscriptions.

    Reads the key from the ``X-API-Key`` header (or ``apiKey`` query
    parameter) and verifies it against the subscription store:
    1. Missing or malformed key -> 400
    2. Unknown, pending, expired or revoked key -> 403
    3. Entitled key -> request proceeds, with the verification attached
       to ``request.state.subscription``

    Args:
        app: FastAPI application instance
        verifier: VerificationService reading the subscription store
        exclude_paths: Set of paths that don't require a key

    Example:
        app.add_middleware(
            ApiKeyMiddleware,
            verifier=VerificationService(store, ApiKeyCodec()),
            exclude_paths={"/", "/docs", "/health"}
        )
    """

    DEFAULT_EXCLUDED_PATHS = {
        "/", "/docs", "/openapi.json", "/redoc", "/health", "/favicon.ico"
    }

    HEADER = "X-API-Key"

    def __init__(
        self,
        app,
        verifier: VerificationService,
        exclude_paths: Set[str] = None
    ):
        super().__init__(app)
        self.verifier = verifier
        self.exclude_paths = exclude_paths or self.DEFAULT_EXCLUDED_PATHS

    def _should_skip(self, request: Request) -> bool:
        """Check if the request path is excluded from key checks."""
        path = request.url.path

        if path in self.exclude_paths:
            return True

        for excluded in self.exclude_paths:
            if excluded != "/" and path.startswith(excluded.rstrip("/") + "/"):
                return True

        return False

    async def dispatch(self, request: Request, call_next: Callable):
        """Process each request through the key check."""

        if self._should_skip(request):
            return await call_next(request)

        try:
            await self._check_access(request)
            return await call_next(request)

        except HTTPException as e:
            return JSONResponse(
                status_code=e.status_code,
                content={"detail": e.detail}
            )
        except Exception as e:
            logger.error(f"Middleware error: {e}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal verification error."}
            )

    async def _check_access(self, request: Request):
        api_key = request.headers.get(self.HEADER) or request.query_params.get("apiKey")

        if not api_key:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "Missing API Key",
                    "message": f"{self.HEADER} header required.",
                    "hint": "Subscribe to a plan to receive an API key."
                }
            )

        try:
            result = await self.verifier.verify(api_key.strip())
        except MalformedKeyError as e:
            raise HTTPException(
                status_code=400,
                detail={"error": e.kind.value, "message": e.message}
            )

        if not result.valid:
            raise HTTPException(
                status_code=403,
                detail={
                    "error": "Subscription Required",
                    "reason": result.reason.value,
                    "expiresAt": result.expires_at
                }
            )

        request.state.subscription = result
