"""
CasperFlow API Server
Subscription settlement on Casper with API-key verification for merchants.

Routes:
- GET  /verify?apiKey=...            - Is this key entitled right now
- POST /verify                       - Register an externally confirmed subscription
- GET  /plans, GET /plans/{planId}   - Plan catalog
- POST /plans                        - Create a plan on-chain (admin)
- POST /subscribe                    - Submit a subscribe deploy, get an API key
                                       (admin-only when PUBLIC_SUBSCRIBE=false)
- POST /subscriptions/{apiKey}/renew - Submit a renewal deploy
- POST /reconcile/confirm|fail       - Settlement webhooks (admin)
"""

import hmac
import logging
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Callable, Optional, Union

import httpx
import uvicorn
from fastapi import FastAPI, Request, HTTPException, Depends, Query
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from casperflow import (
    ApiKeyCodec,
    CasperFlowError,
    DeployBuilder,
    DeployReconciler,
    DeploySigner,
    ErrorKind,
    InMemorySubscriptionStore,
    LedgerClient,
    MalformedKeyError,
    PlanCatalog,
    SettlementOrchestrator,
    Settings,
    SqliteSubscriptionStore,
    SubscriptionRequest,
    SubscriptionStore,
    VerificationService,
)
from casperflow.models import billing_period_seconds

ROOT_DIR = Path(__file__).parent.parent.parent
VERSION = "0.3.0"

logger = logging.getLogger("casperflow.site")


# === LOGGING ===
def setup_logging():
    log_dir = ROOT_DIR / "logs"
    log_dir.mkdir(exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    # Clear existing handlers
    root_logger.handlers = []

    file_handler = RotatingFileHandler(
        log_dir / "casperflow.log",
        maxBytes=10_000_000,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


ERROR_STATUS = {
    ErrorKind.MALFORMED_KEY: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.DUPLICATE_KEY: 409,
    ErrorKind.PLAN_UNAVAILABLE: 422,
    ErrorKind.SIGNING_FAILURE: 500,
    ErrorKind.TERMINAL_REJECTION: 402,
    ErrorKind.UNREACHABLE: 503,
}


# === PYDANTIC MODELS ===

class SubscribeBody(BaseModel):
    """Request body for creating a subscription."""
    subscriber: str = Field(..., min_length=1, description="Subscriber's Casper public key (hex)")
    plan_id: str = Field(..., alias="planId")
    nonce: int = Field(..., ge=0, lt=2 ** 64, description="Idempotency nonce chosen by the caller")
    trial: bool = False


class RegisterBody(BaseModel):
    """Registration of a subscription confirmed outside this service."""
    api_key: Optional[str] = Field(None, alias="apiKey")
    plan_name: Optional[str] = Field(None, alias="planName")
    expires_at: Optional[int] = Field(None, alias="expiresAt")
    subscriber_wallet: str = Field("", alias="subscriberWallet")


class RenewBody(BaseModel):
    nonce: int = Field(..., ge=0, lt=2 ** 64)


class RevokeBody(BaseModel):
    reason: str = "revoked by merchant"


class ConfirmBody(BaseModel):
    transaction_id: str = Field(..., alias="transactionId")
    confirmed_at: Optional[int] = Field(None, alias="confirmedAt")
    expires_at: Optional[int] = Field(None, alias="expiresAt")


class FailBody(BaseModel):
    transaction_id: str = Field(..., alias="transactionId")
    reason: str = "execution failed"


class CreatePlanBody(BaseModel):
    merchant: str
    name: str
    base_price: Decimal = Field(..., alias="basePrice", ge=0)
    usage_price: Decimal = Field(Decimal("0"), alias="usagePrice", ge=0)
    billing_period: Union[int, str] = Field("monthly", alias="billingPeriod", description="Seconds, or weekly/monthly/yearly")
    trial_days: int = Field(0, alias="trialDays", ge=0)
    description: str = ""
    features: list = []


def _to_seconds(timestamp: int) -> int:
    # Browser clients send Date.now() milliseconds
    return timestamp // 1000 if timestamp > 100_000_000_000 else timestamp


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SubscriptionStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.time,
    configure_logging: bool = False
) -> FastAPI:
    """
    Wire the settlement core into a FastAPI app.

    Components live on ``app.state`` so tests can swap the ledger transport,
    the store and the clock.
    """
    settings = settings or Settings.from_env()

    if store is None:
        if settings.store_backend == "sqlite":
            store = SqliteSubscriptionStore(settings.store_db_path)
        else:
            store = InMemorySubscriptionStore()

    if settings.secret_key_path:
        signer = DeploySigner.from_pem(settings.secret_key_path)
    else:
        signer = DeploySigner(settings.secret_key_hex)

    codec = ApiKeyCodec(settings.api_key_prefix, settings.publishable_key_prefix)
    catalog = PlanCatalog()
    ledger = LedgerClient(
        settings.endpoints,
        attempt_timeout=settings.attempt_timeout,
        total_deadline=settings.total_deadline,
        transport=transport,
    )
    builder = DeployBuilder(settings.chain_name, settings.contract_hash, settings.payment_motes)
    orchestrator = SettlementOrchestrator(store, ledger, builder, signer, codec, catalog, clock=clock)
    verifier = VerificationService(store, codec, catalog, clock=clock)
    reconciler = (
        DeployReconciler(orchestrator, ledger, interval=settings.reconcile_interval, clock=clock)
        if settings.reconcile_interval > 0 else None
    )

    network = "testnet" if settings.chain_name == "casper-test" else settings.chain_name

    # === LIFESPAN ===
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if configure_logging:
            setup_logging()

        await store.init_db()
        if reconciler:
            await reconciler.start()

        if not settings.admin_token:
            logger.warning("ADMIN_TOKEN not configured - admin routes disabled")

        logger.info(f"CasperFlow starting on {settings.host}:{settings.port}")
        logger.info(f"Chain: {settings.chain_name} | Endpoints: {len(settings.endpoints)}")
        logger.info(f"Settlement account: {signer.public_key_hex[:16]}...")

        yield

        # Shutdown
        if reconciler:
            await reconciler.stop()
        await ledger.close()
        await store.close()
        logger.info("Server shutdown complete")

    # === APP ===
    app = FastAPI(
        title="CasperFlow API",
        description="Web3 subscription billing on Casper",
        version=VERSION,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.codec = codec
    app.state.catalog = catalog
    app.state.ledger = ledger
    app.state.orchestrator = orchestrator
    app.state.verifier = verifier
    app.state.reconciler = reconciler

    @app.exception_handler(CasperFlowError)
    async def casperflow_error_handler(request: Request, exc: CasperFlowError):
        status_code = ERROR_STATUS.get(exc.kind, 500)
        if status_code >= 500:
            logger.error(f"{request.url.path}: {exc.kind.value}: {exc.message}")
        content = {"error": exc.kind.value, "message": exc.message}
        if exc.retryable:
            content["retryable"] = True
        return JSONResponse(status_code=status_code, content=content)

    def require_admin(request: Request):
        if not settings.admin_token:
            raise HTTPException(status_code=503, detail={"error": "Admin routes disabled"})
        supplied = request.headers.get("X-Admin-Token", "")
        if not hmac.compare_digest(supplied.encode("utf-8"), settings.admin_token.encode("utf-8")):
            raise HTTPException(status_code=401, detail={"error": "Invalid admin token"})

    def require_payer(request: Request):
        # Subscribe and renew deploys are paid by the settlement account
        if not settings.public_subscribe:
            require_admin(request)

    # === PUBLIC ROUTES ===

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": VERSION,
            "network": network,
            "endpoints": len(settings.endpoints),
            "store": type(store).__name__,
            "reconciler_enabled": reconciler is not None,
        }

    @app.get("/verify")
    async def verify_key(api_key: Optional[str] = Query(None, alias="apiKey")):
        """
        Verify that an API key belongs to an active subscription.

        Always 200 for well-formed keys (``valid`` tells the story);
        400 only for missing or malformed keys.
        """
        if not api_key:
            return JSONResponse(
                status_code=400,
                content={
                    "error": "Missing apiKey parameter",
                    "usage": "GET /verify?apiKey=cf_sk_xxx"
                }
            )

        try:
            result = await verifier.verify(api_key.strip())
        except MalformedKeyError as e:
            return JSONResponse(
                status_code=400,
                content={"valid": False, "error": e.kind.value, "message": e.message}
            )

        return {**result.to_dict(), "network": network}

    @app.post("/verify")
    async def register_key(body: RegisterBody, _: None = Depends(require_admin)):
        """Register a subscription confirmed on-chain outside this service."""
        if not body.api_key or not body.plan_name or not body.expires_at:
            return JSONResponse(
                status_code=400,
                content={"error": "Missing required fields: apiKey, planName, expiresAt"}
            )

        plan = catalog.get(body.plan_name) or next(
            (p for p in catalog.list(include_deprecated=True) if p.name == body.plan_name),
            None
        )
        record = await orchestrator.register_confirmed(
            api_key=body.api_key,
            plan_id=plan.plan_id if plan else body.plan_name,
            expires_at=_to_seconds(body.expires_at),
            subscriber_id=body.subscriber_wallet,
        )
        return {
            "success": True,
            "message": "API key registered successfully",
            "expiresAt": record.expires_at,
        }

    @app.get("/plans")
    async def list_plans():
        """Returns all available subscription plans."""
        plans = [p.to_dict() for p in catalog.list()]
        return {
            "success": True,
            "network": network,
            "contractHash": settings.contract_hash,
            "plans": plans,
            "totalPlans": len(plans),
        }

    @app.get("/plans/{plan_id}")
    async def get_plan(plan_id: str):
        plan = catalog.get(plan_id)
        if not plan:
            raise HTTPException(status_code=404, detail={"error": "Plan not found"})
        return {**plan.to_dict(), "network": network}

    @app.post("/plans")
    async def create_plan(body: CreatePlanBody, _: None = Depends(require_admin)):
        """Create a plan on-chain and publish it in the catalog."""
        try:
            period = billing_period_seconds(body.billing_period)
        except ValueError as e:
            raise HTTPException(status_code=422, detail={"error": str(e)})

        plan = await orchestrator.create_plan(
            merchant_id=body.merchant,
            name=body.name,
            base_price=body.base_price,
            usage_price=body.usage_price,
            billing_period_seconds=period,
            trial_days=body.trial_days,
            description=body.description,
            features=tuple(body.features),
        )
        return plan.to_dict()

    @app.post("/plans/{plan_id}/deprecate")
    async def deprecate_plan(plan_id: str, _: None = Depends(require_admin)):
        return orchestrator.deprecate_plan(plan_id).to_dict()

    # === SUBSCRIPTION ROUTES ===

    @app.post("/subscribe")
    async def subscribe(body: SubscribeBody, _: None = Depends(require_payer)):
        """
        Submit a subscribe deploy and return the API key immediately.

        The key verifies as ``pending`` until the deploy is confirmed.
        Retrying with the same nonce is safe.

        The deploy is signed and paid for by the settlement account. Set
        PUBLIC_SUBSCRIBE=false to require X-Admin-Token (e.g. when a
        merchant backend proxies this route).
        """
        record = await orchestrator.subscribe(SubscriptionRequest(
            subscriber=body.subscriber,
            plan_id=body.plan_id,
            nonce=body.nonce,
            requested_at=int(clock()),
            trial=body.trial,
        ))
        return {
            "apiKey": record.api_key,
            "transactionId": record.transaction_id,
            "planId": record.plan_id,
            "state": record.state.value,
            "network": network,
        }

    @app.get("/subscriptions/{wallet}")
    async def list_subscriptions(wallet: str):
        """List subscriptions for a subscriber wallet (keys are masked)."""
        records = await store.list_by_subscriber(wallet)
        return {
            "wallet": wallet,
            "subscriptions": [
                {**r.to_dict(), "apiKeyHint": codec.mask(r.api_key)} for r in records
            ],
            "count": len(records),
        }

    @app.post("/subscriptions/{api_key}/renew")
    async def renew(api_key: str, body: RenewBody, _: None = Depends(require_payer)):
        """Submit a renewal deploy (gated like /subscribe)."""
        record = await orchestrator.renew(api_key, body.nonce)
        return {
            "renewalTransactionId": record.renewal_transaction_id,
            "state": record.state.value,
            "expiresAt": record.expires_at,
        }

    @app.post("/subscriptions/{api_key}/revoke")
    async def revoke(api_key: str, body: RevokeBody, _: None = Depends(require_admin)):
        record = await orchestrator.revoke(api_key, body.reason)
        return {"state": record.state.value}

    # === RECONCILIATION HOOKS ===

    @app.post("/reconcile/confirm")
    async def reconcile_confirm(body: ConfirmBody, _: None = Depends(require_admin)):
        record = await orchestrator.confirm(
            body.transaction_id,
            confirmed_at=body.confirmed_at,
            expires_at=body.expires_at,
        )
        return {
            "state": record.state.value,
            "activatedAt": record.activated_at,
            "expiresAt": record.expires_at,
        }

    @app.post("/reconcile/fail")
    async def reconcile_fail(body: FailBody, _: None = Depends(require_admin)):
        record = await orchestrator.fail(body.transaction_id, body.reason)
        return {"state": record.state.value, "reason": record.failure_reason}

    return app


app = create_app(configure_logging=True)


# === ENTRY POINT ===
if __name__ == "__main__":
    uvicorn.run(
        "casperflow.site.main:app",
        host=app.state.settings.host,
        port=app.state.settings.port,
        reload=True
    )
