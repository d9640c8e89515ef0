"""
CasperFlow SDK - Web3 Subscription Billing on Casper

Settles subscription payments on the Casper ledger and hands out API keys
that merchants check before serving paid requests.

Features:
- Deterministic, signed SubscriptionManager deploys (Ed25519)
- Failover JSON-RPC submission across several nodes
- Subscription state machine with compare-and-swap transitions
- Lazy expiry: verification is a pure read

Usage:
    from casperflow import (
        ApiKeyCodec, DeployBuilder, DeploySigner, InMemorySubscriptionStore,
        LedgerClient, PlanCatalog, SettlementOrchestrator, VerificationService,
    )

    store = InMemorySubscriptionStore()
    orchestrator = SettlementOrchestrator(
        store, LedgerClient(endpoints), DeployBuilder(chain, contract, motes),
        DeploySigner(), ApiKeyCodec(), PlanCatalog()
    )
    record = await orchestrator.subscribe(request)

    # Gate a merchant API
    app.add_middleware(ApiKeyMiddleware, verifier=VerificationService(store, ApiKeyCodec()))
"""

# Core components
from .config import Settings
from .credentials import ApiKeyCodec, KeyClass, ParsedKey
from .deploy import DeployBuilder
from .ledger_client import LedgerClient, DeployStatus, classify_rpc_error
from .middleware import ApiKeyMiddleware
from .orchestrator import SettlementOrchestrator
from .plans import PlanCatalog, DEMO_PLANS
from .reconciler import DeployReconciler
from .security import DeploySigner, hash_data
from .store import SubscriptionStore, InMemorySubscriptionStore, SqliteSubscriptionStore
from .verification import VerificationService, VerificationResult, DenialReason

# Domain types
from .models import (
    Plan,
    SubscriptionRequest,
    SignedTransaction,
    Accepted,
    Rejected,
    Unreachable,
    SubmissionOutcome,
    SubscriptionState,
    SubscriptionRecord,
    cspr_to_motes,
    motes_to_cspr,
)

# Errors
from .errors import (
    ErrorKind,
    CasperFlowError,
    MalformedKeyError,
    NotFoundError,
    InvalidTransitionError,
    SigningFailureError,
    TerminalRejectionError,
    UnreachableError,
    DuplicateKeyError,
    PlanUnavailableError,
)

__version__ = "0.3.0"
__author__ = "CasperFlow"

__all__ = [
    # Core components
    "Settings",
    "ApiKeyCodec",
    "KeyClass",
    "ParsedKey",
    "DeployBuilder",
    "DeploySigner",
    "hash_data",
    "LedgerClient",
    "DeployStatus",
    "classify_rpc_error",
    "ApiKeyMiddleware",
    "SettlementOrchestrator",
    "PlanCatalog",
    "DEMO_PLANS",
    "DeployReconciler",
    "SubscriptionStore",
    "InMemorySubscriptionStore",
    "SqliteSubscriptionStore",
    "VerificationService",
    "VerificationResult",
    "DenialReason",

    # Domain types
    "Plan",
    "SubscriptionRequest",
    "SignedTransaction",
    "Accepted",
    "Rejected",
    "Unreachable",
    "SubmissionOutcome",
    "SubscriptionState",
    "SubscriptionRecord",
    "cspr_to_motes",
    "motes_to_cspr",

    # Errors
    "ErrorKind",
    "CasperFlowError",
    "MalformedKeyError",
    "NotFoundError",
    "InvalidTransitionError",
    "SigningFailureError",
    "TerminalRejectionError",
    "UnreachableError",
    "DuplicateKeyError",
    "PlanUnavailableError",

    # Metadata
    "__version__",
]
