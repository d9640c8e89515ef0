"""
CasperFlow SDK - Data Model
Plans, subscription requests, signed deploys and subscription records.
"""

import time
from dataclasses import dataclass, field, asdict, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

MOTES_PER_CSPR = 1_000_000_000
SECONDS_PER_DAY = 86_400

BILLING_PERIODS = {
    "weekly": 7 * SECONDS_PER_DAY,
    "monthly": 30 * SECONDS_PER_DAY,
    "yearly": 365 * SECONDS_PER_DAY,
}


def cspr_to_motes(cspr: Union[Decimal, int, str]) -> int:
    """Convert CSPR to motes (1 CSPR = 1,000,000,000 motes)."""
    return int(Decimal(str(cspr)) * MOTES_PER_CSPR)


def motes_to_cspr(motes: int) -> Decimal:
    return Decimal(motes) / MOTES_PER_CSPR


def billing_period_seconds(period: Union[str, int]) -> int:
    """Convert a named billing cycle ("weekly", "monthly", "yearly") to seconds."""
    if isinstance(period, int):
        if period <= 0:
            raise ValueError("Billing period must be positive")
        return period
    try:
        return BILLING_PERIODS[period]
    except KeyError:
        raise ValueError(f"Unknown billing period: {period}") from None


@dataclass(frozen=True)
class Plan:
    """
    A subscription plan created by a merchant.

    Immutable after creation except for ``deprecated``: deprecated plans
    reject new subscriptions while existing ones are honored to term.
    """
    plan_id: str
    merchant_id: str
    name: str
    base_price: Decimal
    usage_price: Decimal = Decimal("0")
    billing_period_seconds: int = BILLING_PERIODS["monthly"]
    trial_days: int = 0
    description: str = ""
    features: tuple = ()
    deprecated: bool = False

    def __post_init__(self):
        if self.billing_period_seconds <= 0:
            raise ValueError("billing_period_seconds must be positive")
        if self.trial_days < 0:
            raise ValueError("trial_days must not be negative")

    def deprecate(self) -> "Plan":
        return replace(self, deprecated=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.plan_id,
            "name": self.name,
            "description": self.description,
            "merchant": self.merchant_id,
            "price": str(self.base_price),
            "usagePrice": str(self.usage_price),
            "periodSeconds": self.billing_period_seconds,
            "trialEnabled": self.trial_days > 0,
            "trialDays": self.trial_days,
            "features": list(self.features),
            "deprecated": self.deprecated,
        }


@dataclass(frozen=True)
class SubscriptionRequest:
    """
    An unsigned intent to subscribe.

    ``nonce`` makes the request idempotent: the same
    ``(subscriber, plan_id, nonce)`` always builds the same deploy.
    """
    subscriber: str
    plan_id: str
    nonce: int
    requested_at: int = field(default_factory=lambda: int(time.time()))
    trial: bool = False

    def __post_init__(self):
        if not 0 <= self.nonce < 2 ** 64:
            raise ValueError("nonce must be an unsigned 64-bit integer")


@dataclass(frozen=True)
class SignedTransaction:
    """A deploy ready for submission."""
    payload_hash: bytes
    signature: bytes
    signer_public_key: str
    deploy: Dict[str, Any]

    @property
    def transaction_id(self) -> str:
        return self.payload_hash.hex()

    def to_json(self) -> Dict[str, Any]:
        return self.deploy


@dataclass(frozen=True)
class Accepted:
    transaction_id: str
    endpoint: str


@dataclass(frozen=True)
class Rejected:
    reason: str
    endpoint: str
    terminal: bool = True


@dataclass(frozen=True)
class Unreachable:
    endpoints: List[str]
    errors: Dict[str, str] = field(default_factory=dict)


SubmissionOutcome = Union[Accepted, Rejected, Unreachable]


class SubscriptionState(Enum):
    """
    Subscription lifecycle.

    PENDING -> ACTIVE -> EXPIRED, any non-terminal state -> REVOKED,
    PENDING -> FAILED when the ledger reports the deploy failed.
    """
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SubscriptionState.EXPIRED, SubscriptionState.REVOKED, SubscriptionState.FAILED)


# Allowed (from, to) pairs. ACTIVE -> ACTIVE is a renewal that only moves fields.
TRANSITIONS = {
    SubscriptionState.PENDING: {SubscriptionState.ACTIVE, SubscriptionState.REVOKED, SubscriptionState.FAILED},
    SubscriptionState.ACTIVE: {SubscriptionState.ACTIVE, SubscriptionState.EXPIRED, SubscriptionState.REVOKED},
    SubscriptionState.EXPIRED: set(),
    SubscriptionState.REVOKED: set(),
    SubscriptionState.FAILED: set(),
}


@dataclass
class SubscriptionRecord:
    """
    Subscription entitlement keyed by API key.

    Attributes:
        api_key: Secret API key (exact-match lookup only)
        subscriber_id: Subscriber's Casper public key
        plan_id: Plan subscribed to
        state: Current lifecycle state
        nonce: Request nonce the record was created from
        trial: Whether the first period starts with the plan's trial days
        activated_at: Unix timestamp of on-chain confirmation
        expires_at: Unix timestamp when entitlement ends
        transaction_id: Deploy hash of the subscribe deploy
        renewal_transaction_id: Deploy hash of an unconfirmed renewal
        settled_renewals: Renewal deploy hashes already applied to the term
        failure_reason: Reason recorded by ``fail`` or ``revoke``
        created_at: Unix timestamp of the pending write
        updated_at: Unix timestamp of the last transition
        version: Incremented on every transition (compare-and-swap token)
    """
    api_key: str
    subscriber_id: str
    plan_id: str
    state: SubscriptionState = SubscriptionState.PENDING
    nonce: Optional[int] = None
    trial: bool = False
    activated_at: Optional[int] = None
    expires_at: Optional[int] = None
    transaction_id: Optional[str] = None
    renewal_transaction_id: Optional[str] = None
    settled_renewals: Tuple[str, ...] = ()
    failure_reason: Optional[str] = None
    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = field(default_factory=lambda: int(time.time()))
    version: int = 0

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self, include_key: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["settled_renewals"] = list(self.settled_renewals)
        if not include_key:
            data.pop("api_key")
        return data
