"""
CasperFlow SDK - Verification Service
Answers "is this API key entitled right now" from the subscription store.
"""

import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .credentials import ApiKeyCodec, KeyClass
from .models import SubscriptionState
from .plans import PlanCatalog
from .store import SubscriptionStore

logger = logging.getLogger("casperflow.verification")


class DenialReason(Enum):
    """Why a well-formed key is not entitled."""
    NOT_FOUND = "not_found"
    PENDING = "pending"
    EXPIRED = "expired"
    REVOKED = "revoked"
    FAILED = "failed"


@dataclass
class VerificationResult:
    """Result of a key verification."""
    valid: bool
    reason: Optional[DenialReason] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    expires_at: Optional[int] = None
    state: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "valid": self.valid,
            "planId": self.plan_id,
            "planName": self.plan_name,
            "expiresAt": self.expires_at,
        }
        if self.state:
            data["state"] = self.state
        if self.reason:
            data["reason"] = self.reason.value
        return data


_STATE_REASONS = {
    SubscriptionState.PENDING: DenialReason.PENDING,
    SubscriptionState.EXPIRED: DenialReason.EXPIRED,
    SubscriptionState.REVOKED: DenialReason.REVOKED,
    SubscriptionState.FAILED: DenialReason.FAILED,
}


class VerificationService:
    """
    Read-only entitlement checks.

    Never touches the ledger and never writes to the store: an ACTIVE record
    past its ``expires_at`` is reported as expired without being transitioned.

    Args:
        store: Subscription store to read from
        codec: Codec used to reject malformed keys before any lookup
        catalog: Optional plan catalog used to resolve plan names
        clock: Returns the current Unix time (injectable for tests)

    Example:
        service = VerificationService(store, ApiKeyCodec())
        result = await service.verify("cf_sk_...")
        if not result.valid:
            print(result.reason)
    """

    def __init__(
        self,
        store: SubscriptionStore,
        codec: ApiKeyCodec,
        catalog: Optional[PlanCatalog] = None,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.codec = codec
        self.catalog = catalog
        self.clock = clock

    async def verify(self, api_key: str, now: Optional[int] = None) -> VerificationResult:
        """
        Check whether ``api_key`` currently grants access.

        Raises:
            MalformedKeyError: before any store access, for tokens that
                cannot be secret keys
        """
        self.codec.parse(api_key, expected=KeyClass.SECRET)

        record = await self.store.get(api_key)
        if record is None:
            logger.info(f"Verify {self.codec.mask(api_key)}: not found")
            return VerificationResult(valid=False, reason=DenialReason.NOT_FOUND)

        now = int(self.clock()) if now is None else now
        plan_name = None
        if self.catalog:
            plan = self.catalog.get(record.plan_id)
            plan_name = plan.name if plan else None

        result = VerificationResult(
            valid=False,
            plan_id=record.plan_id,
            plan_name=plan_name,
            expires_at=record.expires_at,
            state=record.state.value,
        )

        if record.state == SubscriptionState.ACTIVE:
            if record.is_expired(now):
                result.reason = DenialReason.EXPIRED
                result.state = SubscriptionState.EXPIRED.value
            else:
                result.valid = True
        else:
            result.reason = _STATE_REASONS[record.state]

        logger.info(
            f"Verify {self.codec.mask(api_key)}: "
            f"{'valid' if result.valid else result.reason.value}"
        )
        return result
