"""
CasperFlow SDK - Settlement Orchestrator
Coordinates key issuance, deploy submission and subscription state.

The orchestrator is the only writer of subscription records:
- ``subscribe`` / ``renew`` submit a deploy and record it as pending
- ``confirm`` / ``fail`` are the reconciliation hooks that settle it
- ``revoke`` is the administrative kill switch
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from .credentials import ApiKeyCodec, KeyClass
from .deploy import DeployBuilder
from .errors import (
    DuplicateKeyError,
    InvalidTransitionError,
    NotFoundError,
    PlanUnavailableError,
    TerminalRejectionError,
    UnreachableError,
)
from .ledger_client import LedgerClient
from .models import (
    SECONDS_PER_DAY,
    Accepted,
    Plan,
    Rejected,
    SignedTransaction,
    SubscriptionRecord,
    SubscriptionRequest,
    SubscriptionState,
    cspr_to_motes,
)
from .plans import PlanCatalog
from .security import DeploySigner
from .store import SubscriptionStore

logger = logging.getLogger("casperflow.orchestrator")

RequestKey = Tuple[str, str, int]


@dataclass
class _RequestLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class SettlementOrchestrator:
    """
    Drives a subscription attempt through
    Building -> Signed -> Submitted -> Pending -> Active | Failed.

    ``subscribe`` returns as soon as the ledger accepts the deploy; the key
    it returns starts working once ``confirm`` runs for that deploy.

    Args:
        store: Subscription store (sole shared mutable state)
        ledger: Ledger client used for submission
        builder: Deploy builder for SubscriptionManager calls
        signer: Settlement account signer
        codec: API key codec
        catalog: Plan catalog
        clock: Returns the current Unix time (injectable for tests)
        max_key_rerolls: Fresh keys tried on an API key collision

    Example:
        orchestrator = SettlementOrchestrator(store, ledger, builder, signer, codec, catalog)

        record = await orchestrator.subscribe(
            SubscriptionRequest(subscriber="01ab...", plan_id="plan_demo_pro", nonce=7)
        )
        # later, from a poller or webhook
        await orchestrator.confirm(record.transaction_id)
    """

    def __init__(
        self,
        store: SubscriptionStore,
        ledger: LedgerClient,
        builder: DeployBuilder,
        signer: DeploySigner,
        codec: ApiKeyCodec,
        catalog: PlanCatalog,
        clock: Callable[[], float] = time.time,
        max_key_rerolls: int = 3
    ):
        self.store = store
        self.ledger = ledger
        self.builder = builder
        self.signer = signer
        self.codec = codec
        self.catalog = catalog
        self.clock = clock
        self.max_key_rerolls = max_key_rerolls

        # One in-flight attempt per (subscriber, plan, nonce); entries live only while in use
        self._request_locks: Dict[RequestKey, _RequestLock] = {}

    def _now(self) -> int:
        return int(self.clock())

    @asynccontextmanager
    async def _serialized(self, request: SubscriptionRequest):
        key = (request.subscriber, request.plan_id, request.nonce)
        entry = self._request_locks.get(key)
        if entry is None:
            entry = self._request_locks[key] = _RequestLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._request_locks[key]

    def _plan_for_new_subscription(self, plan_id: str) -> Plan:
        plan = self.catalog.get(plan_id)
        if plan is None:
            raise PlanUnavailableError(f"Unknown plan: {plan_id}")
        if plan.deprecated:
            raise PlanUnavailableError(f"Plan is deprecated: {plan_id}")
        return plan

    async def _submit(self, tx: SignedTransaction) -> Accepted:
        """Submit and turn anything but acceptance into an exception."""
        outcome = await self.ledger.submit(tx)

        if isinstance(outcome, Accepted):
            return outcome
        if isinstance(outcome, Rejected):
            logger.warning(f"Deploy {tx.transaction_id[:16]}... rejected: {outcome.reason}")
            raise TerminalRejectionError(outcome.reason, endpoint=outcome.endpoint)
        raise UnreachableError(outcome.endpoints)

    # ============ SUBSCRIPTIONS ============

    async def subscribe(self, request: SubscriptionRequest) -> SubscriptionRecord:
        """
        Subscribe to a plan and return the pending record holding the new API key.

        Resubmitting the same ``(subscriber, plan_id, nonce)`` returns the
        record already created for it, and a resubmission after an
        unreachable ledger rebuilds the identical deploy.

        Raises:
            PlanUnavailableError: unknown or deprecated plan
            SigningFailureError: the settlement key cannot sign
            TerminalRejectionError: the ledger refused the deploy
            UnreachableError: no endpoint accepted in time (safe to retry)
        """
        self._plan_for_new_subscription(request.plan_id)

        async with self._serialized(request):
            existing = await self.store.find_by_nonce(request.subscriber, request.plan_id, request.nonce)
            if existing:
                if existing.state == SubscriptionState.FAILED:
                    raise TerminalRejectionError(
                        existing.failure_reason or "Deploy for this nonce failed; use a new nonce"
                    )
                logger.info(f"Nonce {request.nonce} already settled as {self.codec.mask(existing.api_key)}")
                return existing

            api_key = self.codec.issue(request.subscriber, request.plan_id)
            tx = self.builder.build(request, self.signer)
            accepted = await self._submit(tx)

            for _ in range(self.max_key_rerolls):
                record = SubscriptionRecord(
                    api_key=api_key,
                    subscriber_id=request.subscriber,
                    plan_id=request.plan_id,
                    nonce=request.nonce,
                    trial=request.trial,
                    transaction_id=accepted.transaction_id,
                    created_at=self._now(),
                    updated_at=self._now(),
                )
                try:
                    stored = await self.store.put_pending(record)
                except DuplicateKeyError:
                    logger.warning("API key collision, issuing a new key")
                    api_key = self.codec.issue(request.subscriber, request.plan_id)
                    continue

                logger.info(
                    f"Pending subscription {self.codec.mask(stored.api_key)} "
                    f"for {request.subscriber[:10]}... on {request.plan_id} "
                    f"(deploy {accepted.transaction_id[:16]}...)"
                )
                return stored

        raise DuplicateKeyError("Could not allocate a unique API key")

    async def renew(self, api_key: str, nonce: int) -> SubscriptionRecord:
        """
        Submit a renewal deploy for an active subscription.

        The record stays ACTIVE; ``confirm`` on the renewal deploy extends it.
        """
        record = await self.store.get(api_key)
        if record is None:
            raise NotFoundError("Subscription not found")
        if record.state != SubscriptionState.ACTIVE:
            raise InvalidTransitionError(f"Cannot renew a {record.state.value} subscription")
        self._plan_for_new_subscription(record.plan_id)

        tx = self.builder.build_renewal(record.subscriber_id, record.plan_id, nonce, self.signer)
        if tx.transaction_id in record.settled_renewals:
            logger.info(f"Renewal nonce {nonce} already applied to {self.codec.mask(api_key)}")
            return record
        if record.renewal_transaction_id:
            if record.renewal_transaction_id == tx.transaction_id:
                return record
            raise InvalidTransitionError("A renewal is already pending")

        accepted = await self._submit(tx)
        updated = await self.store.transition(
            api_key,
            SubscriptionState.ACTIVE,
            expected_version=record.version,
            renewal_transaction_id=accepted.transaction_id,
        )
        logger.info(f"Renewal submitted for {self.codec.mask(api_key)} (deploy {accepted.transaction_id[:16]}...)")
        return updated

    async def revoke(self, api_key: str, reason: str = "revoked") -> SubscriptionRecord:
        """Terminally revoke a pending or active subscription."""
        record = await self.store.transition(api_key, SubscriptionState.REVOKED, failure_reason=reason)
        logger.info(f"Revoked {self.codec.mask(api_key)}: {reason}")
        return record

    async def register_confirmed(
        self,
        api_key: str,
        plan_id: str,
        expires_at: int,
        subscriber_id: str,
        activated_at: Optional[int] = None
    ) -> SubscriptionRecord:
        """
        Record a subscription confirmed outside this process
        (e.g. settled directly from a wallet).

        Raises:
            MalformedKeyError: if ``api_key`` is not a secret key
            DuplicateKeyError: if the key is already registered
        """
        self.codec.parse(api_key, expected=KeyClass.SECRET)
        now = self._now()

        await self.store.put_pending(SubscriptionRecord(
            api_key=api_key,
            subscriber_id=subscriber_id,
            plan_id=plan_id,
            created_at=now,
            updated_at=now,
        ))
        record = await self.store.transition(
            api_key,
            SubscriptionState.ACTIVE,
            expected_state=SubscriptionState.PENDING,
            activated_at=activated_at or now,
            expires_at=expires_at,
        )
        logger.info(f"Registered confirmed subscription {self.codec.mask(api_key)} on {plan_id}")
        return record

    # ============ RECONCILIATION ============

    def _initial_expiry(self, record: SubscriptionRecord, confirmed_at: int) -> int:
        plan = self.catalog.get(record.plan_id)
        if plan is None:
            raise PlanUnavailableError(f"Cannot compute expiry for unknown plan {record.plan_id}")
        trial_seconds = plan.trial_days * SECONDS_PER_DAY if record.trial else 0
        return confirmed_at + trial_seconds + plan.billing_period_seconds

    async def confirm(
        self,
        transaction_id: str,
        confirmed_at: Optional[int] = None,
        expires_at: Optional[int] = None
    ) -> SubscriptionRecord:
        """
        Promote the record for a confirmed deploy.

        A subscribe deploy moves PENDING -> ACTIVE. A renewal deploy extends
        ``expires_at`` by one billing period. Confirming the same deploy twice
        is a no-op.

        Args:
            transaction_id: Confirmed deploy hash
            confirmed_at: Block time of the confirmation (default now)
            expires_at: Explicit expiry; computed from the plan when omitted
        """
        confirmed_at = confirmed_at if confirmed_at is not None else self._now()

        record = await self.store.get_by_transaction(transaction_id)
        if record is None:
            raise NotFoundError(f"No subscription for deploy {transaction_id[:16]}...")

        if transaction_id in record.settled_renewals:
            return record

        if record.renewal_transaction_id == transaction_id and record.state == SubscriptionState.ACTIVE:
            return await self._confirm_renewal(record, transaction_id, confirmed_at, expires_at)

        if record.state == SubscriptionState.ACTIVE and record.transaction_id == transaction_id:
            return record

        expiry = expires_at if expires_at is not None else self._initial_expiry(record, confirmed_at)
        try:
            updated = await self.store.transition(
                transaction_id,
                SubscriptionState.ACTIVE,
                expected_state=SubscriptionState.PENDING,
                activated_at=confirmed_at,
                expires_at=expiry,
            )
        except InvalidTransitionError:
            current = await self.store.get_by_transaction(transaction_id)
            if current and current.state == SubscriptionState.ACTIVE and current.transaction_id == transaction_id:
                # Lost a race with another confirmation of the same deploy
                return current
            raise

        logger.info(f"Activated {self.codec.mask(updated.api_key)} until {expiry}")
        return updated

    async def _confirm_renewal(
        self,
        record: SubscriptionRecord,
        transaction_id: str,
        confirmed_at: int,
        expires_at: Optional[int]
    ) -> SubscriptionRecord:
        if expires_at is None:
            plan = self.catalog.get(record.plan_id)
            if plan is None:
                raise PlanUnavailableError(f"Cannot compute expiry for unknown plan {record.plan_id}")
            expires_at = max(record.expires_at or confirmed_at, confirmed_at) + plan.billing_period_seconds

        try:
            updated = await self.store.transition(
                record.api_key,
                SubscriptionState.ACTIVE,
                expected_version=record.version,
                expires_at=expires_at,
                renewal_transaction_id=None,
                settled_renewals=record.settled_renewals + (transaction_id,),
            )
        except InvalidTransitionError:
            current = await self.store.get(record.api_key)
            if current and transaction_id in current.settled_renewals:
                return current
            raise

        logger.info(f"Renewed {self.codec.mask(record.api_key)} until {expires_at}")
        return updated

    async def fail(self, transaction_id: str, reason: str) -> SubscriptionRecord:
        """
        Mark the deploy as failed without ever activating its record.

        A failed renewal only clears the pending renewal; the subscription
        keeps its current term.
        """
        record = await self.store.get_by_transaction(transaction_id)
        if record is None:
            raise NotFoundError(f"No subscription for deploy {transaction_id[:16]}...")

        if transaction_id in record.settled_renewals:
            raise InvalidTransitionError("Renewal deploy was already confirmed")

        if record.renewal_transaction_id == transaction_id and record.state == SubscriptionState.ACTIVE:
            updated = await self.store.transition(
                record.api_key,
                SubscriptionState.ACTIVE,
                expected_version=record.version,
                renewal_transaction_id=None,
                failure_reason=reason,
            )
            logger.warning(f"Renewal failed for {self.codec.mask(record.api_key)}: {reason}")
            return updated

        if record.state == SubscriptionState.FAILED:
            return record

        updated = await self.store.transition(
            transaction_id,
            SubscriptionState.FAILED,
            expected_state=SubscriptionState.PENDING,
            failure_reason=reason,
        )
        logger.warning(f"Subscription {self.codec.mask(updated.api_key)} failed: {reason}")
        return updated

    # ============ PLANS ============

    async def create_plan(
        self,
        merchant_id: str,
        name: str,
        base_price: Decimal,
        usage_price: Decimal = Decimal("0"),
        billing_period_seconds: int = 30 * SECONDS_PER_DAY,
        trial_days: int = 0,
        description: str = "",
        features: tuple = ()
    ) -> Plan:
        """
        Create a plan on-chain and register it in the catalog.

        The plan id is derived from the deploy hash, so creating the same
        plan twice yields the same id. Off-chain details (description,
        features) must match the existing plan.

        Raises:
            PlanUnavailableError: same on-chain plan, different details
        """
        draft = Plan(
            plan_id="",
            merchant_id=merchant_id,
            name=name,
            base_price=Decimal(base_price),
            usage_price=Decimal(usage_price),
            billing_period_seconds=billing_period_seconds,
            trial_days=trial_days,
            description=description,
            features=tuple(features),
        )
        tx = self.builder.build_create_plan(
            merchant_id,
            name,
            cspr_to_motes(draft.base_price),
            cspr_to_motes(draft.usage_price),
            billing_period_seconds,
            self.signer,
            trial_days=trial_days,
        )
        plan_id = f"plan_{tx.transaction_id[:16]}"
        existing = self.catalog.get(plan_id)
        if existing:
            if replace(draft, plan_id=plan_id, deprecated=existing.deprecated) != existing:
                raise PlanUnavailableError(f"Plan {plan_id} already exists with different details")
            return existing

        await self._submit(tx)
        return self.catalog.add(replace(draft, plan_id=plan_id))

    def deprecate_plan(self, plan_id: str) -> Plan:
        return self.catalog.deprecate(plan_id)
