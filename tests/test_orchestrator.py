import asyncio
from decimal import Decimal

import pytest

from casperflow import (
    DuplicateKeyError,
    InvalidTransitionError,
    LedgerClient,
    MalformedKeyError,
    NotFoundError,
    PlanUnavailableError,
    SettlementOrchestrator,
    SubscriptionRecord,
    SubscriptionRequest,
    SubscriptionState,
    TerminalRejectionError,
    UnreachableError,
    VerificationService,
)
from casperflow.models import SECONDS_PER_DAY

from conftest import NOW, SUBSCRIBER, connection_refused, rpc_error

MONTH = 30 * SECONDS_PER_DAY


def request(nonce=1, plan_id="plan_demo_pro", trial=False):
    return SubscriptionRequest(SUBSCRIBER, plan_id, nonce=nonce, requested_at=NOW, trial=trial)


@pytest.fixture()
def verifier(memory_store, codec, catalog, clock):
    return VerificationService(memory_store, codec, catalog, clock=clock)


async def test_subscribe_then_confirm(orchestrator, verifier, builder, signer, node):
    record = await orchestrator.subscribe(request())

    assert record.state == SubscriptionState.PENDING
    assert record.api_key.startswith("cf_sk_")
    assert record.transaction_id == builder.build(request(), signer).transaction_id
    assert (await verifier.verify(record.api_key)).reason.value == "pending"

    active = await orchestrator.confirm(record.transaction_id)

    assert active.state == SubscriptionState.ACTIVE
    assert active.activated_at == NOW
    assert active.expires_at == NOW + MONTH
    assert (await verifier.verify(record.api_key)).valid
    assert len(node.calls) == 1


async def test_trial_extends_first_term(orchestrator):
    record = await orchestrator.subscribe(request(trial=True))

    active = await orchestrator.confirm(record.transaction_id, confirmed_at=NOW)

    assert active.trial
    assert active.expires_at == NOW + 14 * SECONDS_PER_DAY + MONTH


async def test_explicit_expiry_on_confirm(orchestrator):
    record = await orchestrator.subscribe(request())

    active = await orchestrator.confirm(record.transaction_id, confirmed_at=NOW, expires_at=NOW + 10)

    assert active.expires_at == NOW + 10


async def test_resubmission_returns_same_record(orchestrator, node):
    first = await orchestrator.subscribe(request())
    second = await orchestrator.subscribe(request())

    assert second.api_key == first.api_key
    assert len(node.calls) == 1


async def test_concurrent_resubmission(orchestrator, node):
    records = await asyncio.gather(*(orchestrator.subscribe(request()) for _ in range(4)))

    assert len({r.api_key for r in records}) == 1
    assert orchestrator._request_locks == {}


async def test_request_locks_are_released(orchestrator):
    for nonce in range(50):
        await orchestrator.subscribe(request(nonce=nonce))

    assert orchestrator._request_locks == {}


async def test_slow_nodes_fail_over_then_activate(memory_store, builder, signer, codec, catalog, clock, node):
    async def hang(payload):
        await asyncio.sleep(5)

    a, b, c = "https://node-a/rpc", "https://node-b/rpc", "https://node-c/rpc"
    node.behaviours[a] = hang
    node.behaviours[b] = hang
    ledger = LedgerClient([a, b, c], attempt_timeout=0.05, total_deadline=2.0, transport=node.transport())
    orchestrator = SettlementOrchestrator(memory_store, ledger, builder, signer, codec, catalog, clock=clock)
    verifier = VerificationService(memory_store, codec, catalog, clock=clock)

    record = await orchestrator.subscribe(request(plan_id="plan_demo_starter"))

    assert record.state == SubscriptionState.PENDING
    assert node.calls == [a, b, c]
    assert (await verifier.verify(record.api_key)).reason.value == "pending"

    clock.advance(45)
    active = await orchestrator.confirm(record.transaction_id)

    assert active.state == SubscriptionState.ACTIVE
    assert active.activated_at == NOW + 45
    assert active.expires_at == active.activated_at + catalog.get("plan_demo_starter").billing_period_seconds
    result = await verifier.verify(record.api_key)
    assert result.valid
    assert result.expires_at == NOW + 45 + MONTH
    await ledger.close()


    assert len(node.calls) == 1


async def test_unreachable_then_retry_is_idempotent(orchestrator, memory_store, node):
    for endpoint in ("https://node-a/rpc", "https://node-b/rpc", "https://node-c/rpc"):
        node.behaviours[endpoint] = connection_refused

    with pytest.raises(UnreachableError) as exc_info:
        await orchestrator.subscribe(request())
    assert exc_info.value.retryable
    assert await memory_store.list_by_subscriber(SUBSCRIBER) == []

    node.behaviours.clear()
    record = await orchestrator.subscribe(request())

    assert record.state == SubscriptionState.PENDING
    assert len(await memory_store.list_by_subscriber(SUBSCRIBER)) == 1


async def test_terminal_rejection_writes_nothing(orchestrator, memory_store, node):
    node.behaviours["https://node-a/rpc"] = lambda p: rpc_error(p, -32008, "Invalid deploy: bad chain name")

    with pytest.raises(TerminalRejectionError, match="bad chain name"):
        await orchestrator.subscribe(request())
    assert await memory_store.list_by_subscriber(SUBSCRIBER) == []


async def test_unknown_plan(orchestrator, node):
    with pytest.raises(PlanUnavailableError):
        await orchestrator.subscribe(request(plan_id="plan_missing"))
    assert node.calls == []


async def test_deprecated_plan_rejects_new_subscriptions(orchestrator):
    orchestrator.deprecate_plan("plan_demo_starter")

    with pytest.raises(PlanUnavailableError):
        await orchestrator.subscribe(request(plan_id="plan_demo_starter"))


async def test_failed_deploy(orchestrator, verifier):
    record = await orchestrator.subscribe(request())

    failed = await orchestrator.fail(record.transaction_id, "User error: 1")

    assert failed.state == SubscriptionState.FAILED
    assert failed.failure_reason == "User error: 1"
    assert (await verifier.verify(record.api_key)).reason.value == "failed"
    assert (await orchestrator.fail(record.transaction_id, "again")).failure_reason == "User error: 1"

    with pytest.raises(TerminalRejectionError):
        await orchestrator.subscribe(request())
    with pytest.raises(InvalidTransitionError):
        await orchestrator.confirm(record.transaction_id)


async def test_confirm_is_idempotent(orchestrator):
    record = await orchestrator.subscribe(request())

    first = await orchestrator.confirm(record.transaction_id)
    second = await orchestrator.confirm(record.transaction_id)

    assert second.version == first.version
    assert second.expires_at == first.expires_at


async def test_concurrent_confirms_activate_once(orchestrator, memory_store):
    record = await orchestrator.subscribe(request())

    results = await asyncio.gather(*(orchestrator.confirm(record.transaction_id) for _ in range(5)))

    assert all(r.state == SubscriptionState.ACTIVE for r in results)
    assert (await memory_store.get(record.api_key)).version == 1


async def test_confirm_unknown_deploy(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.confirm("ff" * 32)


async def test_fail_after_activation_is_rejected(orchestrator):
    record = await orchestrator.subscribe(request())
    await orchestrator.confirm(record.transaction_id)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.fail(record.transaction_id, "late failure")


async def test_renewal_extends_term(orchestrator, clock):
    record = await orchestrator.subscribe(request())
    await orchestrator.confirm(record.transaction_id)

    pending = await orchestrator.renew(record.api_key, nonce=2)
    assert pending.state == SubscriptionState.ACTIVE
    assert pending.renewal_transaction_id

    assert (await orchestrator.renew(record.api_key, nonce=2)).renewal_transaction_id == pending.renewal_transaction_id
    with pytest.raises(InvalidTransitionError):
        await orchestrator.renew(record.api_key, nonce=3)

    clock.advance(SECONDS_PER_DAY)
    renewed = await orchestrator.confirm(pending.renewal_transaction_id)

    assert renewed.expires_at == NOW + 2 * MONTH
    assert renewed.renewal_transaction_id is None


async def test_reused_renewal_nonce_does_not_extend_again(orchestrator, memory_store, clock, node):
    record = await orchestrator.subscribe(request())
    await orchestrator.confirm(record.transaction_id)
    pending = await orchestrator.renew(record.api_key, nonce=2)
    renewal_tx = pending.renewal_transaction_id
    clock.advance(SECONDS_PER_DAY)
    renewed = await orchestrator.confirm(renewal_tx)
    assert renewed.settled_renewals == (renewal_tx,)

    node.behaviours["https://node-a/rpc"] = lambda p: rpc_error(p, -32008, "Deploy already received: duplicate")
    again = await orchestrator.renew(record.api_key, nonce=2)

    assert again.renewal_transaction_id is None
    assert again.expires_at == NOW + 2 * MONTH
    assert len(node.calls) == 2

    clock.advance(SECONDS_PER_DAY)
    replayed = await orchestrator.confirm(renewal_tx)

    assert replayed.expires_at == NOW + 2 * MONTH
    assert replayed.version == renewed.version
    assert (await memory_store.get_by_transaction(renewal_tx)).api_key == record.api_key
    with pytest.raises(InvalidTransitionError):
        await orchestrator.fail(renewal_tx, "late failure")

    third = await orchestrator.renew(record.api_key, nonce=3)
    assert third.renewal_transaction_id not in (None, renewal_tx)


async def test_renewal_after_lapse_starts_from_confirmation(orchestrator, clock):
    record = await orchestrator.subscribe(request())
    await orchestrator.confirm(record.transaction_id)
    pending = await orchestrator.renew(record.api_key, nonce=2)

    clock.advance(MONTH + 100)
    renewed = await orchestrator.confirm(pending.renewal_transaction_id)

    assert renewed.expires_at == NOW + MONTH + 100 + MONTH


async def test_failed_renewal_keeps_current_term(orchestrator):
    record = await orchestrator.subscribe(request())
    active = await orchestrator.confirm(record.transaction_id)
    pending = await orchestrator.renew(record.api_key, nonce=2)

    after = await orchestrator.fail(pending.renewal_transaction_id, "insufficient funds")

    assert after.state == SubscriptionState.ACTIVE
    assert after.expires_at == active.expires_at
    assert after.renewal_transaction_id is None


async def test_renew_requires_active(orchestrator):
    record = await orchestrator.subscribe(request())

    with pytest.raises(InvalidTransitionError):
        await orchestrator.renew(record.api_key, nonce=2)
    with pytest.raises(NotFoundError):
        await orchestrator.renew("cf_sk_" + "0" * 32, nonce=2)


async def test_revoke(orchestrator, verifier):
    record = await orchestrator.subscribe(request())
    await orchestrator.confirm(record.transaction_id)

    revoked = await orchestrator.revoke(record.api_key, "chargeback")

    assert revoked.state == SubscriptionState.REVOKED
    assert (await verifier.verify(record.api_key)).reason.value == "revoked"
    with pytest.raises(InvalidTransitionError):
        await orchestrator.revoke(record.api_key)


async def test_register_confirmed(orchestrator, verifier, codec):
    key = codec.issue(SUBSCRIBER, "plan_demo_pro")

    record = await orchestrator.register_confirmed(key, "plan_demo_pro", NOW + 60, SUBSCRIBER)

    assert record.state == SubscriptionState.ACTIVE
    assert (await verifier.verify(key)).valid
    with pytest.raises(DuplicateKeyError):
        await orchestrator.register_confirmed(key, "plan_demo_pro", NOW + 60, SUBSCRIBER)
    with pytest.raises(MalformedKeyError):
        await orchestrator.register_confirmed("cf_sk_short", "plan_demo_pro", NOW + 60, SUBSCRIBER)


async def test_key_collision_is_rerolled(orchestrator, memory_store, codec):
    taken = "cf_sk_" + "e" * 32
    await memory_store.put_pending(SubscriptionRecord(
        api_key=taken, subscriber_id="01" + "00" * 32, plan_id="plan_demo_pro", transaction_id="dd" * 32
    ))
    fresh = iter([taken, "cf_sk_" + "f" * 32])
    orchestrator.codec.issue = lambda subscriber_id, plan_id: next(fresh)

    record = await orchestrator.subscribe(request())

    assert record.api_key == "cf_sk_" + "f" * 32


async def test_create_plan(orchestrator, catalog, node):
    plan = await orchestrator.create_plan(
        merchant_id=SUBSCRIBER,
        name="Gold",
        base_price=Decimal("25"),
        trial_days=3,
        features=("Webhooks",),
    )

    assert plan.plan_id.startswith("plan_")
    assert len(plan.plan_id) == len("plan_") + 16
    assert catalog.get(plan.plan_id) == plan

    again = await orchestrator.create_plan(
        merchant_id=SUBSCRIBER,
        name="Gold",
        base_price=Decimal("25"),
        trial_days=3,
        features=("Webhooks",),
    )
    assert again == plan
    assert len(node.calls) == 1

    no_trial = await orchestrator.create_plan(merchant_id=SUBSCRIBER, name="Gold", base_price=Decimal("25"))
    assert no_trial.plan_id != plan.plan_id
    assert no_trial.trial_days == 0
    assert catalog.get(plan.plan_id).trial_days == 3
    assert len(node.calls) == 2

    record = await orchestrator.subscribe(request(plan_id=plan.plan_id))
    assert record.plan_id == plan.plan_id


async def test_create_plan_rejects_conflicting_details(orchestrator, catalog, node):
    plan = await orchestrator.create_plan(
        merchant_id=SUBSCRIBER, name="Gold", base_price=Decimal("25"), description="Original"
    )

    with pytest.raises(PlanUnavailableError):
        await orchestrator.create_plan(
            merchant_id=SUBSCRIBER, name="Gold", base_price=Decimal("25"), description="Rewritten"
        )
    with pytest.raises(PlanUnavailableError):
        await orchestrator.create_plan(
            merchant_id=SUBSCRIBER, name="Gold", base_price=Decimal("25"), description="Original",
            features=("SLA",),
        )

    assert catalog.get(plan.plan_id).description == "Original"
    assert len(node.calls) == 1


async def test_deprecated_plan_honors_existing_term(orchestrator, verifier):
    record = await orchestrator.subscribe(request())
    await orchestrator.confirm(record.transaction_id)

    orchestrator.deprecate_plan("plan_demo_pro")

    assert (await verifier.verify(record.api_key)).valid
    with pytest.raises(PlanUnavailableError):
        await orchestrator.renew(record.api_key, nonce=2)
