import asyncio

import pytest

from casperflow import DeployReconciler, SubscriptionRequest, SubscriptionState

from conftest import NOW, SUBSCRIBER, connection_refused


@pytest.fixture()
def reconciler(orchestrator, ledger, clock):
    return DeployReconciler(orchestrator, ledger, interval=0.01, clock=clock)


def request(nonce):
    return SubscriptionRequest(SUBSCRIBER, "plan_demo_pro", nonce=nonce, requested_at=NOW)


async def test_reconcile_settles_pending_deploys(reconciler, orchestrator, memory_store, node):
    confirmed = await orchestrator.subscribe(request(1))
    failed = await orchestrator.subscribe(request(2))
    waiting = await orchestrator.subscribe(request(3))
    node.succeed(confirmed.transaction_id)
    node.fail(failed.transaction_id, "Out of gas")

    settled = await reconciler.reconcile_once()

    assert settled == 2
    assert (await memory_store.get(confirmed.api_key)).state == SubscriptionState.ACTIVE
    assert (await memory_store.get(failed.api_key)).failure_reason == "Out of gas"
    assert (await memory_store.get(waiting.api_key)).state == SubscriptionState.PENDING


async def test_reconcile_picks_up_renewals(reconciler, orchestrator, memory_store, node):
    record = await orchestrator.subscribe(request(1))
    await orchestrator.confirm(record.transaction_id)
    renewal = await orchestrator.renew(record.api_key, nonce=9)
    node.succeed(renewal.renewal_transaction_id)

    assert await reconciler.reconcile_once() == 1
    assert (await memory_store.get(record.api_key)).renewal_transaction_id is None


async def test_unreachable_nodes_are_retried_later(reconciler, orchestrator, memory_store, node):
    record = await orchestrator.subscribe(request(1))
    for endpoint in ("https://node-a/rpc", "https://node-b/rpc", "https://node-c/rpc"):
        node.behaviours[endpoint] = connection_refused

    assert await reconciler.reconcile_once() == 0
    assert (await memory_store.get(record.api_key)).state == SubscriptionState.PENDING


async def test_background_loop(reconciler, orchestrator, memory_store, node):
    record = await orchestrator.subscribe(request(1))
    node.succeed(record.transaction_id)

    await reconciler.start()
    for _ in range(100):
        if (await memory_store.get(record.api_key)).state == SubscriptionState.ACTIVE:
            break
        await asyncio.sleep(0.01)
    await reconciler.stop()

    assert (await memory_store.get(record.api_key)).state == SubscriptionState.ACTIVE
