import asyncio
import inspect
import json
from typing import Callable, Dict, List

import httpx
import pytest

from casperflow import (
    ApiKeyCodec,
    DeployBuilder,
    DeploySigner,
    InMemorySubscriptionStore,
    LedgerClient,
    PlanCatalog,
    SettlementOrchestrator,
    SqliteSubscriptionStore,
)

SUBSCRIBER = "01" + "ab" * 32
CONTRACT_HASH = "55fb73955a3e736cd516af0956057a2c55f986d1b3a421b403294a2c288d2143"
SIGNER_SEED = "9d61b19deffd5a60ba844af492ec2cc44449c5697b326919703bac031cae7f60"
NOW = 1_700_000_000


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run async test functions without requiring pytest-asyncio plugin."""

    test_func = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_func):
        argnames = pyfuncitem._fixtureinfo.argnames
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(test_func(**{name: pyfuncitem.funcargs[name] for name in argnames}))
        finally:
            loop.close()
        return True
    return None


class FakeClock:
    """Settable clock for expiry tests."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeNode:
    """
    Scripted Casper node behind httpx.MockTransport.

    ``behaviours`` maps an endpoint URL to a callable taking the decoded
    JSON-RPC request and returning an httpx.Response (or raising).
    Unlisted endpoints accept every deploy.
    """

    def __init__(self):
        self.behaviours: Dict[str, Callable] = {}
        self.calls: List[str] = []
        self.statuses: Dict[str, dict] = {}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        payload = json.loads(request.content)
        self.calls.append(url)

        behaviour = self.behaviours.get(url)
        if behaviour is not None:
            response = behaviour(payload)
            if inspect.isawaitable(response):
                response = await response
            return response

        if payload["method"] == "info_get_deploy":
            deploy_hash = payload["params"]["deploy_hash"]
            if deploy_hash not in self.statuses:
                return rpc_error(payload, -32000, "No such deploy")
            return rpc_result(payload, self.statuses[deploy_hash])

        return rpc_result(payload, {"api_version": "1.5.6", "deploy_hash": payload["params"]["deploy"]["hash"]})

    def succeed(self, deploy_hash: str, block_hash: str = "b" * 64):
        self.statuses[deploy_hash] = {
            "deploy": {"hash": deploy_hash},
            "execution_results": [{"block_hash": block_hash, "result": {"Success": {"cost": "100"}}}],
        }

    def fail(self, deploy_hash: str, message: str = "User error: 1"):
        self.statuses[deploy_hash] = {
            "deploy": {"hash": deploy_hash},
            "execution_results": [{"block_hash": "c" * 64, "result": {"Failure": {"error_message": message}}}],
        }


def rpc_result(payload: dict, result: dict) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})


def rpc_error(payload: dict, code: int, message: str) -> httpx.Response:
    return httpx.Response(
        200,
        json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": code, "message": message}},
    )


def rpc_result_error(payload: dict, code: int, message: str) -> httpx.Response:
    """Error nested under ``result``, as some node proxies report it."""
    return rpc_result(payload, {"error": {"code": code, "message": message}})


def connection_refused(payload: dict) -> httpx.Response:
    raise httpx.ConnectError("Connection refused")


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def node():
    return FakeNode()


@pytest.fixture()
def signer():
    return DeploySigner(SIGNER_SEED)


@pytest.fixture()
def codec():
    return ApiKeyCodec()


@pytest.fixture()
def catalog():
    return PlanCatalog()


@pytest.fixture()
def builder():
    return DeployBuilder("casper-test", CONTRACT_HASH, 2_500_000_000)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Every store test runs against both backends."""
    if request.param == "memory":
        return InMemorySubscriptionStore()
    return SqliteSubscriptionStore(str(tmp_path / "subscriptions.db"))


@pytest.fixture()
def memory_store():
    return InMemorySubscriptionStore()


@pytest.fixture()
def ledger(node):
    return LedgerClient(
        ["https://node-a/rpc", "https://node-b/rpc", "https://node-c/rpc"],
        attempt_timeout=1.0,
        total_deadline=3.0,
        transport=node.transport(),
    )


@pytest.fixture()
def orchestrator(memory_store, ledger, builder, signer, codec, catalog, clock):
    return SettlementOrchestrator(memory_store, ledger, builder, signer, codec, catalog, clock=clock)
