"""
CasperFlow SDK - Ledger Client
Submits signed deploys to Casper node JSON-RPC endpoints with failover.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .errors import SigningFailureError, UnreachableError
from .models import Accepted, Rejected, SignedTransaction, SubmissionOutcome, Unreachable
from .security import DeploySigner

logger = logging.getLogger("casperflow.ledger_client")

# JSON-RPC codes that say "this node can't help right now"
TRANSIENT_CODES = {-32601, -32603}

TRANSIENT_MARKERS = ("busy", "overloaded", "try again", "temporarily", "unavailable", "timeout")
DUPLICATE_MARKERS = ("duplicate", "already received", "already exists")


def classify_rpc_error(error: Dict[str, Any]) -> bool:
    """
    Decide whether a JSON-RPC error from a node is terminal.

    Returns:
        True if resending the same deploy elsewhere cannot succeed
    """
    code = error.get("code")
    message = str(error.get("message", "")).lower()
    data = str(error.get("data", "")).lower()

    if code in TRANSIENT_CODES:
        return False
    if any(marker in message or marker in data for marker in TRANSIENT_MARKERS):
        return False
    # Invalid signature, insufficient balance, wrong chain name, expired ttl...
    return True


def _is_duplicate(error: Dict[str, Any]) -> bool:
    text = f"{error.get('message', '')} {error.get('data', '')}".lower()
    return any(marker in text for marker in DUPLICATE_MARKERS)


@dataclass(frozen=True)
class DeployStatus:
    """Execution state of a deploy as reported by a node."""
    deploy_hash: str
    state: str  # "pending" | "confirmed" | "failed"
    block_hash: Optional[str] = None
    error_message: Optional[str] = None
    endpoint: Optional[str] = None


class LedgerClient:
    """
    JSON-RPC client for Casper nodes.

    ``submit`` walks the candidate endpoints in order:
    - the first ``Accepted`` wins
    - a terminal ``Rejected`` stops immediately (no other node will accept it)
    - timeouts, transport errors, bad responses and transient rejections
      move on to the next endpoint
    Running out of endpoints (or of total deadline) yields ``Unreachable``.

    Args:
        endpoints: Ordered candidate RPC URLs
        attempt_timeout: Seconds allowed for a single endpoint
        total_deadline: Seconds allowed for the whole submission
        transport: Optional httpx transport (tests use httpx.MockTransport)

    Example:
        client = LedgerClient(["https://node.testnet.casper.network/rpc"])
        outcome = await client.submit(signed_tx)
        if isinstance(outcome, Accepted):
            print(f"Deploy hash: {outcome.transaction_id}")
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        attempt_timeout: float = 15.0,
        total_deadline: float = 45.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.endpoints = list(endpoints)
        self.attempt_timeout = attempt_timeout
        self.total_deadline = total_deadline
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

        logger.info(f"Ledger client initialized with {len(self.endpoints)} endpoint(s)")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.attempt_timeout,
                transport=self._transport
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _rpc(self, endpoint: str, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """POST one JSON-RPC call. Transport and HTTP errors propagate."""
        client = await self._get_client()
        resp = await client.post(
            endpoint,
            json={
                "jsonrpc": "2.0",
                "id": next(self._ids),
                "method": method,
                "params": params,
            },
            headers={"Content-Type": "application/json"},
        )
        resp.raise_for_status()
        body = resp.json()
        if not isinstance(body, dict):
            raise ValueError("JSON-RPC response is not an object")
        return body

    async def _put_deploy(self, endpoint: str, tx: SignedTransaction) -> SubmissionOutcome:
        """Single submission attempt against one endpoint."""
        try:
            body = await self._rpc(endpoint, "account_put_deploy", {"deploy": tx.to_json()})
        except httpx.TimeoutException:
            logger.warning(f"Timeout: {endpoint}")
            return Unreachable([endpoint], {endpoint: "timeout"})
        except httpx.HTTPStatusError as e:
            logger.warning(f"HTTP {e.response.status_code}: {endpoint}")
            return Unreachable([endpoint], {endpoint: f"http {e.response.status_code}"})
        except httpx.TransportError as e:
            logger.warning(f"Connection failed: {endpoint} ({type(e).__name__})")
            return Unreachable([endpoint], {endpoint: "connection error"})
        except ValueError as e:
            logger.warning(f"Malformed response from {endpoint}: {e}")
            return Unreachable([endpoint], {endpoint: "malformed response"})

        result = body.get("result") or {}
        error = body.get("error") or (result.get("error") if isinstance(result, dict) else None)

        if isinstance(result, dict) and result.get("deploy_hash"):
            deploy_hash = result["deploy_hash"]
            if deploy_hash != tx.transaction_id:
                logger.warning(f"Node returned hash {deploy_hash[:16]}... for {tx.transaction_id[:16]}...")
            return Accepted(transaction_id=deploy_hash, endpoint=endpoint)

        if isinstance(error, dict):
            if _is_duplicate(error):
                logger.info(f"Deploy {tx.transaction_id[:16]}... already known to {endpoint}")
                return Accepted(transaction_id=tx.transaction_id, endpoint=endpoint)
            reason = str(error.get("message") or "rejected")
            terminal = classify_rpc_error(error)
            logger.warning(f"Rejected by {endpoint}: {reason} ({'terminal' if terminal else 'transient'})")
            return Rejected(reason=reason, endpoint=endpoint, terminal=terminal)

        return Unreachable([endpoint], {endpoint: "malformed response"})

    async def submit(
        self,
        tx: SignedTransaction,
        endpoints: Optional[Sequence[str]] = None,
        attempt_timeout: Optional[float] = None,
        total_deadline: Optional[float] = None
    ) -> SubmissionOutcome:
        """
        Submit a signed deploy, failing over across endpoints.

        Args:
            tx: Signed deploy (its signature is re-verified before sending)
            endpoints: Override the configured endpoint order
            attempt_timeout: Override the per-endpoint timeout
            total_deadline: Override the total deadline

        Returns:
            Accepted, a terminal Rejected, or Unreachable listing every
            endpoint that was attempted

        Raises:
            SigningFailureError: if the deploy is unsigned or mis-signed
        """
        if not tx.signature or not DeploySigner.verify(tx.payload_hash, tx.signature, tx.signer_public_key):
            raise SigningFailureError("Refusing to submit a deploy whose signature does not verify")

        candidates = list(endpoints if endpoints is not None else self.endpoints)
        per_attempt = attempt_timeout if attempt_timeout is not None else self.attempt_timeout
        deadline_s = total_deadline if total_deadline is not None else self.total_deadline

        loop = asyncio.get_running_loop()
        deadline = loop.time() + deadline_s
        attempted: List[str] = []
        errors: Dict[str, str] = {}

        for endpoint in candidates:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Submission deadline reached after {len(attempted)} endpoint(s)")
                break

            attempted.append(endpoint)
            logger.info(f"Trying: {endpoint}")
            try:
                outcome = await asyncio.wait_for(
                    self._put_deploy(endpoint, tx),
                    timeout=min(per_attempt, remaining)
                )
            except asyncio.TimeoutError:
                logger.warning(f"Attempt abandoned after {min(per_attempt, remaining):.1f}s: {endpoint}")
                errors[endpoint] = "timeout"
                continue

            if isinstance(outcome, Accepted):
                logger.info(f"Deploy accepted by {endpoint}: {outcome.transaction_id[:16]}...")
                return outcome
            if isinstance(outcome, Rejected):
                if outcome.terminal:
                    return outcome
                errors[endpoint] = outcome.reason
                continue
            errors.update(outcome.errors)

        logger.error(f"All nodes failed for deploy {tx.transaction_id[:16]}...")
        return Unreachable(endpoints=attempted, errors=errors)

    async def get_deploy_status(
        self,
        deploy_hash: str,
        endpoints: Optional[Sequence[str]] = None
    ) -> DeployStatus:
        """
        Look up a deploy's execution result via ``info_get_deploy``.

        Raises:
            UnreachableError: if no endpoint answered
        """
        candidates = list(endpoints if endpoints is not None else self.endpoints)
        attempted: List[str] = []

        for endpoint in candidates:
            attempted.append(endpoint)
            try:
                body = await asyncio.wait_for(
                    self._rpc(endpoint, "info_get_deploy", {"deploy_hash": deploy_hash}),
                    timeout=self.attempt_timeout
                )
            except (asyncio.TimeoutError, httpx.HTTPError, ValueError) as e:
                logger.warning(f"Status lookup failed on {endpoint}: {type(e).__name__}")
                continue

            if body.get("error"):
                # Node hasn't seen the deploy (yet)
                return DeployStatus(deploy_hash=deploy_hash, state="pending", endpoint=endpoint)

            return self._parse_execution(deploy_hash, body.get("result") or {}, endpoint)

        raise UnreachableError(attempted, f"Could not fetch status of deploy {deploy_hash[:16]}...")

    @staticmethod
    def _parse_execution(deploy_hash: str, result: Dict[str, Any], endpoint: str) -> DeployStatus:
        executions = result.get("execution_results") or []
        if not executions:
            return DeployStatus(deploy_hash=deploy_hash, state="pending", endpoint=endpoint)

        execution = executions[0]
        outcome = execution.get("result") or {}
        block_hash = execution.get("block_hash")

        if "Failure" in outcome:
            return DeployStatus(
                deploy_hash=deploy_hash,
                state="failed",
                block_hash=block_hash,
                error_message=(outcome["Failure"] or {}).get("error_message", "execution failed"),
                endpoint=endpoint,
            )
        if "Success" in outcome:
            return DeployStatus(deploy_hash=deploy_hash, state="confirmed", block_hash=block_hash, endpoint=endpoint)

        return DeployStatus(deploy_hash=deploy_hash, state="pending", endpoint=endpoint)
