"""
CasperFlow SDK - Deploy Reconciler
Optional background poller that settles pending deploys.

Correctness never depends on this loop: entitlement is checked lazily at
verification time, and ``confirm`` / ``fail`` can equally be driven by a
webhook. The poller is a convenience for deployments without one.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from .errors import CasperFlowError, UnreachableError
from .ledger_client import DeployStatus, LedgerClient
from .models import SubscriptionRecord, SubscriptionState
from .orchestrator import SettlementOrchestrator

logger = logging.getLogger("casperflow.reconciler")


class DeployReconciler:
    """
    Polls ``info_get_deploy`` for every pending subscription and renewal.

    Example:
        reconciler = DeployReconciler(orchestrator, ledger, interval=30)
        await reconciler.start()
        ...
        await reconciler.stop()
    """

    def __init__(
        self,
        orchestrator: SettlementOrchestrator,
        ledger: LedgerClient,
        interval: int = 30,
        clock: Callable[[], float] = time.time
    ):
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.interval = interval
        self.clock = clock

        self._task: Optional[asyncio.Task] = None
        self._running = False

        logger.info(f"Deploy reconciler initialized (interval: {self.interval}s)")

    async def start(self):
        """Start the background reconciliation loop."""
        if self._running:
            logger.warning("Deploy reconciler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._process_loop())
        logger.info("Deploy reconciler started")

    async def stop(self):
        """Stop the background reconciliation loop."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Deploy reconciler stopped")

    async def _process_loop(self):
        logger.info("Starting reconciliation loop")

        while self._running:
            try:
                await self.reconcile_once()
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

            await asyncio.sleep(self.interval)

    async def _pending_deploys(self) -> List[str]:
        store = self.orchestrator.store
        deploys = [r.transaction_id for r in await store.list_by_state(SubscriptionState.PENDING) if r.transaction_id]
        active: List[SubscriptionRecord] = await store.list_by_state(SubscriptionState.ACTIVE)
        deploys.extend(r.renewal_transaction_id for r in active if r.renewal_transaction_id)
        return deploys

    async def reconcile_once(self) -> int:
        """
        Check every pending deploy once.

        Returns:
            Number of deploys settled (confirmed or failed)
        """
        settled = 0

        for deploy_hash in await self._pending_deploys():
            try:
                status = await self.ledger.get_deploy_status(deploy_hash)
            except UnreachableError:
                logger.warning(f"Status of {deploy_hash[:16]}... unavailable, will retry")
                continue

            if await self._apply(status):
                settled += 1

        if settled:
            logger.info(f"Reconciled {settled} deploy(s)")
        return settled

    async def _apply(self, status: DeployStatus) -> bool:
        try:
            if status.state == "confirmed":
                await self.orchestrator.confirm(status.deploy_hash, confirmed_at=int(self.clock()))
                return True
            if status.state == "failed":
                await self.orchestrator.fail(status.deploy_hash, status.error_message or "execution failed")
                return True
        except CasperFlowError as e:
            logger.warning(f"Could not settle {status.deploy_hash[:16]}...: {e.message}")
        return False
