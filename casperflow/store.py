"""
CasperFlow SDK - Subscription State Store
API key -> subscription record mapping with atomic, forward-only transitions.
"""

import abc
import asyncio
import json
import logging
import time
from dataclasses import replace
from typing import Dict, List, Optional, Set

import aiosqlite

from .errors import DuplicateKeyError, InvalidTransitionError, NotFoundError
from .models import TRANSITIONS, SubscriptionRecord, SubscriptionState

logger = logging.getLogger("casperflow.store")

MUTABLE_FIELDS = frozenset({
    "activated_at",
    "expires_at",
    "transaction_id",
    "renewal_transaction_id",
    "settled_renewals",
    "failure_reason",
})

CAS_RETRIES = 5


def check_transition(
    record: SubscriptionRecord,
    new_state: SubscriptionState,
    expected_state: Optional[SubscriptionState] = None,
    expected_version: Optional[int] = None
):
    """
    Validate a state change against the lifecycle graph.

    Raises:
        InvalidTransitionError: for backward moves, moves out of a terminal
            state, or when ``expected_state`` / ``expected_version`` no
            longer hold
    """
    if expected_version is not None and record.version != expected_version:
        raise InvalidTransitionError("Subscription changed since it was read")
    if expected_state is not None and record.state != expected_state:
        raise InvalidTransitionError(
            f"Expected {expected_state.value}, record is {record.state.value}"
        )
    if new_state not in TRANSITIONS[record.state]:
        raise InvalidTransitionError(
            f"Cannot move from {record.state.value} to {new_state.value}"
        )


def _check_fields(fields: Dict) -> None:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be changed by a transition: {sorted(unknown)}")


def _transaction_ids(record: SubscriptionRecord) -> Set[str]:
    """Every deploy hash that resolves to this record."""
    ids = {record.transaction_id, record.renewal_transaction_id, *record.settled_renewals}
    ids.discard(None)
    return ids


class SubscriptionStore(abc.ABC):
    """
    Storage interface for subscription records.

    Keys are compared by exact match only. Implementations must make
    ``transition`` linearizable per record: two concurrent transitions on the
    same record never both apply on top of the same prior version.
    """

    async def init_db(self):
        """Prepare the backend (no-op for in-memory stores)."""

    async def close(self):
        """Release backend resources."""

    @abc.abstractmethod
    async def put_pending(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """
        Insert a new PENDING record.

        A record already holding the same transaction id is returned as-is
        (idempotent resubmission).

        Raises:
            DuplicateKeyError: if the API key is already taken
        """

    @abc.abstractmethod
    async def get(self, api_key: str) -> Optional[SubscriptionRecord]:
        """Point lookup by API key."""

    @abc.abstractmethod
    async def get_by_transaction(self, transaction_id: str) -> Optional[SubscriptionRecord]:
        """Lookup by subscribe, pending renewal or settled renewal deploy hash."""

    @abc.abstractmethod
    async def list_by_state(self, state: SubscriptionState) -> List[SubscriptionRecord]:
        pass

    @abc.abstractmethod
    async def list_by_subscriber(self, subscriber_id: str) -> List[SubscriptionRecord]:
        pass

    @abc.abstractmethod
    async def transition(
        self,
        key: str,
        new_state: SubscriptionState,
        expected_state: Optional[SubscriptionState] = None,
        expected_version: Optional[int] = None,
        **fields
    ) -> SubscriptionRecord:
        """
        Atomically move a record (found by API key or transaction id) to
        ``new_state`` and update ``fields``.

        Raises:
            NotFoundError: if no record matches ``key``
            InvalidTransitionError: if the move is not allowed
        """

    async def find_by_nonce(self, subscriber_id: str, plan_id: str, nonce: int) -> Optional[SubscriptionRecord]:
        for record in await self.list_by_subscriber(subscriber_id):
            if record.plan_id == plan_id and record.nonce == nonce:
                return record
        return None


class InMemorySubscriptionStore(SubscriptionStore):
    """
    Process-local store. Each record has its own asyncio lock; different
    records never contend.
    """

    def __init__(self):
        self._records: Dict[str, SubscriptionRecord] = {}
        self._by_tx: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, api_key: str) -> asyncio.Lock:
        lock = self._locks.get(api_key)
        if lock is None:
            lock = self._locks[api_key] = asyncio.Lock()
        return lock

    def _resolve(self, key: str) -> Optional[str]:
        if key in self._records:
            return key
        return self._by_tx.get(key)

    async def put_pending(self, record: SubscriptionRecord) -> SubscriptionRecord:
        if record.transaction_id and record.transaction_id in self._by_tx:
            existing = self._records[self._by_tx[record.transaction_id]]
            logger.info(f"Deploy {record.transaction_id[:16]}... already recorded")
            return replace(existing)
        if record.api_key in self._records:
            raise DuplicateKeyError("API key already exists")

        stored = replace(record, state=SubscriptionState.PENDING, version=0)
        self._records[stored.api_key] = stored
        if stored.transaction_id:
            self._by_tx[stored.transaction_id] = stored.api_key
        return replace(stored)

    async def get(self, api_key: str) -> Optional[SubscriptionRecord]:
        record = self._records.get(api_key)
        return replace(record) if record else None

    async def get_by_transaction(self, transaction_id: str) -> Optional[SubscriptionRecord]:
        api_key = self._by_tx.get(transaction_id)
        return await self.get(api_key) if api_key else None

    async def list_by_state(self, state: SubscriptionState) -> List[SubscriptionRecord]:
        return [replace(r) for r in self._records.values() if r.state == state]

    async def list_by_subscriber(self, subscriber_id: str) -> List[SubscriptionRecord]:
        return [replace(r) for r in self._records.values() if r.subscriber_id == subscriber_id]

    async def transition(
        self,
        key: str,
        new_state: SubscriptionState,
        expected_state: Optional[SubscriptionState] = None,
        expected_version: Optional[int] = None,
        **fields
    ) -> SubscriptionRecord:
        _check_fields(fields)
        api_key = self._resolve(key)
        if api_key is None:
            raise NotFoundError("Subscription not found")

        async with self._lock_for(api_key):
            current = self._records[api_key]
            check_transition(current, new_state, expected_state, expected_version)

            updated = replace(
                current,
                state=new_state,
                updated_at=int(time.time()),
                version=current.version + 1,
                **fields
            )
            self._records[api_key] = updated
            for tx_id in _transaction_ids(current) - _transaction_ids(updated):
                self._by_tx.pop(tx_id, None)
            for tx_id in _transaction_ids(updated):
                self._by_tx[tx_id] = api_key
            return replace(updated)

    async def reset(self):
        self._records.clear()
        self._by_tx.clear()
        self._locks.clear()


class SqliteSubscriptionStore(SubscriptionStore):
    """
    SQLite-backed subscription persistence.

    Transitions are compare-and-swap updates on the ``version`` column, so
    several processes can share one database file.

    Example:
        store = SqliteSubscriptionStore("casperflow.db")
        await store.init_db()

        await store.put_pending(record)
        await store.transition(tx_id, SubscriptionState.ACTIVE, activated_at=now, expires_at=now + period)
    """

    COLUMNS = (
        "api_key", "subscriber_id", "plan_id", "state", "nonce", "trial", "activated_at",
        "expires_at", "transaction_id", "renewal_transaction_id", "settled_renewals", "failure_reason",
        "created_at", "updated_at", "version",
    )

    def __init__(self, db_path: str = "casperflow.db"):
        self.db_path = db_path
        self._initialized = False

    async def init_db(self):
        """Initialize database schema."""
        if self._initialized:
            return

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS subscriptions (
                    api_key TEXT PRIMARY KEY,
                    subscriber_id TEXT NOT NULL,
                    plan_id TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT 'pending',
                    nonce INTEGER,
                    trial INTEGER NOT NULL DEFAULT 0,
                    activated_at INTEGER,
                    expires_at INTEGER,
                    transaction_id TEXT UNIQUE,
                    renewal_transaction_id TEXT,
                    settled_renewals TEXT NOT NULL DEFAULT '[]',
                    failure_reason TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_subs_subscriber
                ON subscriptions(subscriber_id)
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_subs_state
                ON subscriptions(state)
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_subs_renewal
                ON subscriptions(renewal_transaction_id)
            """)
            await db.commit()

        self._initialized = True
        logger.info(f"Subscription store initialized: {self.db_path}")

    @staticmethod
    def _from_row(row: aiosqlite.Row) -> SubscriptionRecord:
        return SubscriptionRecord(
            api_key=row["api_key"],
            subscriber_id=row["subscriber_id"],
            plan_id=row["plan_id"],
            state=SubscriptionState(row["state"]),
            nonce=row["nonce"],
            trial=bool(row["trial"]),
            activated_at=row["activated_at"],
            expires_at=row["expires_at"],
            transaction_id=row["transaction_id"],
            renewal_transaction_id=row["renewal_transaction_id"],
            settled_renewals=tuple(json.loads(row["settled_renewals"] or "[]")),
            failure_reason=row["failure_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=row["version"],
        )

    @staticmethod
    def _to_db(column: str, value):
        if column == "state":
            return value.value
        if column == "settled_renewals":
            return json.dumps(list(value))
        return value

    async def _fetch_one(self, query: str, params: tuple) -> Optional[SubscriptionRecord]:
        await self.init_db()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            return self._from_row(row) if row else None

    async def _fetch_all(self, query: str, params: tuple) -> List[SubscriptionRecord]:
        await self.init_db()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [self._from_row(row) for row in rows]

    async def put_pending(self, record: SubscriptionRecord) -> SubscriptionRecord:
        await self.init_db()

        if record.transaction_id:
            existing = await self.get_by_transaction(record.transaction_id)
            if existing:
                logger.info(f"Deploy {record.transaction_id[:16]}... already recorded")
                return existing

        stored = replace(record, state=SubscriptionState.PENDING, version=0)
        values = tuple(self._to_db(column, getattr(stored, column)) for column in self.COLUMNS)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    f"INSERT INTO subscriptions ({', '.join(self.COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in self.COLUMNS)})",
                    values
                )
                await db.commit()
        except aiosqlite.IntegrityError:
            # Lost a race on the same transaction id: return the winner
            if record.transaction_id:
                existing = await self.get_by_transaction(record.transaction_id)
                if existing:
                    return existing
            raise DuplicateKeyError("API key already exists")

        return stored

    async def get(self, api_key: str) -> Optional[SubscriptionRecord]:
        return await self._fetch_one("SELECT * FROM subscriptions WHERE api_key = ?", (api_key,))

    async def get_by_transaction(self, transaction_id: str) -> Optional[SubscriptionRecord]:
        return await self._fetch_one(
            "SELECT * FROM subscriptions WHERE transaction_id = ? OR renewal_transaction_id = ? "
            "OR settled_renewals LIKE ?",
            (transaction_id, transaction_id, f'%"{transaction_id}"%')
        )

    async def list_by_state(self, state: SubscriptionState) -> List[SubscriptionRecord]:
        return await self._fetch_all(
            "SELECT * FROM subscriptions WHERE state = ? ORDER BY created_at",
            (state.value,)
        )

    async def list_by_subscriber(self, subscriber_id: str) -> List[SubscriptionRecord]:
        return await self._fetch_all(
            "SELECT * FROM subscriptions WHERE subscriber_id = ? ORDER BY created_at DESC",
            (subscriber_id,)
        )

    async def find_by_nonce(self, subscriber_id: str, plan_id: str, nonce: int) -> Optional[SubscriptionRecord]:
        return await self._fetch_one(
            "SELECT * FROM subscriptions WHERE subscriber_id = ? AND plan_id = ? AND nonce = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (subscriber_id, plan_id, nonce)
        )

    async def transition(
        self,
        key: str,
        new_state: SubscriptionState,
        expected_state: Optional[SubscriptionState] = None,
        expected_version: Optional[int] = None,
        **fields
    ) -> SubscriptionRecord:
        _check_fields(fields)

        for _ in range(CAS_RETRIES):
            current = await self.get(key) or await self.get_by_transaction(key)
            if current is None:
                raise NotFoundError("Subscription not found")
            check_transition(current, new_state, expected_state, expected_version)

            now = int(time.time())
            assignments = ["state = ?", "updated_at = ?", "version = version + 1"]
            params: list = [new_state.value, now]
            for name, value in fields.items():
                assignments.append(f"{name} = ?")
                params.append(self._to_db(name, value))
            params.extend([current.api_key, current.version])

            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    f"UPDATE subscriptions SET {', '.join(assignments)} "
                    f"WHERE api_key = ? AND version = ?",
                    tuple(params)
                )
                await db.commit()
                applied = cursor.rowcount == 1

            if applied:
                return replace(
                    current,
                    state=new_state,
                    updated_at=now,
                    version=current.version + 1,
                    **fields
                )
            logger.debug("Concurrent update on subscription, retrying CAS")

        raise InvalidTransitionError("Subscription is being modified concurrently")

    async def reset(self):
        await self.init_db()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM subscriptions")
            await db.commit()
