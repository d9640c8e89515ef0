"""
CasperFlow SDK - Configuration
Environment-driven settings (optionally loaded from a .env file).
"""

import os
from dataclasses import dataclass
from typing import List, Tuple

from dotenv import load_dotenv

load_dotenv()

DEFAULT_RPC_ENDPOINTS = ("https://node.testnet.casper.network/rpc",)

# Deployed SubscriptionManager contract on casper-test
DEFAULT_CONTRACT_HASH = "55fb73955a3e736cd516af0956057a2c55f986d1b3a421b403294a2c288d2143"


def _split_endpoints(raw: str) -> Tuple[str, ...]:
    endpoints = tuple(e.strip() for e in raw.split(",") if e.strip())
    return endpoints or DEFAULT_RPC_ENDPOINTS


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration for the settlement core and the site.

    Attributes:
        rpc_endpoints: Ordered candidate Casper node RPC URLs
        chain_name: Network name embedded in every deploy header
        contract_hash: SubscriptionManager contract hash (hex)
        payment_motes: Gas payment attached to each deploy
        attempt_timeout: Per-endpoint timeout in seconds
        total_deadline: Deadline for a whole submission in seconds
        secret_key_hex: Ed25519 seed of the settlement account (hex)
        secret_key_path: PEM file holding the settlement account key
        api_key_prefix: Prefix of secret API keys
        publishable_key_prefix: Prefix of publishable API keys
        store_backend: "memory" or "sqlite"
        store_db_path: SQLite file used by the sqlite backend
        reconcile_interval: Seconds between deploy status polls (0 = disabled)
        admin_token: Shared secret for administrative/reconciliation routes
        public_subscribe: Whether /subscribe and renewals accept unauthenticated
            callers (every accepted call spends settlement-account gas)
    """
    rpc_endpoints: Tuple[str, ...] = DEFAULT_RPC_ENDPOINTS
    chain_name: str = "casper-test"
    contract_hash: str = DEFAULT_CONTRACT_HASH
    payment_motes: int = 2_500_000_000
    attempt_timeout: float = 15.0
    total_deadline: float = 45.0
    secret_key_hex: str = ""
    secret_key_path: str = ""
    api_key_prefix: str = "cf_sk_"
    publishable_key_prefix: str = "cf_pk_"
    store_backend: str = "memory"
    store_db_path: str = "casperflow.db"
    reconcile_interval: int = 0
    admin_token: str = ""
    public_subscribe: bool = True
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def endpoints(self) -> List[str]:
        return list(self.rpc_endpoints)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            rpc_endpoints=_split_endpoints(os.getenv("CASPER_RPC_ENDPOINTS", "")),
            chain_name=os.getenv("CASPER_CHAIN_NAME", "casper-test"),
            contract_hash=os.getenv("SUBSCRIPTION_MANAGER_HASH", DEFAULT_CONTRACT_HASH),
            payment_motes=int(os.getenv("DEPLOY_PAYMENT_MOTES", "2500000000")),
            attempt_timeout=float(os.getenv("RPC_ATTEMPT_TIMEOUT_SECONDS", "15")),
            total_deadline=float(os.getenv("RPC_TOTAL_DEADLINE_SECONDS", "45")),
            secret_key_hex=os.getenv("CASPER_SECRET_KEY", ""),
            secret_key_path=os.getenv("CASPER_SECRET_KEY_PATH", ""),
            api_key_prefix=os.getenv("API_KEY_PREFIX", "cf_sk_"),
            publishable_key_prefix=os.getenv("PUBLISHABLE_KEY_PREFIX", "cf_pk_"),
            store_backend=os.getenv("STORE_BACKEND", "memory").lower(),
            store_db_path=os.getenv("STORE_DB_PATH", "casperflow.db"),
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL_SECONDS", "0")),
            admin_token=os.getenv("ADMIN_TOKEN", ""),
            public_subscribe=os.getenv("PUBLIC_SUBSCRIBE", "true").lower() in ("1", "true", "yes"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )
