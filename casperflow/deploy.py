"""
CasperFlow SDK - Deploy Builder
Deterministic construction and signing of SubscriptionManager contract calls.

A deploy's hash depends only on its header and body. The header carries no
wall-clock time, so the same logical request (same entry point, same named
args) always produces the same hash. That is what lets a caller resend a
subscription after an unreachable ledger without risking a double charge:
the node sees a duplicate deploy hash and treats it as a no-op.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .errors import SigningFailureError
from .models import SignedTransaction, SubscriptionRequest
from .security import DeploySigner, hash_data

logger = logging.getLogger("casperflow.deploy")

NamedArg = Tuple[str, str, Any]


def _named_args(args: List[NamedArg]) -> List[list]:
    # Sorted by name so arg order at the call site never changes the hash
    return [
        [name, {"cl_type": cl_type, "parsed": value}]
        for name, cl_type, value in sorted(args, key=lambda a: a[0])
    ]


class DeployBuilder:
    """
    Builds signed deploys against the SubscriptionManager contract.

    Args:
        chain_name: Network name (e.g. "casper-test")
        contract_hash: Hex hash of the stored SubscriptionManager contract
        payment_motes: Standard gas payment for each deploy
        ttl: Deploy time-to-live as understood by the node
        gas_price: Gas price multiplier

    Example:
        builder = DeployBuilder("casper-test", SUBSCRIPTION_MANAGER_HASH, 2_500_000_000)
        tx = builder.build(request, signer)
        print(tx.transaction_id)
    """

    def __init__(
        self,
        chain_name: str,
        contract_hash: str,
        payment_motes: int,
        ttl: str = "30m",
        gas_price: int = 1
    ):
        self.chain_name = chain_name
        self.contract_hash = contract_hash
        self.payment_motes = payment_motes
        self.ttl = ttl
        self.gas_price = gas_price

    def build(self, request: SubscriptionRequest, signer: DeploySigner) -> SignedTransaction:
        """
        Build and sign the ``subscribe`` call for a request.

        ``request.requested_at`` is deliberately not part of the deploy.
        """
        args: List[NamedArg] = [
            ("plan_id", "String", request.plan_id),
            ("subscriber", "PublicKey", request.subscriber),
            ("nonce", "U64", request.nonce),
        ]
        if request.trial:
            args.append(("trial", "Bool", True))
        return self.build_call("subscribe", args, signer)

    def build_renewal(self, subscriber: str, plan_id: str, nonce: int, signer: DeploySigner) -> SignedTransaction:
        return self.build_call(
            "renew_subscription",
            [
                ("plan_id", "String", plan_id),
                ("subscriber", "PublicKey", subscriber),
                ("nonce", "U64", nonce),
            ],
            signer,
        )

    def build_create_plan(
        self,
        merchant_id: str,
        name: str,
        base_price_motes: int,
        usage_price_motes: int,
        billing_cycle: int,
        signer: DeploySigner,
        trial_days: int = 0
    ) -> SignedTransaction:
        return self.build_call(
            "create_plan",
            [
                ("merchant", "PublicKey", merchant_id),
                ("name", "String", name),
                ("base_price", "U256", str(base_price_motes)),
                ("usage_price", "U256", str(usage_price_motes)),
                ("billing_cycle", "U64", billing_cycle),
                ("trial_days", "U32", trial_days),
            ],
            signer,
        )

    def build_call(
        self,
        entry_point: str,
        args: List[NamedArg],
        signer: DeploySigner,
        account: Optional[str] = None
    ) -> SignedTransaction:
        """
        Build and sign a stored-contract call.

        Raises:
            SigningFailureError: if the produced signature does not verify
        """
        body = {
            "payment": {
                "ModuleBytes": {
                    "module_bytes": "",
                    "args": _named_args([("amount", "U512", str(self.payment_motes))]),
                }
            },
            "session": {
                "StoredContractByHash": {
                    "hash": self.contract_hash,
                    "entry_point": entry_point,
                    "args": _named_args(args),
                }
            },
        }
        header: Dict[str, Any] = {
            "account": account or signer.public_key_hex,
            "ttl": self.ttl,
            "gas_price": self.gas_price,
            "body_hash": hash_data(body).hex(),
            "dependencies": [],
            "chain_name": self.chain_name,
        }
        deploy_hash = hash_data(header)

        signature = signer.sign(deploy_hash)
        if not DeploySigner.verify(deploy_hash, signature, signer.public_key_hex):
            raise SigningFailureError("Produced signature does not verify against signer key")

        deploy = {
            "hash": deploy_hash.hex(),
            "header": header,
            "payment": body["payment"],
            "session": body["session"],
            "approvals": [
                {"signer": signer.public_key_hex, "signature": signature.hex()}
            ],
        }

        logger.debug(f"Built {entry_point} deploy {deploy_hash.hex()[:16]}...")
        return SignedTransaction(
            payload_hash=deploy_hash,
            signature=signature,
            signer_public_key=signer.public_key_hex,
            deploy=deploy,
        )
