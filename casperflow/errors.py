"""
CasperFlow SDK - Error Taxonomy
Failure kinds shared by the codec, ledger client, store and orchestrator.
"""

from enum import Enum
from typing import List, Optional


class ErrorKind(Enum):
    """Enumeration of settlement failure classes."""
    MALFORMED_KEY = "malformed_key"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    SIGNING_FAILURE = "signing_failure"
    TERMINAL_REJECTION = "terminal_rejection"
    UNREACHABLE = "unreachable"
    DUPLICATE_KEY = "duplicate_key"
    PLAN_UNAVAILABLE = "plan_unavailable"


class CasperFlowError(Exception):
    """Base class for every error raised by the SDK."""

    kind: ErrorKind = ErrorKind.NOT_FOUND
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value


class MalformedKeyError(CasperFlowError):
    kind = ErrorKind.MALFORMED_KEY


class NotFoundError(CasperFlowError):
    kind = ErrorKind.NOT_FOUND


class InvalidTransitionError(CasperFlowError):
    kind = ErrorKind.INVALID_TRANSITION


class SigningFailureError(CasperFlowError):
    kind = ErrorKind.SIGNING_FAILURE


class DuplicateKeyError(CasperFlowError):
    kind = ErrorKind.DUPLICATE_KEY


class PlanUnavailableError(CasperFlowError):
    kind = ErrorKind.PLAN_UNAVAILABLE


class TerminalRejectionError(CasperFlowError):
    """The ledger refused the deploy and will refuse it everywhere."""

    kind = ErrorKind.TERMINAL_REJECTION

    def __init__(self, reason: str, endpoint: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.endpoint = endpoint


class UnreachableError(CasperFlowError):
    """No endpoint produced a usable answer. Safe to resubmit with the same nonce."""

    kind = ErrorKind.UNREACHABLE
    retryable = True

    def __init__(self, endpoints: List[str], message: str = ""):
        super().__init__(message or f"No ledger endpoint reachable ({len(endpoints)} tried)")
        self.endpoints = list(endpoints)
