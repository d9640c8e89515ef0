"""
CasperFlow SDK - Credential Codec
Issues and parses opaque API keys bound to subscription state.

Key format: ``<prefix><random>`` where ``prefix`` names the credential class
(``cf_sk_`` secret keys, ``cf_pk_`` publishable keys) and ``random`` is
32 lowercase hex characters drawn from the OS CSPRNG (128 bits).
"""

import logging
import secrets
import string
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .errors import MalformedKeyError

logger = logging.getLogger("casperflow.credentials")

HEX_DIGITS = frozenset(string.hexdigits.lower())


class KeyClass(Enum):
    """Credential classes distinguished by prefix."""
    SECRET = "secret"
    PUBLISHABLE = "publishable"


@dataclass(frozen=True)
class ParsedKey:
    """A token that passed format validation."""
    token: str
    key_class: KeyClass
    prefix: str
    random: str


class ApiKeyCodec:
    """
    Generates and validates API keys.

    Parsing only checks the shape of a token (prefix, length, alphabet) so
    callers can reject garbage before touching the subscription store.

    Example:
        codec = ApiKeyCodec()
        key = codec.issue("01ab...", "plan_demo_pro")
        parsed = codec.parse(key)
        logger.info(f"Issued {codec.mask(key)}")
    """

    RANDOM_BYTES = 16  # 128 bits

    def __init__(
        self,
        secret_prefix: str = "cf_sk_",
        publishable_prefix: str = "cf_pk_"
    ):
        if secret_prefix == publishable_prefix:
            raise ValueError("Secret and publishable prefixes must differ")
        self.prefixes: Dict[KeyClass, str] = {
            KeyClass.SECRET: secret_prefix,
            KeyClass.PUBLISHABLE: publishable_prefix,
        }
        self.random_length = self.RANDOM_BYTES * 2

    def issue(
        self,
        subscriber_id: str,
        plan_id: str,
        key_class: KeyClass = KeyClass.SECRET
    ) -> str:
        """
        Generate a fresh API key for a subscriber/plan pair.

        The key carries no recoverable link to the subscriber; the binding
        lives in the subscription store.
        """
        token = self.prefixes[key_class] + secrets.token_hex(self.RANDOM_BYTES)
        logger.debug(f"Issued {self.mask(token)} for {subscriber_id[:10]}... on {plan_id}")
        return token

    def parse(self, token: Optional[str], expected: Optional[KeyClass] = None) -> ParsedKey:
        """
        Validate a token's prefix and length.

        Args:
            token: Raw token as received from a caller
            expected: Restrict to one credential class

        Raises:
            MalformedKeyError: if the token cannot be a key issued by this codec
        """
        if not token or not isinstance(token, str):
            raise MalformedKeyError("API key is empty")

        for key_class, prefix in self.prefixes.items():
            if not token.startswith(prefix):
                continue
            if expected is not None and key_class != expected:
                raise MalformedKeyError(f"Expected a {expected.value} key")

            random_part = token[len(prefix):]
            if len(random_part) != self.random_length:
                raise MalformedKeyError("API key has the wrong length")
            if not set(random_part) <= HEX_DIGITS:
                raise MalformedKeyError("API key contains invalid characters")

            return ParsedKey(token=token, key_class=key_class, prefix=prefix, random=random_part)

        raise MalformedKeyError("Unknown API key prefix")

    def mask(self, token: Optional[str]) -> str:
        """Loggable form of a key: prefix and the first 4 random characters."""
        if not token:
            return "<empty>"
        for prefix in self.prefixes.values():
            if token.startswith(prefix):
                return f"{prefix}{token[len(prefix):len(prefix) + 4]}..."
        return f"{token[:4]}..."
