"""
Futuur API authentication - credentials, endpoint classification and HMAC signing.

Authenticated Futuur endpoints expect three headers:

- Key: the public key identifier
- Timestamp: unix seconds, as a decimal string
- HMAC: lowercase hex HMAC-SHA512 of the canonical parameter string

The canonical string is the form-urlencoded, key-sorted set of the request
parameters (query string for GET, top-level body fields for POST/PATCH) with
Key and Timestamp added.
"""

import enum
import hashlib
import hmac
import logging
import math
import os
import time
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import quote_plus, urlencode

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PUBLIC_KEY_ENV = "FUTUUR_PUBLIC_KEY"
PRIVATE_KEY_ENV = "FUTUUR_PRIVATE_KEY"

# Endpoints under these path prefixes are sent without auth headers.
# Anything not listed here is signed.
DEFAULT_PUBLIC_PREFIXES: Tuple[str, ...] = ("categories", "events", "questions")

Scalar = Union[str, int, float, bool]
SignaturePayload = Union[Mapping[str, Scalar], Sequence[Tuple[str, Scalar]]]
AuthHeaders = Dict[str, str]


class FutuurError(Exception):
    """Base class for errors raised while talking to the Futuur API."""


class ConfigError(FutuurError):
    """Credentials are missing or incomplete."""


@dataclass(frozen=True)
class Credentials:
    public_key: str
    private_key: str

    @property
    def is_complete(self) -> bool:
        return bool(self.public_key) and bool(self.private_key)

    def __repr__(self) -> str:
        return f"Credentials(public_key={self.public_key[:6]!r}..., private_key=***)"


class CredentialStore:
    """Thread-safe source of the Futuur API key pair.

    Values come from the process environment and are re-read on every call,
    so keys exported after start-up are picked up. ``configure()`` pins
    explicit values on top of the environment; ``reload()`` re-reads the
    ``.env`` file and drops anything pinned.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ
        self._overrides: Dict[str, str] = {}
        self._lock = Lock()

    def _env(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def current(self) -> Credentials:
        """Return the latest key pair, complete or not."""
        with self._lock:
            env = self._env()
            return Credentials(
                public_key=self._overrides.get("public_key", env.get(PUBLIC_KEY_ENV, "")) or "",
                private_key=self._overrides.get("private_key", env.get(PRIVATE_KEY_ENV, "")) or "",
            )

    def load(self) -> Credentials:
        """Return the latest key pair, raising ConfigError if incomplete."""
        creds = self.current()
        if not creds.is_complete:
            logger.error(
                f"Futuur credentials incomplete: "
                f"public_key={'set' if creds.public_key else 'missing'}, "
                f"private_key={'set' if creds.private_key else 'missing'}"
            )
            raise ConfigError("missing credentials")
        return creds

    def is_configured(self) -> bool:
        return self.current().is_complete

    def configure(self, public_key: Optional[str] = None, private_key: Optional[str] = None) -> None:
        """Pin credentials explicitly. Omitted values keep their current source."""
        with self._lock:
            if public_key is not None:
                self._overrides["public_key"] = public_key
            if private_key is not None:
                self._overrides["private_key"] = private_key
        logger.info(
            f"Futuur credentials configured explicitly "
            f"(public_key={public_key is not None}, private_key={private_key is not None})"
        )

    def reload(self) -> Credentials:
        """Re-read the .env file and clear explicit overrides."""
        with self._lock:
            self._overrides.clear()
            if self._environ is None:
                load_dotenv(override=True)
        creds = self.current()
        logger.info(f"Futuur credentials reloaded (complete={creds.is_complete})")
        return creds


class EndpointClass(enum.Enum):
    PUBLIC = "public"
    AUTHENTICATED = "authenticated"


def classify(endpoint: str, public_prefixes: Iterable[str] = DEFAULT_PUBLIC_PREFIXES) -> EndpointClass:
    """Decide whether ``endpoint`` can be called without auth headers.

    A path is public when it starts with one of ``public_prefixes`` or
    contains ``"/" + prefix`` (nested paths used by some API versions).
    Everything else requires authentication.
    """
    path = endpoint.lstrip("/")
    for prefix in public_prefixes:
        prefix = prefix.strip("/")
        if not prefix:
            continue
        if path.startswith(prefix) or f"/{prefix}" in path:
            return EndpointClass.PUBLIC
    return EndpointClass.AUTHENTICATED


def parse_prefixes(raw: Optional[str]) -> Tuple[str, ...]:
    """Parse a comma separated prefix list, falling back to the defaults."""
    if raw is None or not raw.strip():
        return DEFAULT_PUBLIC_PREFIXES
    return tuple(p.strip().strip("/") for p in raw.split(",") if p.strip().strip("/"))


def render_scalar(value: Scalar) -> str:
    """Render a scalar the way it is transmitted and signed.

    Booleans are lowercase and integral floats drop their fractional part,
    so ``100.0`` and ``100`` produce the same text.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    if isinstance(value, (str, int, float)):
        return str(value)
    raise TypeError(f"Signature values must be scalars, got {type(value).__name__}")


def form_quote(value: str, safe: str = "", encoding: Optional[str] = None, errors: Optional[str] = None) -> str:
    """Percent-encode one component as application/x-www-form-urlencoded.

    Leaves only alphanumerics and ``*-._`` unescaped and turns spaces into
    ``+``. ``quote_plus`` keeps ``~`` and escapes ``*``, so both are adjusted.
    """
    return quote_plus(value, safe=safe + "*", encoding=encoding, errors=errors).replace("~", "%7E")


def form_encode(pairs: Iterable[Tuple[str, str]]) -> str:
    """Join rendered pairs into a form-urlencoded string."""
    return urlencode(list(pairs), quote_via=form_quote)


def _pairs(payload: SignaturePayload) -> List[Tuple[str, Scalar]]:
    if isinstance(payload, Mapping):
        return list(payload.items())
    return list(payload)


def canonical_string(payload: SignaturePayload, public_key: str, timestamp: int) -> str:
    """Build the form-urlencoded string that gets signed.

    Key and Timestamp replace any payload fields of the same name. Pairs are
    sorted by key; the sort is stable so repeated keys keep their order.
    """
    pairs = [(k, render_scalar(v)) for k, v in _pairs(payload) if k not in ("Key", "Timestamp")]
    pairs.append(("Key", public_key))
    pairs.append(("Timestamp", str(timestamp)))
    pairs.sort(key=lambda pair: pair[0])
    return form_encode(pairs)


def sign(payload: SignaturePayload, credentials: Credentials, now: Optional[float] = None) -> AuthHeaders:
    """Compute the Key/Timestamp/HMAC headers for ``payload``.

    Args:
        payload: Flat mapping (or sequence of pairs) of the signed parameters
        credentials: Complete Futuur key pair
        now: Unix time in seconds; defaults to the current time

    Returns:
        Dict with Key, Timestamp and HMAC header values
    """
    if not credentials.is_complete:
        raise ConfigError("missing credentials")

    timestamp = int(math.floor(time.time() if now is None else now))
    message = canonical_string(payload, credentials.public_key, timestamp)
    digest = hmac.new(
        credentials.private_key.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()

    return {
        "Key": credentials.public_key,
        "Timestamp": str(timestamp),
        "HMAC": digest,
    }
