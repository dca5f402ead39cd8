"""
Futuur API client - request building and transport.

build_request() turns a GetRequest/PostRequest/PatchRequest into a fully
resolved BuiltRequest (URL, headers, JSON body), signing it when the endpoint
is not public. send_request() issues it with httpx and maps failures onto
ApiError / ProtocolError. FutuurClient ties both to a CredentialStore.
"""

import json
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from futuur_auth import (
    DEFAULT_PUBLIC_PREFIXES,
    ConfigError,
    CredentialStore,
    Credentials,
    EndpointClass,
    FutuurError,
    Scalar,
    classify,
    form_encode,
    parse_prefixes,
    render_scalar,
    sign,
)

logger = logging.getLogger(__name__)

BASE_URL = "https://api.futuur.com/api/v1/"
USER_AGENT = "futuur-api-mcp-server/1.0 (+python-httpx)"
DEFAULT_TIMEOUT = 30.0

ParamValue = Union[Scalar, Sequence[Scalar], None]


class ApiError(FutuurError):
    """The Futuur API answered with a non-2xx status."""

    def __init__(
        self,
        status_code: int,
        status_text: str,
        endpoint: str,
        method: str,
        header_names: Iterable[str] = (),
        url: str = "",
    ):
        self.status_code = status_code
        self.status_text = status_text
        self.endpoint = endpoint
        self.method = method
        self.header_names: FrozenSet[str] = frozenset(header_names)
        self.url = url
        super().__init__(f"Futuur API {status_code} {status_text} for {method} {endpoint}")


class ProtocolError(FutuurError):
    """The Futuur API could not be reached, or answered 2xx with a non-JSON body."""

    def __init__(self, message: str, endpoint: str = "", method: str = ""):
        self.endpoint = endpoint
        self.method = method
        super().__init__(message)


@dataclass(frozen=True)
class GetRequest:
    endpoint: str
    params: Mapping[str, ParamValue] = field(default_factory=dict)
    method: ClassVar[str] = "GET"


@dataclass(frozen=True)
class PostRequest:
    endpoint: str
    body: Optional[Any] = None
    method: ClassVar[str] = "POST"


@dataclass(frozen=True)
class PatchRequest:
    endpoint: str
    body: Optional[Any] = None
    method: ClassVar[str] = "PATCH"


ApiRequest = Union[GetRequest, PostRequest, PatchRequest]


@dataclass(frozen=True)
class BuiltRequest:
    method: str
    endpoint: str
    url: str
    headers: Dict[str, str]
    content: Optional[str] = None


def query_pairs(params: Mapping[str, ParamValue]) -> List[Tuple[str, str]]:
    """Flatten query params into rendered (key, value) pairs.

    None values are dropped; list values become repeated pairs in list order.
    """
    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            pairs.extend((key, render_scalar(v)) for v in value if v is not None)
        else:
            pairs.append((key, render_scalar(value)))
    return pairs


def normalize_body(body: Optional[Any]) -> Optional[Any]:
    """Copy of a JSON body with integral top-level floats turned into ints.

    Signed fields are rendered with render_scalar, which writes ``3.0`` as
    ``3``; the transmitted body must carry the same text.
    """
    if not isinstance(body, Mapping):
        return body
    return {
        k: int(v) if isinstance(v, float) and math.isfinite(v) and v.is_integer() else v
        for k, v in body.items()
    }


def body_signature_payload(body: Optional[Any]) -> Dict[str, Scalar]:
    """Top-level scalar fields of a JSON body; nested values are not signed."""
    if not isinstance(body, Mapping):
        return {}
    return {
        k: v for k, v in body.items()
        if isinstance(v, (str, int, float, bool))
    }


def build_request(
    req: ApiRequest,
    credentials: Optional[Credentials],
    *,
    base_url: str = BASE_URL,
    public_prefixes: Iterable[str] = DEFAULT_PUBLIC_PREFIXES,
    now: Optional[float] = None,
) -> BuiltRequest:
    """Compose URL, headers and body for ``req``.

    For GET the signed pairs are exactly the pairs placed on the query string.
    For POST/PATCH they are the top-level scalar fields of the JSON body.
    Raises ConfigError when an authenticated endpoint has no usable credentials.
    """
    endpoint = req.endpoint.lstrip("/")
    url = base_url.rstrip("/") + "/" + endpoint
    headers: Dict[str, str] = {"User-Agent": USER_AGENT}
    content: Optional[str] = None

    if isinstance(req, GetRequest):
        pairs = query_pairs(req.params)
        if pairs:
            url = f"{url}?{form_encode(pairs)}"
        signature_payload: Union[List[Tuple[str, str]], Dict[str, Scalar]] = pairs
    else:
        body = normalize_body(req.body)
        signature_payload = body_signature_payload(body)
        headers["Content-Type"] = "application/json"
        if body is not None:
            content = json.dumps(body, separators=(",", ":"))

    if classify(endpoint, public_prefixes) is EndpointClass.AUTHENTICATED:
        if credentials is None or not credentials.is_complete:
            raise ConfigError("missing credentials")
        headers.update(sign(signature_payload, credentials, now))

    return BuiltRequest(method=req.method, endpoint=endpoint, url=url, headers=headers, content=content)


async def send_request(
    built: BuiltRequest,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    """Send ``built`` and return the parsed JSON body."""
    logger.debug(f"{built.method} {built.url} headers={sorted(built.headers)}")
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.request(
                built.method,
                built.url,
                headers=built.headers,
                content=built.content,
            )
    except httpx.HTTPError as e:
        logger.error(f"Transport error on {built.method} {built.endpoint}: {e!r}")
        raise ProtocolError(
            f"Could not reach Futuur API for {built.method} {built.endpoint}: {e}",
            endpoint=built.endpoint,
            method=built.method,
        ) from e

    if not response.is_success:
        logger.warning(f"Futuur API {response.status_code} on {built.method} {built.endpoint}")
        raise ApiError(
            status_code=response.status_code,
            status_text=response.reason_phrase,
            endpoint=built.endpoint,
            method=built.method,
            header_names=built.headers.keys(),
            url=built.url,
        )

    try:
        return response.json()
    except ValueError as e:
        raise ProtocolError(
            f"Futuur API returned a non-JSON body for {built.method} {built.endpoint} "
            f"(status {response.status_code})",
            endpoint=built.endpoint,
            method=built.method,
        ) from e


class FutuurClient:
    """Async Futuur API client.

    Args:
        credentials: Store the key pair is read from on every signed call
        base_url: API root, e.g. https://api.futuur.com/api/v1/
        public_prefixes: Endpoint prefixes that are sent unsigned
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        base_url: str = BASE_URL,
        public_prefixes: Iterable[str] = DEFAULT_PUBLIC_PREFIXES,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.base_url = base_url
        self.public_prefixes: Tuple[str, ...] = tuple(public_prefixes)
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_env(cls, credentials: Optional[CredentialStore] = None, **kwargs: Any) -> "FutuurClient":
        """Build a client from FUTUUR_* environment variables."""
        return cls(
            credentials or CredentialStore(),
            base_url=os.getenv("FUTUUR_API_BASE_URL", BASE_URL),
            public_prefixes=parse_prefixes(os.getenv("FUTUUR_PUBLIC_PREFIXES")),
            timeout=float(os.getenv("FUTUUR_TIMEOUT", str(DEFAULT_TIMEOUT))),
            **kwargs,
        )

    def __repr__(self) -> str:
        return f"FutuurClient(base_url={self.base_url!r}, public_prefixes={self.public_prefixes!r})"

    def build(self, req: ApiRequest, now: Optional[float] = None) -> BuiltRequest:
        credentials = None
        if classify(req.endpoint, self.public_prefixes) is EndpointClass.AUTHENTICATED:
            credentials = self.credentials.load()
        return build_request(
            req,
            credentials,
            base_url=self.base_url,
            public_prefixes=self.public_prefixes,
            now=now,
        )

    async def request(self, req: ApiRequest) -> Any:
        return await send_request(self.build(req), timeout=self.timeout, transport=self._transport)

    async def get(self, endpoint: str, params: Optional[Mapping[str, ParamValue]] = None) -> Any:
        return await self.request(GetRequest(endpoint, dict(params or {})))

    async def post(self, endpoint: str, body: Optional[Any] = None) -> Any:
        return await self.request(PostRequest(endpoint, body))

    async def patch(self, endpoint: str, body: Optional[Any] = None) -> Any:
        return await self.request(PatchRequest(endpoint, body))

    async def simulate_purchase(
        self,
        outcome: int,
        currency: str = "OOM",
        position: str = "l",
        amount: Optional[float] = None,
        shares: Optional[float] = None,
    ) -> Any:
        """Preview a purchase; the result is the body expected by POST bets/."""
        params: Dict[str, ParamValue] = {
            "outcome": outcome,
            "currency": currency,
            "position": position,
        }
        if amount is not None:
            params["amount"] = amount
        elif shares is not None:
            params["shares"] = shares
        return await self.get("bets/simulate_purchase/", params)
