"""
Provider adapter contract and HTTP error classification.
========================================================
One ProviderAdapter per upstream service. Adapters translate between
GenerationRequest and the provider's wire format, and classify every
failure into an ErrorKind before it leaves the adapter. Nothing raw
(httpx exceptions, JSON decode errors, status codes) escapes.

Adapters never retry. The orchestrator owns the whole retry policy; an
adapter that retried on its own would silently multiply the attempt count
and the cost.

Classification table:

    401 402 403                  → auth_failure
    400 404 409 413 415 422      → invalid_request
    429                          → rate_limited (Retry-After honoured)
    408 504, httpx timeouts      → timeout
    500 502 503, connect errors  → upstream_unavailable
    anything else                → unknown_transient
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional

import httpx

from .errors import ProviderError
from .models import ErrorKind, GenerationRequest, JobOutcome, ProviderProfile

logger = logging.getLogger("headshot_orchestrator.adapters")

_AUTH = frozenset({401, 402, 403})
_INVALID = frozenset({400, 404, 409, 413, 415, 422})
_TIMEOUT = frozenset({408, 504})
_UNAVAILABLE = frozenset({500, 502, 503})


# ─────────────────────────────────────────────────────────────────────────────
# Classification
# ─────────────────────────────────────────────────────────────────────────────

def parse_retry_after(value: Optional[str],
                      now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _excerpt(body: Any, limit: int = 200) -> str:
    text = body if isinstance(body, str) else repr(body)
    return text[:limit]


def classify_status(status: int, headers: Optional[Mapping[str, str]] = None,
                    body: Any = "") -> ProviderError:
    """Map an HTTP error status to a classified ProviderError."""
    message = f"HTTP {status}: {_excerpt(body)}" if body else f"HTTP {status}"
    if status in _AUTH:
        return ProviderError(ErrorKind.AUTH_FAILURE, message)
    if status == 429:
        retry_after = parse_retry_after(httpx.Headers(headers or {}).get("retry-after"))
        return ProviderError(ErrorKind.RATE_LIMITED, message, retry_after=retry_after)
    if status in _INVALID:
        return ProviderError(ErrorKind.INVALID_REQUEST, message)
    if status in _TIMEOUT:
        return ProviderError(ErrorKind.TIMEOUT, message)
    if status in _UNAVAILABLE:
        return ProviderError(ErrorKind.UPSTREAM_UNAVAILABLE, message)
    return ProviderError(ErrorKind.UNKNOWN_TRANSIENT, message)


def classify_exception(exc: BaseException) -> ProviderError:
    """Map a transport-level exception to a classified ProviderError."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        resp = exc.response
        return classify_status(resp.status_code, resp.headers, resp.text)
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(ErrorKind.TIMEOUT, f"{type(exc).__name__}: {exc}")
    if isinstance(exc, (httpx.ConnectError, httpx.RemoteProtocolError, httpx.NetworkError)):
        return ProviderError(ErrorKind.UPSTREAM_UNAVAILABLE, f"{type(exc).__name__}: {exc}")
    return ProviderError(ErrorKind.UNKNOWN_TRANSIENT, f"{type(exc).__name__}: {exc}")


def expect_object(value: Any, where: str) -> dict:
    """``value`` as a JSON object; anything else is an unknown_transient failure."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProviderError(
            ErrorKind.UNKNOWN_TRANSIENT,
            f"{where}: expected an object, got {type(value).__name__}",
        )
    return value


def asset_urls(items: Any, where: str) -> tuple[str, ...]:
    """
    URLs from a provider's image list. Entries may be bare URL strings or
    objects with a ``url`` field; entries without a URL are skipped.
    """
    if items is None:
        return ()
    if isinstance(items, str):
        items = [items]
    if not isinstance(items, list):
        raise ProviderError(
            ErrorKind.UNKNOWN_TRANSIENT,
            f"{where}: expected a list of images, got {type(items).__name__}",
        )
    urls = []
    for item in items:
        if isinstance(item, str):
            url = item
        else:
            url = expect_object(item, where).get("url")
        if url:
            urls.append(str(url))
    return tuple(urls)


# ─────────────────────────────────────────────────────────────────────────────
# Contract
# ─────────────────────────────────────────────────────────────────────────────

class ProviderAdapter(ABC):
    """
    Uniform contract over one upstream generation service.

    submit() returns the provider's job id. poll() returns a JobOutcome and
    reports rate limiting as RateLimited rather than raising. Every other
    failure surfaces as ProviderError with a classified kind.
    """

    def __init__(self, profile: ProviderProfile) -> None:
        self._profile = profile

    @property
    def provider_id(self) -> str:
        return self._profile.provider_id

    def capabilities(self) -> ProviderProfile:
        return self._profile

    @abstractmethod
    async def submit(self, request: GenerationRequest, model_id: str) -> str:
        ...

    @abstractmethod
    async def poll(self, job_id: str) -> JobOutcome:
        ...

    async def cancel(self, job_id: str) -> None:
        """Best effort. Providers without cancellation simply let the job run."""
        return None

    @abstractmethod
    async def probe(self) -> None:
        """Cheap reachability check. Raises ProviderError when unhealthy."""

    async def aclose(self) -> None:
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.provider_id!r})"


class HTTPProviderAdapter(ProviderAdapter):
    """
    Base for JSON-over-HTTP providers built on one httpx.AsyncClient.

    ``transport`` lets tests plug in httpx.MockTransport.
    """

    auth_scheme = "Bearer"

    def __init__(self, profile: ProviderProfile, api_key: str, base_url: str,
                 *, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__(profile)
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"{self.auth_scheme} {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise classify_exception(exc) from exc
        if response.status_code >= 400:
            error = classify_status(response.status_code, response.headers, response.text)
            logger.debug("%s %s %s → %s", self.provider_id, method, url, error.kind.value)
            raise error
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                ErrorKind.UNKNOWN_TRANSIENT,
                f"{self.provider_id}: non-JSON response to {method} {url}",
            ) from exc

    async def _request_object(self, method: str, url: str, **kwargs) -> dict:
        data = await self._request(method, url, **kwargs)
        return expect_object(data, f"{self.provider_id} {method} {url}")

    async def aclose(self) -> None:
        await self._client.aclose()
