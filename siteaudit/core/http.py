"""
FetchGateway - the single place where the analysis pipeline touches the network.

Every request carries its own timeout and the crawler's declared identity.
Transport problems never raise: they come back as a FetchFailure so that each
caller can degrade instead of aborting the whole analysis.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

import httpx
import structlog

from siteaudit.core.config import get_settings
from siteaudit.core.exceptions import FetchError, FetchTimeoutError, HttpError, NetworkError

logger = structlog.get_logger(__name__)


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    OTHER = "other"


@dataclass(frozen=True)
class FetchResponse:
    """A completed HTTP exchange, whatever its status code."""
    url: str
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)  # lower-cased keys
    body: str = ""
    final_url: str = ""
    size_bytes: int = 0
    elapsed_ms: float = 0.0
    redirect_count: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status_code < 400

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)


@dataclass(frozen=True)
class FetchFailure:
    """The request never produced a response."""
    url: str
    kind: FailureKind
    message: str = ""

    def to_exception(self) -> FetchError:
        if self.kind == FailureKind.TIMEOUT:
            return FetchTimeoutError(self.url, self.message or "request timed out")
        if self.kind == FailureKind.NETWORK:
            return NetworkError(self.url, self.message or "network error")
        return FetchError(self.url, self.message)


FetchResult = FetchResponse | FetchFailure


class FetchGateway:
    """
    Thin async wrapper around httpx.AsyncClient.

    Usage:
        async with FetchGateway() as gateway:
            result = await gateway.fetch("https://example.com/", method="HEAD")
    """

    def __init__(
        self,
        user_agent: str | None = None,
        timeout_ms: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.user_agent = user_agent or settings.CRAWLER_USER_AGENT
        self.default_timeout_ms = settings.CRAWLER_REQUEST_TIMEOUT_MS if timeout_ms is None else timeout_ms
        self._client = httpx.AsyncClient(
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
            follow_redirects=False,
            verify=settings.CRAWLER_VERIFY_TLS,
            transport=transport,
            limits=httpx.Limits(
                max_connections=settings.CRAWLER_MAX_CONNECTIONS,
                max_keepalive_connections=settings.CRAWLER_MAX_CONNECTIONS,
            ),
        )

    async def __aenter__(self) -> "FetchGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        timeout_ms: int | None = None,
        follow_redirects: bool = False,
    ) -> FetchResult:
        timeout_s = (timeout_ms or self.default_timeout_ms) / 1000
        start = time.perf_counter()
        try:
            response = await self._client.request(
                method,
                url,
                timeout=timeout_s,
                follow_redirects=follow_redirects,
            )
        except httpx.TimeoutException as exc:
            logger.debug("Fetch timed out", url=url, method=method, timeout_s=timeout_s)
            return FetchFailure(url=url, kind=FailureKind.TIMEOUT, message=str(exc) or "request timed out")
        except httpx.TooManyRedirects as exc:
            return FetchFailure(url=url, kind=FailureKind.OTHER, message=str(exc) or "too many redirects")
        except httpx.TransportError as exc:
            logger.debug("Fetch network error", url=url, method=method, error=str(exc))
            return FetchFailure(url=url, kind=FailureKind.NETWORK, message=str(exc) or exc.__class__.__name__)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.debug("Fetch failed", url=url, method=method, error=str(exc))
            return FetchFailure(url=url, kind=FailureKind.OTHER, message=str(exc) or exc.__class__.__name__)

        elapsed = (time.perf_counter() - start) * 1000
        body = "" if method.upper() == "HEAD" else response.text
        return FetchResponse(
            url=url,
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=body,
            final_url=str(response.url),
            size_bytes=len(response.content),
            elapsed_ms=round(elapsed, 2),
            redirect_count=len(response.history),
        )


def require_body(result: FetchResult) -> FetchResponse:
    """
    Return a 2xx response or raise.

    Raises:
        FetchTimeoutError / NetworkError / FetchError: the request failed
        HttpError: a response arrived with a non-2xx status
    """
    if isinstance(result, FetchFailure):
        raise result.to_exception()
    if not result.ok:
        raise HttpError(result.url, result.status_code)
    return result
