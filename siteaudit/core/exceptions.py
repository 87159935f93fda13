"""
Error taxonomy for the analysis pipeline.

Engines raise these internally and translate them into degraded results;
only InvalidURLError is allowed to reach the caller.
"""

from __future__ import annotations


class AnalysisError(Exception):
    """Base class for every error raised by the analysis pipeline."""


class FetchError(AnalysisError):
    """A sub-resource could not be retrieved."""

    def __init__(self, url: str, message: str = ""):
        self.url = url
        self.message = message or "fetch failed"
        super().__init__(f"{self.message} ({url})")


class NetworkError(FetchError):
    """Connection refused, DNS failure, TLS error, reset, ..."""


class FetchTimeoutError(FetchError):
    """The request exceeded its per-request timeout."""


class HttpError(FetchError):
    """A non-2xx status where a body was expected."""

    def __init__(self, url: str, status_code: int):
        self.status_code = status_code
        super().__init__(url, f"HTTP {status_code}")


class ParseError(AnalysisError):
    """Malformed robots.txt, sitemap or HTML that could not be interpreted."""


class InvalidURLError(AnalysisError, ValueError):
    """The root URL is structurally invalid. The only fatal input error."""
