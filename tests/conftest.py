"""
Shared fixtures.
Network is always mocked with httpx.MockTransport through FakeSite.
"""

import os

os.environ["LINKCHECK_BATCH_DELAY_S"] = "0"
os.environ["LOG_FORMAT"] = "console"

from typing import Any, Callable

import httpx
import pytest

from siteaudit.core.config import get_settings
from siteaudit.core.http import FetchGateway
from siteaudit.engines.base import AnalysisRequest, SiteContext

get_settings.cache_clear()


class FakeSite:
    """
    Canned responses keyed by absolute URL.
    Unknown URLs answer 404. A route may be a callable that returns a
    Response or raises an httpx exception.
    """

    def __init__(self):
        self.routes: dict[str, Any] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        url: str,
        body: str = "",
        status: int = 200,
        headers: dict[str, str] | None = None,
        content_type: str = "text/html; charset=utf-8",
    ) -> "FakeSite":
        self.routes[url] = (status, body, {"content-type": content_type, **(headers or {})})
        return self

    def page(self, url: str, html: str, **kwargs) -> "FakeSite":
        return self.add(url, body=html, **kwargs)

    def redirect(self, url: str, location: str, status: int = 301) -> "FakeSite":
        return self.add(url, status=status, headers={"location": location})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="<html><body>Not found</body></html>")
        if callable(route):
            return route(request)
        status, body, headers = route
        return httpx.Response(status, text=body, headers=headers)

    def gateway(self, **kwargs) -> FetchGateway:
        return FetchGateway(transport=httpx.MockTransport(self.handler), **kwargs)

    def count(self, url: str, method: str | None = None) -> int:
        return len([
            r for r in self.requests
            if str(r.url) == url and (method is None or r.method == method)
        ])


def html_page(
    title: str = "Page",
    body: str = "",
    head: str = "",
    links: list[str] | None = None,
) -> str:
    anchors = "".join(f'<a href="{href}">Link to {href}</a>' for href in (links or []))
    return (
        f"<html><head><title>{title}</title>{head}</head>"
        f"<body>{body}{anchors}</body></html>"
    )


@pytest.fixture
def fake_site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def make_page() -> Callable[..., str]:
    return html_page


@pytest.fixture
def make_context() -> Callable[..., SiteContext]:
    def _make(root_url: str = "https://example.com/", **options) -> SiteContext:
        request = AnalysisRequest(root_url=root_url, **options)
        return SiteContext(request=request, domain=httpx.URL(request.root_url).host)
    return _make
