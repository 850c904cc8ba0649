"""Pytest configuration and fixtures: a fake TAM site + API served through httpx.MockTransport."""
import asyncio
import sys
from pathlib import Path
from typing import Any

import httpx
import pytest

# Ensure backend root is on path when running pytest from repo root or backend
backend = Path(__file__).resolve().parent.parent
if str(backend) not in sys.path:
    sys.path.insert(0, str(backend))

from src.monitoring.metrics import reset_metrics  # noqa: E402
from src.tam.client import SessionClient  # noqa: E402
from src.tam.credentials import Credential, CredentialAcquirer, CredentialStore  # noqa: E402

SITE_URL = "https://tam.test/"
BASE_URL = "https://tam.test/gtfs"


def site_page(token: str) -> str:
    return (
        "<html><body><form>"
        f'<input type="hidden" id="header-api-key" name="header-api-key" value="{token}">'
        "</form></body></html>"
    )


class FakeTAM:
    """
    MockTransport handler. The site root serves successive tokens from ``tokens``
    (the last one repeats; an empty list serves a page without a key). API paths
    answer from ``routes``: a list of (status, body) or exceptions, consumed in order,
    the last entry repeating. Unknown paths answer 404.
    """

    def __init__(self) -> None:
        self.tokens: list[str] = ["key-1"]
        self.site_status = 200
        self.routes: dict[str, list[Any]] = {}
        self.requests: list[httpx.Request] = []

    def route(self, path: str, *responses: Any) -> None:
        self.routes[path] = list(responses)

    def site_calls(self) -> int:
        return sum(1 for r in self.requests if str(r.url) == SITE_URL)

    def api_requests(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/gtfs" + path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == SITE_URL:
            if self.site_status != 200:
                return httpx.Response(self.site_status, text="unavailable")
            if not self.tokens:
                return httpx.Response(200, text="<html><body>maintenance</body></html>")
            token = self.tokens.pop(0) if len(self.tokens) > 1 else self.tokens[0]
            return httpx.Response(200, text=site_page(token))

        path = request.url.path[len("/gtfs"):]
        queue = self.routes.get(path)
        if not queue:
            return httpx.Response(404, text="Not Found")
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, Exception):
            raise entry
        status, body = entry
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


_open_clients: list[httpx.AsyncClient] = []


def fake_http(fake: Any) -> httpx.AsyncClient:
    """AsyncClient routed to ``fake``; closed by the _close_http_clients fixture."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    _open_clients.append(http)
    return http


def make_session(fake: Any, credential: str | None = None) -> SessionClient:
    http = fake_http(fake)
    store = CredentialStore(Credential(credential) if credential else None)
    return SessionClient(
        http=http,
        base_url=BASE_URL,
        store=store,
        acquirer=CredentialAcquirer(http, SITE_URL),
    )


@pytest.fixture
def fake_tam():
    return FakeTAM()


@pytest.fixture(autouse=True)
def _close_http_clients():
    yield

    async def close_all():
        for http in _open_clients:
            await http.aclose()

    asyncio.run(close_all())
    _open_clients.clear()


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()
