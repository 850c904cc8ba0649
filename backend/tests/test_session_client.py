"""Tests for the credentialed session: header injection, 404 re-acquire/retry, rotation loop."""
import asyncio

import httpx
import pytest

from conftest import make_session
from src.monitoring.metrics import get_metrics
from src.tam.client import CREDENTIAL_HEADER, PendingRequest, RequestError, ResponseDecodeError, TransportError
from src.tam.credentials import Credential

LINES = [{"id": "1", "type": "tramway"}]


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


# --- request ---


def test_request_attaches_stored_credential(fake_tam):
    fake_tam.route("/lignes", (200, LINES))
    session = make_session(fake_tam, credential="stored-key")
    resp = asyncio.run(session.request("GET", "/lignes"))
    assert resp.status_code == 200
    sent = fake_tam.api_requests("/lignes")[0]
    assert sent.headers[CREDENTIAL_HEADER] == "stored-key"
    assert sent.headers["X-Requested-With"] == "XMLHttpRequest"
    assert fake_tam.site_calls() == 0


def test_request_without_credential_sends_no_key(fake_tam):
    fake_tam.route("/lignes", (200, LINES))
    session = make_session(fake_tam)
    asyncio.run(session.request("GET", "/lignes"))
    assert CREDENTIAL_HEADER not in fake_tam.api_requests("/lignes")[0].headers


def test_credential_is_read_at_dispatch(fake_tam):
    fake_tam.route("/lignes", (200, LINES))
    session = make_session(fake_tam, credential="old")
    pending = PendingRequest(method="GET", path="/lignes")
    session.store.set(Credential("new"))
    asyncio.run(session._send(pending))
    assert fake_tam.api_requests("/lignes")[0].headers[CREDENTIAL_HEADER] == "new"


def test_404_triggers_one_acquisition_and_one_retry(fake_tam):
    fake_tam.tokens = ["rotated"]
    fake_tam.route("/lignes", (404, "expired"), (200, LINES))
    session = make_session(fake_tam, credential="stale")
    data = asyncio.run(session.get_json("/lignes"))
    assert data == LINES
    sent = fake_tam.api_requests("/lignes")
    assert len(sent) == 2
    assert sent[0].headers[CREDENTIAL_HEADER] == "stale"
    assert sent[1].headers[CREDENTIAL_HEADER] == "rotated"
    assert fake_tam.site_calls() == 1
    assert session.store.get().value == "rotated"
    assert get_metrics()["credential_retry"] == 1


def test_second_404_is_terminal_without_second_acquisition(fake_tam):
    fake_tam.route("/stop/rt/123", (404, "gone"))
    session = make_session(fake_tam, credential="stale")
    with pytest.raises(RequestError) as exc_info:
        asyncio.run(session.request("GET", "/stop/rt/123"))
    assert exc_info.value.status == 404
    assert exc_info.value.body == "gone"
    assert len(fake_tam.api_requests("/stop/rt/123")) == 2
    assert fake_tam.site_calls() == 1


def test_404_with_failed_acquisition_propagates_first_404(fake_tam):
    fake_tam.tokens = []
    fake_tam.route("/lignes", (404, "expired"))
    session = make_session(fake_tam, credential="stale")
    with pytest.raises(RequestError) as exc_info:
        asyncio.run(session.request("GET", "/lignes"))
    assert exc_info.value.status == 404
    assert len(fake_tam.api_requests("/lignes")) == 1
    assert session.store.get().value == "stale"


def test_other_error_status_is_not_retried(fake_tam):
    fake_tam.route("/lignes", (500, "boom"))
    session = make_session(fake_tam, credential="k")
    with pytest.raises(RequestError) as exc_info:
        asyncio.run(session.request("GET", "/lignes"))
    assert exc_info.value.status == 500
    assert len(fake_tam.api_requests("/lignes")) == 1
    assert fake_tam.site_calls() == 0


def test_retry_error_after_404_is_surfaced(fake_tam):
    fake_tam.route("/lignes", (404, "expired"), (503, "maintenance"))
    session = make_session(fake_tam, credential="stale")
    with pytest.raises(RequestError) as exc_info:
        asyncio.run(session.request("GET", "/lignes"))
    assert exc_info.value.status == 503


def test_transport_error(fake_tam):
    fake_tam.route("/lignes", httpx.ReadTimeout("timed out"))
    session = make_session(fake_tam, credential="k")
    with pytest.raises(TransportError) as exc_info:
        asyncio.run(session.request("GET", "/lignes"))
    assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)
    assert get_metrics()["upstream_transport_error"] == 1


def test_get_json_invalid_body(fake_tam):
    fake_tam.route("/lignes", (200, "<html>not json</html>"))
    session = make_session(fake_tam, credential="k")
    with pytest.raises(ResponseDecodeError):
        asyncio.run(session.get_json("/lignes"))


# --- rotation ---


def test_rotation_acquires_immediately(fake_tam):
    fake_tam.tokens = ["boot-key"]
    session = make_session(fake_tam)

    async def scenario():
        handle = session.start_rotation(3600)
        await _wait_for(lambda: session.store.get() is not None)
        assert handle.active
        await session.stop_rotation()
        assert not handle.active

    asyncio.run(scenario())
    assert session.store.get().value == "boot-key"
    assert fake_tam.site_calls() == 1


def test_rotation_repeats_on_interval(fake_tam):
    fake_tam.tokens = ["k1", "k2", "k3"]
    session = make_session(fake_tam)

    async def scenario():
        session.start_rotation(0.01)
        await _wait_for(lambda: session.store.get() is not None and session.store.get().value == "k3")
        await session.stop_rotation()

    asyncio.run(scenario())
    assert session.store.get().value == "k3"


def test_starting_rotation_twice_keeps_one_loop(fake_tam):
    session = make_session(fake_tam)

    async def scenario():
        first = session.start_rotation(3600)
        second = session.start_rotation(3600)
        await _wait_for(lambda: session.store.get() is not None)
        await asyncio.sleep(0.02)
        assert not first.active
        assert second.active
        await second.stop()
        assert not second.active

    asyncio.run(scenario())
    assert fake_tam.site_calls() == 1


def test_rotation_failure_keeps_previous_credential_and_loop(fake_tam):
    fake_tam.site_status = 500
    session = make_session(fake_tam, credential="previous")

    async def scenario():
        handle = session.start_rotation(0.01)
        await _wait_for(lambda: fake_tam.site_calls() >= 2)
        assert handle.active
        await session.stop_rotation()

    asyncio.run(scenario())
    assert session.store.get().value == "previous"
    assert get_metrics()["credential_acquire_failed"] >= 1


def test_refresh_credential_returns_none_on_failure(fake_tam):
    fake_tam.tokens = []
    session = make_session(fake_tam, credential="previous")
    assert asyncio.run(session.refresh_credential()) is None
    assert session.store.get().value == "previous"


def test_concurrent_404s_share_one_acquisition(fake_tam):
    fake_tam.tokens = ["shared"]
    paths = ["/stop/rt/1", "/stop/rt/2", "/stop/rt/3"]

    async def slow_upstream(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.01)
        return fake_tam(request)

    session = make_session(slow_upstream, credential="stale")

    async def scenario():
        return await asyncio.gather(*(session.request("GET", p) for p in paths), return_exceptions=True)

    results = asyncio.run(scenario())

    assert all(isinstance(r, RequestError) and r.status == 404 for r in results)
    assert fake_tam.site_calls() == 1
    for path in paths:
        sent = fake_tam.api_requests(path)
        assert len(sent) == 2
        assert sent[1].headers[CREDENTIAL_HEADER] == "shared"


def test_acquisition_after_shared_scrape_completes_starts_a_new_one(fake_tam):
    fake_tam.tokens = ["first", "second"]
    session = make_session(fake_tam)
    assert asyncio.run(session.refresh_credential()).value == "first"
    assert asyncio.run(session.refresh_credential()).value == "second"
    assert fake_tam.site_calls() == 2
