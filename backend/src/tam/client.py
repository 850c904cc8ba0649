"""
Credentialed session for the TAM cartography API.

Every request reads the current key from the CredentialStore at dispatch time.
The upstream answers 404 (not 401/403) when the key has expired, so a 404 triggers
exactly one re-acquire-and-retry. A background rotation loop also refreshes the key
every few minutes so most requests never see the stale-key path.
"""
import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from src.monitoring.metrics import record_credential_event, record_upstream
from src.tam.credentials import AcquisitionFailure, Credential, CredentialAcquirer, CredentialStore

logger = logging.getLogger(__name__)

CREDENTIAL_HEADER = "X-Api-Key"
CREDENTIAL_EXPIRED_STATUS = 404
DEFAULT_ROTATION_SECONDS = 300.0

API_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "fr-FR,fr;q=0.9,en-US;q=0.8,en;q=0.7",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "X-Requested-With": "XMLHttpRequest",
    "User-Agent": "MontpellierTransports/1.0.0",
    "Referer": "https://cartographie.tam-voyages.com/",
}


class TamAPIError(Exception):
    """Base exception for TAM API errors."""


class TransportError(TamAPIError):
    """Network or timeout failure talking to the API."""


class RequestError(TamAPIError):
    """Terminal non-2xx response."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"TAM API returned HTTP {status}")
        self.status = status
        self.body = body


class ResponseDecodeError(TamAPIError):
    """2xx response whose body is not valid JSON."""


@dataclass
class PendingRequest:
    method: str
    path: str
    json: Any = None
    retried: bool = False


class RotationHandle:
    """Owned handle on a running rotation loop."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        self._task.cancel()

    async def stop(self) -> None:
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class SessionClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        store: CredentialStore,
        acquirer: CredentialAcquirer,
    ):
        self._http = http
        self._base = base_url.rstrip("/")
        self._store = store
        self._acquirer = acquirer
        self._rotation: RotationHandle | None = None
        self._acquiring: asyncio.Future | None = None

    @property
    def store(self) -> CredentialStore:
        return self._store

    def _headers(self) -> dict[str, str]:
        headers = dict(API_HEADERS)
        credential = self._store.get()
        if credential is not None:
            headers[CREDENTIAL_HEADER] = credential.value
        return headers

    async def _send(self, pending: PendingRequest) -> httpx.Response:
        # Headers are built here, not when the PendingRequest was created, so a
        # credential stored in the meantime is picked up.
        request = self._http.build_request(
            pending.method,
            f"{self._base}{pending.path}",
            headers=self._headers(),
            json=pending.json,
        )
        try:
            resp = await self._http.send(request)
        except httpx.HTTPError as e:
            record_upstream(None)
            logger.warning(
                "telemetry upstream_transport_error method=%s path=%s error=%s",
                pending.method,
                pending.path,
                str(e),
            )
            raise TransportError(f"{pending.method} {pending.path} failed: {e}") from e
        record_upstream(resp.status_code)
        return resp

    async def _acquire_shared(self) -> Credential:
        # Singleflight: stops that 404 during one fan-out wait on the same scrape
        if self._acquiring is None or self._acquiring.done():
            self._acquiring = asyncio.ensure_future(self._acquirer.acquire())
        return await asyncio.shield(self._acquiring)

    async def request(self, method: str, path: str, json: Any = None) -> httpx.Response:
        """
        Send a credentialed request and return the 2xx response.
        Raises RequestError for any terminal non-2xx status and TransportError on network failure.
        """
        pending = PendingRequest(method=method.upper(), path=path, json=json)
        resp = await self._send(pending)

        if resp.status_code == CREDENTIAL_EXPIRED_STATUS and not pending.retried:
            pending.retried = True
            record_credential_event("retry")
            logger.info("telemetry credential_retry path=%s", path)
            try:
                credential = await self._acquire_shared()
            except AcquisitionFailure as e:
                logger.warning("telemetry credential_retry_failed path=%s reason=%s", path, e.reason)
                raise RequestError(resp.status_code, resp.text) from e
            self._store.set(credential)
            resp = await self._send(pending)

        if not resp.is_success:
            raise RequestError(resp.status_code, resp.text)
        return resp

    async def get_json(self, path: str) -> Any:
        resp = await self.request("GET", path)
        try:
            return resp.json()
        except ValueError as e:
            raise ResponseDecodeError(f"GET {path} returned invalid JSON") from e

    async def refresh_credential(self) -> Credential | None:
        """Acquire and store a new credential. On failure the previous one stays in use."""
        try:
            credential = await self._acquire_shared()
        except AcquisitionFailure as e:
            logger.warning("telemetry credential_rotation_failed reason=%s", e.reason)
            return None
        self._store.set(credential)
        logger.info("telemetry credential_rotated key=%s", credential.masked())
        return credential

    async def _rotate_forever(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.refresh_credential()
            except Exception:
                logger.exception("telemetry credential_rotation_error")
            await asyncio.sleep(interval_seconds)

    def start_rotation(self, interval_seconds: float = DEFAULT_ROTATION_SECONDS) -> RotationHandle:
        """
        Start the rotation loop: one acquisition now, then one every interval_seconds.
        Any loop previously started by this client is cancelled. Must be called with a running event loop.
        """
        if self._rotation is not None:
            self._rotation.cancel()
        task = asyncio.get_running_loop().create_task(self._rotate_forever(interval_seconds))
        self._rotation = RotationHandle(task)
        logger.info("telemetry credential_rotation_started interval_seconds=%s", interval_seconds)
        return self._rotation

    async def stop_rotation(self) -> None:
        if self._rotation is not None:
            await self._rotation.stop()
            self._rotation = None
