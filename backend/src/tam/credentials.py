"""
TAM API credential handling.

The cartography API only answers requests that carry an ``X-Api-Key`` header.
The key is not issued through any documented flow: it is embedded in the public
site's HTML (``<input id="header-api-key" ... value="...">``) and rotates on an
unknown schedule, so it has to be scraped and periodically refreshed.
"""
import logging
import re
import time
from dataclasses import dataclass, field
from threading import Lock

import httpx

from src.monitoring.metrics import record_credential_event

logger = logging.getLogger(__name__)

API_KEY_PATTERN = re.compile(r'header-api-key[^>]*value="([^"]+)"')

SITE_HEADERS = {
    "User-Agent": "MontpellierTransports/1.0.0",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "fr-FR,fr;q=0.9,en-US;q=0.8,en;q=0.7",
}

REASON_TRANSPORT = "transport"
REASON_NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Credential:
    value: str
    acquired_at: float = field(default_factory=time.time)

    def masked(self) -> str:
        return self.value[:8] + "..."


class AcquisitionFailure(Exception):
    """Scraping the credential failed. ``reason`` is "transport" or "not_found"."""

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason


class CredentialStore:
    """Holds the current credential. Readers always get a whole Credential or None."""

    def __init__(self, credential: Credential | None = None):
        self._credential = credential
        self._lock = Lock()

    def get(self) -> Credential | None:
        with self._lock:
            return self._credential

    def set(self, credential: Credential) -> None:
        # Last successful acquisition wins, whether it came from rotation or a retry.
        with self._lock:
            self._credential = credential


def extract_api_key(html: str) -> str | None:
    """Return the token from the ``header-api-key`` input, or None when absent."""
    match = API_KEY_PATTERN.search(html or "")
    if match is None:
        return None
    return match.group(1)


class CredentialAcquirer:
    """Fetches the site root and scrapes the API key out of it."""

    def __init__(self, http: httpx.AsyncClient, site_url: str):
        self._http = http
        self._site_url = site_url

    async def acquire(self) -> Credential:
        logger.info("telemetry credential_fetch url=%s", self._site_url)
        try:
            resp = await self._http.get(self._site_url, headers=SITE_HEADERS)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            record_credential_event("acquire_failed")
            logger.warning("telemetry credential_fetch_failed reason=transport error=%s", str(e))
            raise AcquisitionFailure(REASON_TRANSPORT, f"site fetch failed: {e}") from e

        token = extract_api_key(resp.text)
        if token is None:
            record_credential_event("acquire_failed")
            logger.warning("telemetry credential_fetch_failed reason=not_found")
            raise AcquisitionFailure(REASON_NOT_FOUND, "header-api-key not found in page")

        credential = Credential(value=token)
        record_credential_event("acquired")
        logger.info("telemetry credential_acquired key=%s", credential.masked())
        return credential
