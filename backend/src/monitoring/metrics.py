"""In-memory counters for /metrics: inbound requests, upstream calls and credential events."""
import time
from collections.abc import MutableMapping
from threading import Lock

_start_time = time.monotonic()
_counts: MutableMapping[str, int] = {}
_lock = Lock()

CREDENTIAL_EVENTS = ("acquired", "acquire_failed", "retry")


def _status_bucket(status_code: int) -> str:
    if 200 <= status_code < 300:
        return "2xx"
    if 400 <= status_code < 500:
        return "4xx"
    if status_code >= 500:
        return "5xx"
    return "other"


def _incr(key: str) -> None:
    with _lock:
        _counts[key] = _counts.get(key, 0) + 1


def record_request(status_code: int) -> None:
    _incr(f"requests_{_status_bucket(status_code)}")


def record_upstream(status_code: int | None) -> None:
    """Record one upstream call. None means the call never produced a response."""
    if status_code is None:
        _incr("upstream_transport_error")
    else:
        _incr(f"upstream_{_status_bucket(status_code)}")


def record_credential_event(event: str) -> None:
    if event not in CREDENTIAL_EVENTS:
        raise ValueError(f"unknown credential event: {event}")
    _incr(f"credential_{event}")


def reset_metrics() -> None:
    with _lock:
        _counts.clear()


def get_metrics() -> dict:
    with _lock:
        counts = dict(_counts)
    uptime_seconds = time.monotonic() - _start_time
    requests = {k: v for k, v in counts.items() if k.startswith("requests_")}
    return {
        "requests_total": sum(requests.values()),
        "requests_2xx": counts.get("requests_2xx", 0),
        "requests_4xx": counts.get("requests_4xx", 0),
        "requests_5xx": counts.get("requests_5xx", 0),
        "upstream_2xx": counts.get("upstream_2xx", 0),
        "upstream_4xx": counts.get("upstream_4xx", 0),
        "upstream_5xx": counts.get("upstream_5xx", 0),
        "upstream_transport_error": counts.get("upstream_transport_error", 0),
        "credential_acquired": counts.get("credential_acquired", 0),
        "credential_acquire_failed": counts.get("credential_acquire_failed", 0),
        "credential_retry": counts.get("credential_retry", 0),
        "uptime_seconds": round(uptime_seconds, 1),
    }
