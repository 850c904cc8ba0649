import logging
import re
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from settings import get_settings, parse_line_ids
from src.middleware import RequestLoggingMiddleware
from src.monitoring import get_metrics
from src.schedule.aggregator import ScheduleAggregator
from src.schedule.display import summarize_passes
from src.tam.client import SessionClient, TamAPIError
from src.tam.credentials import CredentialAcquirer, CredentialStore
from src.tam.models import LineCatalog, ScheduleResponse, StopBoardEntry

settings = get_settings()

# Structured logging: include module and level; handlers can add JSON later
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])

LINE_ID_MAX_LEN = 16
LINE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")


def _validate_line_id(line_id: str) -> None:
    if not line_id or len(line_id) > LINE_ID_MAX_LEN or not LINE_ID_PATTERN.match(line_id):
        raise HTTPException(
            status_code=400,
            detail="Invalid line_id (alphanumeric, underscore, hyphen only; max 16 chars).",
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    http = httpx.AsyncClient(timeout=settings.upstream_timeout_seconds)
    store = CredentialStore()
    session = SessionClient(
        http=http,
        base_url=settings.tam_base_url,
        store=store,
        acquirer=CredentialAcquirer(http, settings.tam_site_url),
    )
    app.state.session = session
    app.state.aggregator = ScheduleAggregator(
        session,
        shuttle_line_id=settings.shuttle_line_id,
        extra_urban_line_ids=parse_line_ids(settings.extra_urban_line_ids),
    )
    if settings.rotation_enabled:
        session.start_rotation(settings.credential_rotation_seconds)
    yield
    await session.stop_rotation()
    await http.aclose()
    app.state.session = None
    app.state.aggregator = None


app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception):
    """Return consistent JSON error for unhandled exceptions (500)."""
    logger.exception("telemetry unhandled_exception path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please try again later."},
    )


# Order: last added = innermost. RequestLogging runs first (outermost), then CORS.
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_aggregator() -> ScheduleAggregator:
    aggregator: ScheduleAggregator | None = getattr(app.state, "aggregator", None)
    if aggregator is None:
        raise HTTPException(status_code=503, detail="Transit data source not initialised.")
    return aggregator


@app.get("/favicon.ico", include_in_schema=False)
@limiter.exempt
def favicon(request: Request):
    """Return 204 so browser favicon requests don't log 404."""
    return Response(status_code=204)


@app.get("/health")
@limiter.exempt
def health(request: Request):
    session: SessionClient | None = getattr(app.state, "session", None)
    has_credential = session is not None and session.store.get() is not None
    return {"status": "ok", "credential": has_credential}


@app.get("/metrics")
@limiter.exempt
def metrics(request: Request):
    return get_metrics()


@app.get("/lines", response_model=LineCatalog)
@limiter.limit("60/minute")
async def get_lines(request: Request):
    """Line catalog grouped into tramways, urban buses and extra-urban buses."""
    aggregator = _get_aggregator()
    logger.info("telemetry route=lines")
    try:
        return await aggregator.fetch_lines()
    except TamAPIError as e:
        logger.warning("telemetry lines_route_error error=%s", str(e))
        raise HTTPException(status_code=502, detail="Failed to fetch lines from transit API.") from e


@app.get("/lines/{line_id}/schedule", response_model=ScheduleResponse)
@limiter.limit("60/minute")
async def get_line_schedule(request: Request, line_id: str, direction: int = 0):
    """
    Stops of a line in order with their next passes. Each stop carries a summary for the
    requested direction: at most 3 passes plus an overflow count, or why there are none.
    """
    _validate_line_id(line_id)
    if direction not in (0, 1):
        raise HTTPException(status_code=400, detail="direction must be 0 or 1")
    aggregator = _get_aggregator()
    logger.info("telemetry route=schedule line=%s direction=%s", line_id, direction)
    try:
        schedule = await aggregator.fetch_schedule(line_id, direction)
    except TamAPIError as e:
        logger.warning("telemetry schedule_route_error line=%s error=%s", line_id, str(e))
        raise HTTPException(
            status_code=502,
            detail="Failed to fetch line schedule from transit API. Please try again.",
        ) from e
    return ScheduleResponse(
        line_id=schedule.line_id,
        direction=schedule.direction,
        reverse_direction=aggregator.reverse_direction(schedule.line_id, schedule.direction),
        constants=schedule.constants,
        stops=[
            StopBoardEntry(stop=stop, summary=summarize_passes(stop, schedule.direction))
            for stop in schedule.stops
        ],
    )
