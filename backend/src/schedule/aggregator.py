"""
Line schedule aggregation: one topology request for the line, then one real-time
request per stop (issued concurrently), normalized and filtered to the requested line.
"""
import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from src.schedule.normalizer import normalize_passes
from src.tam.client import RequestError, SessionClient, TamAPIError
from src.tam.models import LineCatalog, LineConstants, LineSchedule, LineSummary, PassInfo, Stop

logger = logging.getLogger(__name__)

DEFAULT_SHUTTLE_LINE_ID = "96"
DIRECTIONS = (0, 1)


def line_key(value: Any) -> str:
    """Textual line id, so 19 and "19" compare equal."""
    if value is None:
        return ""
    return str(value).strip()


def _normalize_constants(data: Mapping[str, Any]) -> LineConstants:
    params = data.get("ligne_param") or {}
    if not isinstance(params, Mapping):
        params = {}
    return LineConstants(
        forward_name=str(params.get("nom_aller") or ""),
        return_name=str(params.get("nom_retour") or ""),
        color=str(data.get("couleur") or ""),
    )


def _raw_stops(data: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    # "stops" is usually an object keyed by position; keep upstream order either way
    stops = data.get("stops") or []
    if isinstance(stops, Mapping):
        stops = list(stops.values())
    if not isinstance(stops, list):
        return []
    return [s for s in stops if isinstance(s, Mapping)]


def _normalize_stop(raw: Mapping[str, Any]) -> Stop:
    logical = raw.get("logical_stop")
    return Stop(
        name=str(raw.get("nom") or ""),
        is_terminus=bool(raw.get("isTerminus")),
        logical_stop=line_key(logical) or None,
    )


def _filter_line(passes: list[PassInfo], line_id: str) -> list[PassInfo]:
    wanted = line_key(line_id)
    return [p for p in passes if line_key(p.ligne) == wanted]


def _normalize_line(raw: Mapping[str, Any]) -> LineSummary:
    return LineSummary(
        line_id=line_key(raw.get("id")),
        type=str(raw.get("type") or ""),
        name=str(raw.get("nom") or raw.get("name") or ""),
        color=str(raw.get("couleur") or raw.get("color") or ""),
    )


class ScheduleAggregator:
    def __init__(
        self,
        session: SessionClient,
        shuttle_line_id: str = DEFAULT_SHUTTLE_LINE_ID,
        extra_urban_line_ids: set[str] | None = None,
    ):
        self._session = session
        self._shuttle = line_key(shuttle_line_id)
        self._extra_urban = {line_key(i) for i in (extra_urban_line_ids or set())}

    def is_shuttle(self, line_id: str) -> bool:
        return line_key(line_id) == self._shuttle

    def reverse_direction(self, line_id: str, direction: int) -> int:
        """Toggle 0 <-> 1. The shuttle has a single direction and never toggles."""
        if self.is_shuttle(line_id):
            return 0
        return 1 if direction == 0 else 0

    def topology_path(self, line_id: str, direction: int) -> str:
        line = line_key(line_id)
        if self.is_shuttle(line):
            return f"/ligne/{line}/ordered-arrets/"
        return f"/ligne/{line}/ordered-arrets/{direction}"

    async def _enrich_stop(self, stop: Stop, line_id: str) -> Stop:
        if not stop.logical_stop:
            return stop.model_copy(update={"passes": []})
        try:
            payload = await self._session.get_json(f"/stop/rt/{stop.logical_stop}")
        except RequestError as e:
            logger.warning(
                "telemetry stop_realtime_error stop=%s status=%s",
                stop.logical_stop,
                e.status,
            )
            return stop.model_copy(update={"passes": [], "error": e.status})
        except TamAPIError as e:
            logger.warning("telemetry stop_realtime_error stop=%s error=%s", stop.logical_stop, str(e))
            return stop.model_copy(update={"passes": []})
        passes = _filter_line(normalize_passes(payload), line_id)
        return stop.model_copy(update={"passes": passes})

    async def fetch_schedule(self, line_id: str, direction: int = 0) -> LineSchedule:
        """
        Return the stops of line_id in upstream order, each with its real-time passes,
        plus the line's direction names and color.
        Topology failures propagate; a failing stop degrades to an empty pass list.
        """
        line = line_key(line_id)
        if self.is_shuttle(line):
            direction = 0
        elif direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}")

        data = await self._session.get_json(self.topology_path(line, direction))
        if not isinstance(data, Mapping):
            data = {}
        constants = _normalize_constants(data)
        stops = [_normalize_stop(s) for s in _raw_stops(data)]

        # gather keeps input order, so the result follows topology order
        enriched = await asyncio.gather(*(self._enrich_stop(s, line) for s in stops))
        logger.info(
            "telemetry schedule_fetched line=%s direction=%s stops=%s",
            line,
            direction,
            len(enriched),
        )
        return LineSchedule(line_id=line, direction=direction, stops=list(enriched), constants=constants)

    async def fetch_lines(self) -> LineCatalog:
        """Return the line catalog grouped into tramways, urban and extra-urban buses."""
        data = await self._session.get_json("/lignes")
        if not isinstance(data, list):
            data = []
        tramways: list[LineSummary] = []
        urban: list[LineSummary] = []
        extra_urban: list[LineSummary] = []
        for raw in data:
            if not isinstance(raw, Mapping):
                continue
            line = _normalize_line(raw)
            if line.type == "tramway":
                tramways.append(line)
            elif line.type == "bus":
                (extra_urban if line.line_id in self._extra_urban else urban).append(line)
        logger.info(
            "telemetry lines_fetched tramways=%s urban=%s extra_urban=%s",
            len(tramways),
            len(urban),
            len(extra_urban),
        )
        return LineCatalog(tramways=tramways, urban_buses=urban, extra_urban_buses=extra_urban)
