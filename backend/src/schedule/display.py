"""What a stop row shows: passes for one direction, capped, or the reason there are none."""
from src.tam.models import PassInfo, PassSummary, Stop

MAX_VISIBLE_PASSES = 3
NO_DATA_STATUS = 404


def _direction_of(p: PassInfo) -> int | None:
    try:
        return int(p.direction)
    except ValueError:
        return None


def summarize_passes(stop: Stop, direction: int, limit: int = MAX_VISIBLE_PASSES) -> PassSummary:
    if not stop.passes:
        if stop.error == NO_DATA_STATUS:
            return PassSummary(status="no_data", error=stop.error)
        if stop.error is not None:
            return PassSummary(status="error", error=stop.error)
        return PassSummary(status="no_realtime")

    matching = [p for p in stop.passes if _direction_of(p) == direction]
    if not matching:
        return PassSummary(status="none_in_direction")
    return PassSummary(
        status="ok",
        visible=matching[:limit],
        overflow=max(0, len(matching) - limit),
    )
