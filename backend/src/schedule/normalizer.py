"""
Flatten the /stop/rt/{logical_stop} payload into one time-ordered list of passes.

The upstream shape differs per line. Both of these are seen in practice:

    {"1":  [{"Mosson": [pass, ...]}, {"Odysseum": [pass, ...]}]}
    {"19": {"0": {"Gare": [pass, ...]}, "1": {"Lattes": [pass, ...]}}}

Anything else decodes to no passes rather than an error.
"""
import re
from collections.abc import Mapping, Sequence
from typing import Any, Iterator

from src.tam.models import PassInfo

_LEADING_INT = re.compile(r"\s*(\d+)")


def pass_minutes(p: PassInfo) -> int:
    """Minutes to arrival; unparsable or negative values count as 0."""
    match = _LEADING_INT.match(p.time or "")
    return int(match.group(1)) if match else 0


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def _passes_by_destination(group: Any) -> Iterator[Any]:
    """Yield raw passes from a {destination: [pass, ...]} mapping."""
    if not isinstance(group, Mapping):
        return
    for passes in group.values():
        if _is_sequence(passes):
            yield from passes


def _line_passes(line_data: Any) -> Iterator[Any]:
    if _is_sequence(line_data):
        for group in line_data:
            yield from _passes_by_destination(group)
    elif isinstance(line_data, Mapping):
        for direction_data in line_data.values():
            yield from _passes_by_destination(direction_data)


def normalize_passes(raw: Any) -> list[PassInfo]:
    """Return every pass in the payload, sorted by minutes to arrival (stable for ties)."""
    if not isinstance(raw, Mapping):
        return []
    passes: list[PassInfo] = []
    # Top-level keys are line ids; every line is kept here, filtering is the caller's job.
    for line_data in raw.values():
        for item in _line_passes(line_data):
            if isinstance(item, Mapping):
                passes.append(PassInfo.model_validate(dict(item)))
    passes.sort(key=pass_minutes)
    return passes
