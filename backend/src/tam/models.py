"""Pydantic models for TAM schedule data and API responses."""
from typing import Any

from pydantic import BaseModel, field_validator


class PassInfo(BaseModel):
    """One predicted arrival. Field names follow the upstream payload."""

    delay: str = ""  # "3 min" or "à 14:05"
    direction: str = ""  # "0" or "1", preserved verbatim
    direction_name: str = ""
    trip_headsign: str = ""
    time: str = ""  # minutes to arrival
    ligne: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        # Upstream mixes "19" and 19 for the same field
        if v is None:
            return ""
        if isinstance(v, bool):
            return str(v).lower()
        if isinstance(v, (int, float)):
            return str(int(v)) if float(v).is_integer() else str(v)
        return v if isinstance(v, str) else str(v)


class LineConstants(BaseModel):
    forward_name: str = ""
    return_name: str = ""
    color: str = ""


class Stop(BaseModel):
    name: str
    is_terminus: bool = False
    logical_stop: str | None = None
    passes: list[PassInfo] = []
    error: int | None = None  # HTTP status of a failed real-time request


class LineSchedule(BaseModel):
    line_id: str
    direction: int
    stops: list[Stop]
    constants: LineConstants


class LineSummary(BaseModel):
    line_id: str
    type: str
    name: str = ""
    color: str = ""


class LineCatalog(BaseModel):
    tramways: list[LineSummary]
    urban_buses: list[LineSummary]
    extra_urban_buses: list[LineSummary]


class PassSummary(BaseModel):
    status: str  # "ok" | "none_in_direction" | "no_realtime" | "no_data" | "error"
    visible: list[PassInfo] = []
    overflow: int = 0
    error: int | None = None


class StopBoardEntry(BaseModel):
    stop: Stop
    summary: PassSummary


class ScheduleResponse(BaseModel):
    line_id: str
    direction: int
    reverse_direction: int  # direction the swap button switches to
    constants: LineConstants
    stops: list[StopBoardEntry]
