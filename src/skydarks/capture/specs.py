from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Union

from ..errors import FrameSpecError

MIN_BINNING = 1
MAX_BINNING = 8


@dataclass(frozen=True)
class BiasSpec:
    count: int
    binning: int

    kind = "bias"

    @property
    def key(self) -> str:
        return make_bias_key(self.count, self.binning)

    @property
    def exposure_seconds(self) -> float:
        return 0.0

    def to_dict(self) -> dict[str, int]:
        return {"count": self.count, "binning": self.binning}

    def __str__(self) -> str:
        return f"{self.count},{self.binning}"


@dataclass(frozen=True)
class DarkSpec:
    count: int
    exposure_seconds: float
    binning: int

    kind = "dark"

    @property
    def key(self) -> str:
        return make_dark_key(self.count, self.exposure_seconds, self.binning)

    def to_dict(self) -> dict[str, Union[int, float]]:
        return {
            "count": self.count,
            "exposureSeconds": self.exposure_seconds,
            "binning": self.binning,
        }

    def __str__(self) -> str:
        return f"{self.count},{self.exposure_seconds:g},{self.binning}"


FrameSetSpec = Union[BiasSpec, DarkSpec]


def make_dark_key(count: int, exposure_seconds: float, binning: int) -> str:
    return f"Dark_{count}_{exposure_seconds:.4f}_{binning}"


def make_bias_key(count: int, binning: int) -> str:
    return f"Bias_{count}_{binning}"


def _parse_count(raw: str, kind: str) -> int:
    try:
        count = int(raw.strip())
    except ValueError:
        raise FrameSpecError(f"invalid count {raw!r} in {kind} set") from None
    if count < 1:
        raise FrameSpecError(f"invalid count {raw!r} in {kind} set: must be > 0")
    return count


def _parse_binning(raw: str, kind: str) -> int:
    try:
        binning = int(raw.strip())
    except ValueError:
        raise FrameSpecError(f"invalid binning {raw!r} in {kind} set") from None
    if binning < MIN_BINNING or binning > MAX_BINNING:
        raise FrameSpecError(
            f"invalid binning {raw!r} in {kind} set: must be {MIN_BINNING} - {MAX_BINNING}"
        )
    return binning


def parse_bias_set(text: str) -> BiasSpec:
    """Parse ``count,binning`` into a :class:`BiasSpec`."""
    parts = text.split(",")
    if len(parts) != 2:
        raise FrameSpecError(
            f"invalid bias specification {text!r}, format should be count,binning"
        )
    return BiasSpec(count=_parse_count(parts[0], "bias"), binning=_parse_binning(parts[1], "bias"))


def parse_dark_set(text: str) -> DarkSpec:
    """Parse ``count,seconds,binning`` into a :class:`DarkSpec`."""
    parts = text.split(",")
    if len(parts) != 3:
        raise FrameSpecError(
            f"invalid dark specification {text!r}, format should be count,seconds,binning"
        )
    count = _parse_count(parts[0], "dark")
    try:
        seconds = float(parts[1].strip())
    except ValueError:
        raise FrameSpecError(f"invalid exposure {parts[1]!r} in dark set") from None
    if math.isnan(seconds) or math.isinf(seconds) or seconds <= 0:
        raise FrameSpecError(f"invalid exposure {parts[1]!r} in dark set: must be > 0")
    return DarkSpec(count=count, exposure_seconds=seconds, binning=_parse_binning(parts[2], "dark"))


def parse_bias_sets(values: Iterable[str]) -> list[BiasSpec]:
    return [parse_bias_set(value) for value in values]


def parse_dark_sets(values: Iterable[str]) -> list[DarkSpec]:
    return [parse_dark_set(value) for value in values]


def parse_start_time(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[datetime]:
    """Resolve a delayed-start string to a local wall-clock time.

    Accepted forms are ``HH:MM`` (today), ``today,HH:MM``, ``tomorrow,HH:MM`` and
    ``YYYY-MM-DD,HH:MM``. An empty value means "start immediately" and returns None.
    """
    if value is None or not value.strip():
        return None
    parts = [part.strip() for part in value.strip().lower().split(",")]
    if len(parts) == 1:
        day_text, time_text = "today", parts[0]
    elif len(parts) == 2:
        day_text, time_text = parts
    else:
        raise FrameSpecError(f"invalid start time {value!r}")

    reference = now or datetime.now()
    if day_text in ("", "today"):
        day: date = reference.date()
    elif day_text == "tomorrow":
        day = reference.date() + timedelta(days=1)
    else:
        try:
            day = datetime.strptime(day_text, "%Y-%m-%d").date()
        except ValueError:
            raise FrameSpecError(f"invalid start day {day_text!r}") from None

    try:
        clock = datetime.strptime(time_text, "%H:%M").time()
    except ValueError:
        raise FrameSpecError(f"invalid start time {time_text!r}, expected HH:MM") from None
    return datetime.combine(day, clock)


__all__ = [
    "BiasSpec",
    "DarkSpec",
    "FrameSetSpec",
    "make_bias_key",
    "make_dark_key",
    "parse_bias_set",
    "parse_bias_sets",
    "parse_dark_set",
    "parse_dark_sets",
    "parse_start_time",
]
