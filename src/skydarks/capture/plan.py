from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

import structlog

from .specs import BiasSpec, DarkSpec, FrameSetSpec, parse_bias_set, parse_dark_set

logger = structlog.get_logger(__name__)


@dataclass
class CapturePlan:
    """Resumable record of the frames wanted, the frames captured, and download timings.

    ``download_times`` maps a binning factor to the measured seconds needed to pull
    an image off the camera; ``0`` means the binning has not been measured yet.
    """

    darks_required: dict[str, DarkSpec] = field(default_factory=dict)
    bias_required: dict[str, BiasSpec] = field(default_factory=dict)
    darks_done: dict[str, int] = field(default_factory=dict)
    bias_done: dict[str, int] = field(default_factory=dict)
    download_times: dict[int, float] = field(default_factory=dict)

    def done_map(self, spec: FrameSetSpec) -> dict[str, int]:
        return self.darks_done if isinstance(spec, DarkSpec) else self.bias_done

    def done(self, spec: FrameSetSpec) -> int:
        return self.done_map(spec).get(spec.key, 0)

    def remaining(self, spec: FrameSetSpec) -> int:
        return max(spec.count - self.done(spec), 0)

    def record_frame(self, spec: FrameSetSpec) -> int:
        done = self.done_map(spec)
        done[spec.key] = done.get(spec.key, 0) + 1
        return done[spec.key]

    def download_time(self, binning: int) -> float:
        return self.download_times.get(binning, 0.0)

    def unmeasured_binnings(self) -> list[int]:
        return sorted(binning for binning, seconds in self.download_times.items() if seconds == 0)

    @property
    def is_complete(self) -> bool:
        specs: list[FrameSetSpec] = [*self.bias_required.values(), *self.darks_required.values()]
        return all(self.remaining(spec) == 0 for spec in specs)

    def add_spec(self, spec: FrameSetSpec) -> None:
        if isinstance(spec, DarkSpec):
            self.darks_required[spec.key] = spec
        else:
            self.bias_required[spec.key] = spec
        self.done_map(spec).setdefault(spec.key, 0)
        self.download_times.setdefault(spec.binning, 0.0)

    def merge_progress(self, persisted: Optional["CapturePlan"]) -> "CapturePlan":
        """Overlay larger done counts and download times from a persisted plan.

        Only keys already present in this plan are considered; progress stored for
        sets that are no longer requested is dropped. Values never decrease.
        """
        if persisted is None:
            return self
        for mine, theirs in (
            (self.bias_done, persisted.bias_done),
            (self.darks_done, persisted.darks_done),
        ):
            for key, count in mine.items():
                stored = theirs.get(key, 0)
                if stored > count:
                    logger.debug("capture.plan.done_restored", key=key, done=count, stored=stored)
                    mine[key] = stored
        for binning, seconds in self.download_times.items():
            stored_seconds = persisted.download_times.get(binning, 0.0)
            if stored_seconds > seconds:
                logger.debug(
                    "capture.plan.download_time_restored",
                    binning=binning,
                    seconds=stored_seconds,
                )
                self.download_times[binning] = stored_seconds
        return self

    def clear_progress(self) -> None:
        for done in (self.bias_done, self.darks_done):
            for key in done:
                done[key] = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "darksRequired": {key: spec.to_dict() for key, spec in self.darks_required.items()},
            "biasRequired": {key: spec.to_dict() for key, spec in self.bias_required.items()},
            "darksDone": dict(self.darks_done),
            "biasDone": dict(self.bias_done),
            "downloadTimes": {str(binning): seconds for binning, seconds in self.download_times.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CapturePlan":
        """Rebuild a plan from its persisted JSON shape.

        Keys may be camelCase or the capitalised names (``DarksDone``) written by
        earlier releases. The done counts and download times must be present.
        Raises ``ValueError``, ``TypeError`` or ``KeyError`` for malformed content.
        """
        if not isinstance(data, Mapping):
            raise TypeError(f"capture plan must be a JSON object, not {type(data).__name__}")
        darks_done = _lookup(data, "darksDone")
        bias_done = _lookup(data, "biasDone")
        raw_times = _lookup(data, "downloadTimes") or {}
        if not isinstance(raw_times, Mapping):
            raise TypeError("downloadTimes must be an object")

        plan = cls()
        for spec in _load_required(_lookup(data, "darksRequired", None), parse_dark_set, _dark_from_dict):
            plan.darks_required[spec.key] = spec
        for spec in _load_required(_lookup(data, "biasRequired", None), parse_bias_set, _bias_from_dict):
            plan.bias_required[spec.key] = spec
        plan.darks_done = _load_counts(darks_done)
        plan.bias_done = _load_counts(bias_done)
        plan.download_times = {int(binning): float(seconds) for binning, seconds in raw_times.items()}
        return plan


def build_plan(bias_specs: Iterable[BiasSpec], dark_specs: Iterable[DarkSpec]) -> CapturePlan:
    """Create a fresh plan with zero progress for every requested set."""
    plan = CapturePlan()
    for dark in dark_specs:
        plan.add_spec(dark)
    for bias in bias_specs:
        plan.add_spec(bias)
    return plan


def _dark_from_dict(entry: Mapping[str, Any]) -> DarkSpec:
    return DarkSpec(
        count=int(entry["count"]),
        exposure_seconds=float(entry["exposureSeconds"]),
        binning=int(entry["binning"]),
    )


def _bias_from_dict(entry: Mapping[str, Any]) -> BiasSpec:
    return BiasSpec(count=int(entry["count"]), binning=int(entry["binning"]))


_MISSING = object()


def _lookup(data: Mapping[str, Any], name: str, default: Any = _MISSING) -> Any:
    legacy = name[0].upper() + name[1:]
    for candidate in (name, legacy):
        if candidate in data:
            return data[candidate]
    if default is _MISSING:
        raise KeyError(f"capture plan has no {name!r} entry")
    return default


def _load_required(
    raw: Any,
    parse_text: Callable[[str], FrameSetSpec],
    parse_entry: Callable[[Mapping[str, Any]], FrameSetSpec],
) -> list[FrameSetSpec]:
    # older state files stored the requested sets as their "count,..." strings
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        raw = list(raw.values())
    if not isinstance(raw, list):
        raise TypeError(f"required sets must be a list or object, not {type(raw).__name__}")
    specs: list[FrameSetSpec] = []
    for item in raw:
        try:
            specs.append(parse_text(item) if isinstance(item, str) else parse_entry(item))
        except (KeyError, TypeError, ValueError) as exc:
            # the merge never reads required sets
            logger.warning("capture.plan.required_skipped", entry=repr(item), error=str(exc))
    return specs


def _load_counts(raw: Any) -> dict[str, int]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise TypeError(f"done counts must be an object, not {type(raw).__name__}")
    return {str(key): int(count) for key, count in raw.items()}


__all__ = ["CapturePlan", "build_plan"]
