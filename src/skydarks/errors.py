from __future__ import annotations


class SkyDarksError(RuntimeError):
    """Base class for failures raised while orchestrating a capture run."""


class FrameSpecError(ValueError):
    """Raised when a bias/dark set specification or start time cannot be parsed."""


class ConnectionNotOpenError(SkyDarksError):
    """Raised when an instrument operation is attempted on a closed session."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation}: connection not open")
        self.operation = operation


class TransportError(SkyDarksError):
    """Raised when dialing, writing to, or reading from TheSkyX fails."""


class ShortWriteError(TransportError):
    """Raised when fewer bytes were written than the command envelope holds."""

    def __init__(self, written: int, expected: int) -> None:
        super().__init__(f"short write to TheSkyX: wrote {written} of {expected} bytes")
        self.written = written
        self.expected = expected


class RemoteCommandError(SkyDarksError):
    """Raised when TheSkyX answers with an error status line."""

    def __init__(self, status: str) -> None:
        super().__init__(f"TheSkyX error: {status}")
        self.status = status


class ReplyParseError(SkyDarksError):
    """Raised when a reply payload cannot be interpreted as the expected value."""

    def __init__(self, payload: str, expected: str = "number") -> None:
        super().__init__(f"error parsing {expected} result from {payload!r}")
        self.payload = payload


class ExposureTimeoutError(SkyDarksError):
    """Raised when an exposure never reports completion within its bound."""


class CoolingTimeoutError(SkyDarksError):
    """Raised when the camera does not reach its target temperature in time."""


class DriftAbortError(SkyDarksError):
    """Raised when the camera temperature drifts outside the abort tolerance.

    This is a policy stop, not an instrument fault: the capture plan is left at
    its last checkpoint and the run can be resumed once cooling is stable again.
    """

    def __init__(self, kind: str, temperature: float, target: float, tolerance: float) -> None:
        super().__init__(
            f"abandoning {kind} frame capture: temperature {temperature:.2f} "
            f"is outside tolerance {tolerance:g} of target {target:g}"
        )
        self.kind = kind
        self.temperature = temperature
        self.target = target
        self.tolerance = tolerance


class PlanStoreError(SkyDarksError):
    """Raised when the capture plan cannot be written or read back."""


__all__ = [
    "ConnectionNotOpenError",
    "CoolingTimeoutError",
    "DriftAbortError",
    "ExposureTimeoutError",
    "FrameSpecError",
    "PlanStoreError",
    "RemoteCommandError",
    "ReplyParseError",
    "ShortWriteError",
    "SkyDarksError",
    "TransportError",
]
