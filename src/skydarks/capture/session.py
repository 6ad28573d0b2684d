from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from ..config.settings import Settings
from ..errors import ConnectionNotOpenError, CoolingTimeoutError, DriftAbortError, ReplyParseError
from ..theskyx.client import TheSkyClient
from .plan import CapturePlan, build_plan
from .specs import DarkSpec, FrameSetSpec, parse_start_time
from .state import PlanStore, create_plan_store
from .wait import WaitService

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CoolingParameters:
    use_cooler: bool = False
    target: float = -10.0
    start_tolerance: float = 1.0
    max_wait_minutes: int = 30
    poll_seconds: float = 60.0
    abort_on_drift: bool = False
    drift_tolerance: float = 3.0
    off_at_end: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "CoolingParameters":
        return cls(
            use_cooler=settings.use_cooler,
            target=settings.cool_to,
            start_tolerance=settings.cool_start_tolerance,
            max_wait_minutes=settings.cool_wait_minutes,
            poll_seconds=settings.cool_poll_seconds,
            abort_on_drift=settings.abort_on_cooling,
            drift_tolerance=settings.cool_abort_tolerance,
            off_at_end=settings.cooler_off_at_end,
        )


class CoolingState(str, Enum):
    IDLE = "idle"
    REQUESTED = "cooling-requested"
    STABILIZING = "stabilizing"
    STABLE = "stable"
    TIMED_OUT = "timed-out"


@dataclass(frozen=True)
class FrameProgress:
    kind: str
    key: str
    done: int
    required: int


ProgressCallback = Callable[[FrameProgress], None]


class CaptureSession:
    """Sequences connection, cooling and resumable bias/dark capture for one run."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[TheSkyClient] = None,
        store: Optional[PlanStore] = None,
        waiter: Optional[WaitService] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.settings = settings
        self.cooling = CoolingParameters.from_settings(settings)
        self._waiter = waiter or WaitService()
        self._client = client or TheSkyClient(
            timeout=settings.command_timeout_seconds,
            waiter=self._waiter,
        )
        self._store = store or create_plan_store(
            settings.state_file,
            settings.cool_to,
            per_temperature=settings.state_file_per_temperature,
        )
        self._on_progress = on_progress
        self._connected = False
        self.cooling_state = CoolingState.IDLE

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def store(self) -> PlanStore:
        return self._store

    async def connect(self) -> None:
        if self._connected:
            logger.debug("session.connect.already_connected")
            return
        await self._client.connect(self.settings.server_address, self.settings.server_port)
        self._connected = True

    async def close(self) -> None:
        if not self._connected:
            logger.debug("session.close.not_connected")
            return
        await self._client.close()
        self._connected = False

    async def delay_start(self, start_time: datetime) -> None:
        logger.info("session.delay_start", start_time=start_time.isoformat())
        await self._waiter.delay_until(start_time)

    async def cool_for_start(self) -> None:
        """Switch the cooler on and wait for the target temperature, if cooling is wanted."""
        if not self._connected:
            raise ConnectionNotOpenError("cool_for_start")
        if not self.cooling.use_cooler:
            logger.debug("session.cooling.not_requested")
            return

        self.cooling_state = CoolingState.REQUESTED
        await self._client.start_cooling(self.cooling.target)
        # the first reading after connecting is often nonsense (e.g. -100)
        try:
            ignored = await self._client.get_temperature()
        except ReplyParseError as exc:
            logger.debug("session.cooling.first_reading_unparsed", error=str(exc))
        else:
            logger.debug("session.cooling.first_reading_ignored", temperature=ignored)

        await self.wait_for_target_temperature()

    async def wait_for_target_temperature(self) -> float:
        target = self.cooling.target
        tolerance = self.cooling.start_tolerance
        maximum_seconds = self.cooling.max_wait_minutes * 60
        self.cooling_state = CoolingState.STABILIZING
        elapsed = 0.0
        while True:
            temperature = await self._client.get_temperature()
            if abs(temperature - target) <= tolerance:
                self.cooling_state = CoolingState.STABLE
                logger.info(
                    "session.cooling.stable",
                    temperature=temperature,
                    target=target,
                    tolerance=tolerance,
                )
                return temperature
            logger.info(
                "session.cooling.waiting",
                temperature=round(temperature, 1),
                target=target,
                seconds=self.cooling.poll_seconds,
            )
            elapsed += await self._waiter.delay(self.cooling.poll_seconds)
            if elapsed >= maximum_seconds:
                self.cooling_state = CoolingState.TIMED_OUT
                raise CoolingTimeoutError(
                    f"timed out waiting for target temperature {target:g} "
                    f"after {self.cooling.max_wait_minutes} minutes"
                )

    async def get_capture_plan(self) -> CapturePlan:
        """Build the plan for the requested sets and bring forward saved progress."""
        plan = build_plan(self.settings.bias_specs(), self.settings.dark_specs())
        plan = self._store.merge_from_store(plan)
        if self.settings.clear_done:
            logger.info("session.plan.progress_cleared")
            plan.clear_progress()
            self._store.save(plan)
        return plan

    async def update_download_times(self, plan: CapturePlan) -> None:
        for binning in plan.unmeasured_binnings():
            logger.info("session.download_time.measuring", binning=binning)
            plan.download_times[binning] = await self._client.measure_download_time(binning)
            self._store.save(plan)

    async def capture_frames(self) -> CapturePlan:
        """Capture whatever the plan still needs, checkpointing after every frame.

        The requested sets describe the total wanted, so a run interrupted part way
        through picks up where the state file says it stopped.
        """
        if not self._connected:
            raise ConnectionNotOpenError("capture_frames")
        plan = await self.get_capture_plan()
        await self.update_download_times(plan)

        passes = ("dark", "bias") if self.settings.darks_first else ("bias", "dark")
        for kind in passes:
            await self._capture_pass(plan, kind)
        return plan

    async def _capture_pass(self, plan: CapturePlan, kind: str) -> None:
        if kind == "dark":
            if self.settings.no_dark:
                logger.info("session.capture.darks_skipped")
                return
            specs: list[FrameSetSpec] = list(plan.darks_required.values())
        else:
            if self.settings.no_bias:
                logger.info("session.capture.bias_skipped")
                return
            specs = list(plan.bias_required.values())
        for spec in specs:
            await self._capture_set(plan, spec)

    async def _capture_set(self, plan: CapturePlan, spec: FrameSetSpec) -> None:
        logger.info("session.capture.set", kind=spec.kind, set=str(spec), key=spec.key)
        needed = plan.remaining(spec)
        if needed <= 0:
            logger.info("session.capture.set_complete", key=spec.key, count=spec.count)
            return
        logger.info("session.capture.set_needed", key=spec.key, needed=needed, count=spec.count)

        frame = 0
        while plan.done(spec) < spec.count:
            temperature = await self.drift_exceeded()
            if temperature is not None:
                raise DriftAbortError(
                    spec.kind,
                    temperature,
                    self.cooling.target,
                    self.cooling.drift_tolerance,
                )
            frame += 1
            download_time = plan.download_time(spec.binning)
            logger.info(
                "session.capture.frame",
                kind=spec.kind,
                frame=frame,
                of=needed,
                binning=spec.binning,
                seconds=spec.exposure_seconds,
            )
            if isinstance(spec, DarkSpec):
                await self._client.capture_dark_frame(spec.binning, spec.exposure_seconds, download_time)
            else:
                await self._client.capture_bias_frame(spec.binning, download_time)
            done = plan.record_frame(spec)
            self._store.save(plan)
            if self._on_progress is not None:
                self._on_progress(FrameProgress(spec.kind, spec.key, done, spec.count))

    async def drift_exceeded(self) -> Optional[float]:
        """Return the camera temperature if it has drifted far enough to abandon capture."""
        if not (self.cooling.use_cooler and self.cooling.abort_on_drift):
            return None
        temperature = await self._client.get_temperature()
        if abs(temperature - self.cooling.target) >= self.cooling.drift_tolerance:
            logger.warning(
                "session.cooling.drift",
                temperature=temperature,
                target=self.cooling.target,
                tolerance=self.cooling.drift_tolerance,
            )
            return temperature
        return None

    async def stop_cooling(self) -> None:
        if self.cooling.use_cooler and self.cooling.off_at_end:
            await self._client.stop_cooling()
            self.cooling_state = CoolingState.IDLE
            logger.info("session.cooling.switched_off")

    async def run(self) -> CapturePlan:
        """Perform a complete capture run: wait, connect, cool, capture, shut down."""
        start_time = parse_start_time(self.settings.start_at)
        if start_time is not None:
            await self.delay_start(start_time)
        await self.connect()
        try:
            await self.cool_for_start()
            plan = await self.capture_frames()
            await self.stop_cooling()
        finally:
            await self.close()
        return plan


__all__ = [
    "CaptureSession",
    "CoolingParameters",
    "CoolingState",
    "FrameProgress",
    "ProgressCallback",
]
