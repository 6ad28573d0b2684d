from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Iterable, Optional

import pytest

from skydarks.capture.plan import CapturePlan
from skydarks.capture.state import PlanStore
from skydarks.config.settings import Settings


class DummyClient:
    """Stands in for TheSkyClient, recording every instrument call in order."""

    def __init__(
        self,
        temperatures: Optional[Iterable[float]] = None,
        *,
        default_temperature: float = -10.0,
        download_time: float = 2.0,
    ) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.temperatures = list(temperatures or [])
        self.default_temperature = default_temperature
        self.download_time = download_time
        self.exposure_error: Optional[Exception] = None
        self.connected = False

    async def connect(self, host: str, port: int) -> None:
        self.calls.append(("connect", host, port))
        self.connected = True

    async def close(self) -> None:
        self.calls.append(("close",))
        self.connected = False

    async def start_cooling(self, temperature: float) -> None:
        self.calls.append(("start_cooling", temperature))

    async def stop_cooling(self) -> None:
        self.calls.append(("stop_cooling",))

    async def get_temperature(self) -> float:
        self.calls.append(("get_temperature",))
        if self.temperatures:
            return self.temperatures.pop(0)
        return self.default_temperature

    async def measure_download_time(self, binning: int) -> float:
        self.calls.append(("measure_download_time", binning))
        return self.download_time

    async def capture_dark_frame(self, binning: int, seconds: float, download_time: float) -> None:
        self.calls.append(("dark", binning, seconds, download_time))
        if self.exposure_error is not None:
            raise self.exposure_error

    async def capture_bias_frame(self, binning: int, download_time: float) -> None:
        self.calls.append(("bias", binning, download_time))
        if self.exposure_error is not None:
            raise self.exposure_error

    def named(self, *names: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] in names]


class RecordingWaiter:
    def __init__(self) -> None:
        self.delays: list[float] = []
        self.until: list[Any] = []

    async def delay(self, seconds: float) -> float:
        self.delays.append(seconds)
        return seconds

    async def delay_until(self, target, *, now=None) -> float:
        self.until.append(target)
        return 0.0


class RecordingStore(PlanStore):
    """A real file-backed store that also keeps a snapshot of every save."""

    def __init__(self, path: Path) -> None:
        super().__init__(path=path)
        self.saved: list[dict[str, Any]] = []

    def save(self, plan: CapturePlan) -> None:
        self.saved.append(copy.deepcopy(plan.to_dict()))
        super().save(plan)


@pytest.fixture()
def dummy_client() -> DummyClient:
    return DummyClient()


@pytest.fixture()
def waiter() -> RecordingWaiter:
    return RecordingWaiter()


@pytest.fixture()
def store(tmp_path: Path) -> RecordingStore:
    return RecordingStore(tmp_path / "skydarks.state")


@pytest.fixture()
def make_settings(tmp_path: Path):
    def factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {"state_file": tmp_path / "skydarks"}
        values.update(overrides)
        return Settings(**values)

    return factory
