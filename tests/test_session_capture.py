from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from skydarks.capture.plan import build_plan
from skydarks.capture.session import CaptureSession
from skydarks.capture.specs import BiasSpec, DarkSpec
from skydarks.errors import ConnectionNotOpenError, DriftAbortError, ExposureTimeoutError

DARK_KEY = "Dark_3_10.0000_1"
BIAS_KEY = "Bias_2_1"


def _session(settings, client, store, waiter, **kwargs) -> CaptureSession:
    return CaptureSession(settings, client=client, store=store, waiter=waiter, **kwargs)


def _persist(store, *, darks_done=None, bias_done=None, download_times=None):
    plan = build_plan([BiasSpec(2, 1)], [DarkSpec(3, 10.0, 1)])
    plan.darks_done.update(darks_done or {})
    plan.bias_done.update(bias_done or {})
    plan.download_times.update(download_times or {})
    store.save(plan)
    store.saved.clear()


@pytest.mark.asyncio
async def test_checkpoint_after_every_frame(make_settings, dummy_client, store, waiter):
    settings = make_settings(dark_frames=["3,10,1"])
    session = _session(settings, dummy_client, store, waiter)
    await session.connect()

    plan = await session.capture_frames()

    # one save for the download measurement, then one per frame
    assert len(store.saved) == 4
    assert store.saved[0]["downloadTimes"] == {"1": 2.0}
    assert store.saved[0]["darksDone"] == {DARK_KEY: 0}
    assert [snapshot["darksDone"][DARK_KEY] for snapshot in store.saved[1:]] == [1, 2, 3]
    assert plan.is_complete
    assert dummy_client.named("dark") == [("dark", 1, 10.0, 2.0)] * 3


@pytest.mark.asyncio
async def test_resumed_run_captures_nothing_more(make_settings, dummy_client, store, waiter):
    settings = make_settings(dark_frames=["3,10,1"], bias_frames=["2,1"])
    session = _session(settings, dummy_client, store, waiter)
    await session.connect()
    await session.capture_frames()
    exposures = len(dummy_client.named("dark", "bias"))
    saves = len(store.saved)

    plan = await session.capture_frames()

    assert len(dummy_client.named("dark", "bias")) == exposures == 5
    assert len(store.saved) == saves
    assert plan.done(DarkSpec(3, 10.0, 1)) == 3
    assert plan.done(BiasSpec(2, 1)) == 2


@pytest.mark.asyncio
async def test_partial_progress_resumes_remaining_frames(make_settings, dummy_client, store, waiter):
    _persist(store, darks_done={DARK_KEY: 2}, download_times={1: 4.5})
    settings = make_settings(dark_frames=["3,10,1"], bias_frames=["2,1"])
    session = _session(settings, dummy_client, store, waiter)
    await session.connect()

    await session.capture_frames()

    assert dummy_client.named("measure_download_time") == []
    assert dummy_client.named("dark") == [("dark", 1, 10.0, 4.5)]
    assert dummy_client.named("bias") == [("bias", 1, 4.5)] * 2


@pytest.mark.asyncio
async def test_bias_first_by_default(make_settings, dummy_client, store, waiter):
    settings = make_settings(bias_frames=["2,1"], dark_frames=["1,5,2"])
    session = _session(settings, dummy_client, store, waiter)
    await session.connect()

    await session.capture_frames()

    assert dummy_client.named("measure_download_time") == [
        ("measure_download_time", 1),
        ("measure_download_time", 2),
    ]
    assert [call[0] for call in dummy_client.named("dark", "bias")] == ["bias", "bias", "dark"]


@pytest.mark.asyncio
async def test_darks_first_ordering(make_settings, dummy_client, store, waiter):
    settings = make_settings(bias_frames=["2,1"], dark_frames=["1,5,2"], darks_first=True)
    session = _session(settings, dummy_client, store, waiter)
    await session.connect()

    await session.capture_frames()

    assert [call[0] for call in dummy_client.named("dark", "bias")] == ["dark", "bias", "bias"]


@pytest.mark.asyncio
async def test_drift_abort_keeps_last_checkpoint(make_settings, dummy_client, store, waiter):
    _persist(store, darks_done={DARK_KEY: 1}, download_times={1: 2.0})
    dummy_client.temperatures = [-10.0, -5.0]
    settings = make_settings(
        dark_frames=["3,10,1"],
        use_cooler=True,
        abort_on_cooling=True,
        cool_to=-10.0,
        cool_abort_tolerance=3.0,
        no_bias=True,
    )
    session = _session(settings, dummy_client, store, waiter)
    await session.connect()

    with pytest.raises(DriftAbortError) as excinfo:
        await session.capture_frames()

    assert excinfo.value.temperature == -5.0
    assert excinfo.value.kind == "dark"
    assert len(dummy_client.named("dark")) == 1
    assert len(store.saved) == 1
    assert store.load().darks_done[DARK_KEY] == 2


@pytest.mark.asyncio
async def test_skip_flags(make_settings, dummy_client, store, waiter):
    settings = make_settings(bias_frames=["2,1"], dark_frames=["3,10,1"], no_dark=True)
    session = _session(settings, dummy_client, store, waiter)
    await session.connect()

    plan = await session.capture_frames()

    assert dummy_client.named("dark") == []
    assert len(dummy_client.named("bias")) == 2
    assert not plan.is_complete


@pytest.mark.asyncio
async def test_exposure_failure_propagates_after_checkpoint(make_settings, dummy_client, store, waiter):
    _persist(store, download_times={1: 2.0})
    dummy_client.exposure_error = ExposureTimeoutError("camera stuck")
    settings = make_settings(dark_frames=["3,10,1"])
    session = _session(settings, dummy_client, store, waiter)
    await session.connect()

    with pytest.raises(ExposureTimeoutError):
        await session.capture_frames()

    assert store.saved == []
    assert store.load().darks_done[DARK_KEY] == 0


@pytest.mark.asyncio
async def test_clear_done_starts_over(make_settings, dummy_client, store, waiter):
    _persist(store, darks_done={DARK_KEY: 3}, bias_done={BIAS_KEY: 2}, download_times={1: 2.0})
    settings = make_settings(dark_frames=["3,10,1"], bias_frames=["2,1"], clear_done=True)
    session = _session(settings, dummy_client, store, waiter)
    await session.connect()

    await session.capture_frames()

    assert store.saved[0]["darksDone"] == {DARK_KEY: 0}
    assert store.saved[0]["downloadTimes"] == {"1": 2.0}
    assert len(dummy_client.named("dark", "bias")) == 5


@pytest.mark.asyncio
async def test_capture_requires_connection(make_settings, dummy_client, store, waiter):
    session = _session(make_settings(dark_frames=["1,1,1"]), dummy_client, store, waiter)
    with pytest.raises(ConnectionNotOpenError):
        await session.capture_frames()


@pytest.mark.asyncio
async def test_run_reports_progress_and_stops_cooling(make_settings, dummy_client, store, waiter):
    progress = []
    settings = make_settings(
        bias_frames=["2,1"],
        use_cooler=True,
        cooler_off_at_end=True,
        cool_to=-10.0,
    )
    session = _session(settings, dummy_client, store, waiter, on_progress=progress.append)

    plan = await session.run()

    assert plan.is_complete
    assert [(p.kind, p.key, p.done, p.required) for p in progress] == [
        ("bias", BIAS_KEY, 1, 2),
        ("bias", BIAS_KEY, 2, 2),
    ]
    names = [call[0] for call in dummy_client.calls]
    assert names[0] == "connect"
    assert names[1] == "start_cooling"
    assert names[-2:] == ["stop_cooling", "close"]
    assert session.connected is False


@pytest.mark.asyncio
async def test_run_closes_on_failure(make_settings, dummy_client, store, waiter):
    dummy_client.exposure_error = ExposureTimeoutError("camera stuck")
    settings = make_settings(bias_frames=["1,1"], use_cooler=True, cooler_off_at_end=True)
    session = _session(settings, dummy_client, store, waiter)

    with pytest.raises(ExposureTimeoutError):
        await session.run()

    assert dummy_client.named("stop_cooling") == []
    assert dummy_client.calls[-1] == ("close",)


@pytest.mark.asyncio
async def test_run_honours_delayed_start(make_settings, dummy_client, store, waiter):
    start = datetime.now() + timedelta(days=1)
    settings = make_settings(bias_frames=["1,1"], start_at=start.strftime("%Y-%m-%d,%H:%M"))
    session = _session(settings, dummy_client, store, waiter)

    await session.run()

    assert waiter.until == [start.replace(second=0, microsecond=0)]
    assert dummy_client.calls[0][0] == "connect"


@pytest.mark.asyncio
async def test_measured_plan_saves_once_per_frame(make_settings, dummy_client, store, waiter):
    _persist(store, download_times={1: 2.0})
    settings = make_settings(dark_frames=["3,10,1"], no_bias=True)
    session = _session(settings, dummy_client, store, waiter)
    await session.connect()

    await session.capture_frames()

    assert len(store.saved) == 3
    assert store.saved[-1]["darksDone"][DARK_KEY] == 3
