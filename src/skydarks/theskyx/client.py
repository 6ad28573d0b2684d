from __future__ import annotations

import asyncio
import contextlib
import math
import socket
from typing import Optional

import structlog

from ..capture.wait import WaitService
from ..errors import (
    ConnectionNotOpenError,
    ExposureTimeoutError,
    RemoteCommandError,
    ReplyParseError,
    ShortWriteError,
    TransportError,
)

logger = structlog.get_logger(__name__)

SCRIPT_BEGIN = "/* Java Script */\n/* Socket Start Packet */\n"
SCRIPT_END = "/* Socket End Packet */\n"
MAX_REPLY_BYTES = 4096

EXPOSURE_SLACK_SECONDS = 0.5
POLL_INTERVAL_SECONDS = 1.0
TIMEOUT_FACTOR = 5.0
BIAS_EXPOSURE_SECONDS = 0.1

# ccdsoftCamera.Frame values
FRAME_BIAS = 2
FRAME_DARK = 3


def build_envelope(body: str) -> str:
    """Wrap script statements in the start/end markers TheSkyX expects."""
    if body and not body.endswith("\n"):
        body += "\n"
    return f"{SCRIPT_BEGIN}{body}{SCRIPT_END}"


def parse_reply(raw: str) -> str:
    """Split a ``payload|status`` reply, returning the trimmed payload on success.

    An empty status or one starting with "no error." (any case) is success;
    anything else raises :class:`RemoteCommandError` carrying the status text.
    """
    payload, _, status = raw.partition("|")
    status = status.strip().lower()
    if status == "" or status.startswith("no error."):
        return payload.strip()
    raise RemoteCommandError(status)


def parse_float_reply(payload: str) -> float:
    try:
        value = float(payload.strip())
    except ValueError:
        raise ReplyParseError(payload) from None
    if math.isnan(value):
        raise ReplyParseError(payload)
    return value


def round_seconds(seconds: float) -> int:
    """Round half away from zero, the way the blind exposure wait is sized."""
    return int(math.floor(seconds + 0.5))


def exposure_wait_bounds(exposure_seconds: float, download_time: float) -> tuple[int, float]:
    """Return (blind wait, maximum additional polling seconds) for one exposure."""
    blind = round_seconds(exposure_seconds + download_time + EXPOSURE_SLACK_SECONDS)
    maximum = (exposure_seconds + download_time) * TIMEOUT_FACTOR
    return blind, maximum


class TheSkyClient:
    """Client for the JavaScript-over-TCP server embedded in TheSkyX.

    The server is transactional: every command dials a new socket, writes one
    script envelope, reads one reply and hangs up. :meth:`connect` therefore only
    records where the server lives and marks the logical session open.
    """

    def __init__(
        self,
        *,
        timeout: float = 180.0,
        waiter: Optional[WaitService] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._waiter = waiter or WaitService()
        self._host: Optional[str] = None
        self._port: Optional[int] = None
        self._open = False
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._open

    async def connect(self, host: str, port: int) -> None:
        if self._open:
            logger.debug("theskyx.connect.already_open", host=self._host, port=self._port)
            return
        self._host = host
        self._port = port
        self._open = True
        logger.info("theskyx.connect", host=host, port=port)

    async def close(self) -> None:
        if not self._open:
            logger.debug("theskyx.close.not_open")
            return
        self._open = False
        logger.info("theskyx.close", host=self._host, port=self._port)

    async def start_cooling(self, temperature: float) -> None:
        await self._send(
            "start_cooling",
            "ccdsoftCamera.Connect();\n"
            "ccdsoftCamera.RegulateTemperature=true;\n"
            "ccdsoftCamera.ShutDownTemperatureRegulationOnDisconnect=false;\n"
            f"ccdsoftCamera.TemperatureSetPoint={temperature:f};\n",
        )

    async def stop_cooling(self) -> None:
        await self._send(
            "stop_cooling",
            "ccdsoftCamera.Connect();\n"
            "ccdsoftCamera.RegulateTemperature=false;\n",
        )

    async def get_temperature(self) -> float:
        payload = await self._send(
            "get_temperature",
            "ccdsoftCamera.Connect();\n"
            "var temp=ccdsoftCamera.Temperature;\n"
            "var Out;\n"
            'Out=temp + "\\n";\n',
        )
        return parse_float_reply(payload)

    async def start_dark_exposure(self, binning: int, seconds: float, download_time_hint: float) -> None:
        logger.debug(
            "theskyx.exposure.start",
            frame="dark",
            binning=binning,
            seconds=seconds,
            download_time=download_time_hint,
        )
        await self._send("start_dark_exposure", _exposure_script(FRAME_DARK, binning, seconds))

    async def start_bias_exposure(self, binning: int, download_time_hint: float) -> None:
        logger.debug(
            "theskyx.exposure.start",
            frame="bias",
            binning=binning,
            download_time=download_time_hint,
        )
        await self._send("start_bias_exposure", _exposure_script(FRAME_BIAS, binning, None))

    async def is_exposure_done(self) -> bool:
        payload = await self._send(
            "is_exposure_done",
            "ccdsoftCamera.Connect();\n"
            "var Out;\n"
            'Out=ccdsoftCamera.IsExposureComplete + "\\n";\n',
        )
        state = payload.strip().lower()
        if state in ("1", "true"):
            return True
        if state in ("0", "false"):
            return False
        raise ReplyParseError(payload, "exposure state")

    async def measure_download_time(self, binning: int) -> float:
        """Take one synchronous bias frame and return how long TheSkyX spent on it."""
        payload = await self._send(
            "measure_download_time",
            "ccdsoftCamera.Connect();\n"
            "ccdsoftCamera.Asynchronous=false;\n"
            f"ccdsoftCamera.Frame={FRAME_BIAS};\n"
            "ccdsoftCamera.ImageReduction=0;\n"
            "ccdsoftCamera.AutoSaveOn=false;\n"
            f"ccdsoftCamera.BinX={binning};\n"
            f"ccdsoftCamera.BinY={binning};\n"
            "var started=new Date().getTime();\n"
            "ccdsoftCamera.TakeImage();\n"
            "var Out;\n"
            'Out=((new Date().getTime() - started) / 1000.0) + "\\n";\n',
        )
        seconds = parse_float_reply(payload)
        logger.info("theskyx.download_time.measured", binning=binning, seconds=seconds)
        return seconds

    async def capture_dark_frame(self, binning: int, seconds: float, download_time: float) -> None:
        await self.start_dark_exposure(binning, seconds, download_time)
        await self._wait_for_exposure("dark", seconds, download_time)

    async def capture_bias_frame(self, binning: int, download_time: float) -> None:
        await self.start_bias_exposure(binning, download_time)
        await self._wait_for_exposure("bias", BIAS_EXPOSURE_SECONDS, download_time)

    async def _wait_for_exposure(self, frame: str, exposure_seconds: float, download_time: float) -> None:
        # TheSkyX sends no completion event: sleep through the likely exposure and
        # download, then poll until it says done or the bound runs out.
        blind_wait, maximum_wait = exposure_wait_bounds(exposure_seconds, download_time)
        logger.debug("theskyx.exposure.waiting", frame=frame, seconds=blind_wait)
        await self._waiter.delay(blind_wait)

        waited = 0.0
        while True:
            if await self.is_exposure_done():
                logger.debug("theskyx.exposure.done", frame=frame, polled_seconds=waited)
                return
            if waited > maximum_wait:
                raise ExposureTimeoutError(
                    f"timeout waiting for {frame} capture to finish after {waited:g} seconds of polling"
                )
            await self._waiter.delay(self.poll_interval)
            waited += self.poll_interval

    async def _send(self, operation: str, body: str) -> str:
        if not self._open:
            raise ConnectionNotOpenError(operation)
        envelope = build_envelope(body)
        logger.debug("theskyx.exchange.sent", operation=operation, host=self._host, port=self._port)
        async with self._lock:
            raw = await asyncio.to_thread(self._exchange_sync, envelope)
        logger.debug("theskyx.exchange.reply", operation=operation, reply=raw)
        return parse_reply(raw)

    def _exchange_sync(self, envelope: str) -> str:
        assert self._host is not None and self._port is not None
        data = envelope.encode("utf-8")
        try:
            sock = socket.create_connection((self._host, self._port), timeout=self.timeout)
        except OSError as exc:
            raise TransportError(f"unable to reach TheSkyX at {self._host}:{self._port}: {exc}") from exc
        try:
            written = sock.send(data)
            if written != len(data):
                raise ShortWriteError(written, len(data))
            reply = sock.recv(MAX_REPLY_BYTES)
        except OSError as exc:
            raise TransportError(f"TheSkyX exchange failed: {exc}") from exc
        finally:
            with contextlib.suppress(OSError):
                sock.close()
        return reply.decode("utf-8", errors="replace")


def _exposure_script(frame: int, binning: int, seconds: Optional[float]) -> str:
    lines = [
        "ccdsoftCamera.Connect();",
        "ccdsoftCamera.Asynchronous=true;",
        f"ccdsoftCamera.Frame={frame};",
        "ccdsoftCamera.ImageReduction=0;",
        "ccdsoftCamera.AutoSaveOn=true;",
        f"ccdsoftCamera.BinX={binning};",
        f"ccdsoftCamera.BinY={binning};",
    ]
    if seconds is not None:
        lines.append(f"ccdsoftCamera.ExposureTime={seconds:f};")
    lines.append("ccdsoftCamera.TakeImage();")
    return "\n".join(lines) + "\n"


__all__ = [
    "TheSkyClient",
    "build_envelope",
    "exposure_wait_bounds",
    "parse_float_reply",
    "parse_reply",
    "round_seconds",
]
