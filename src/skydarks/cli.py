from __future__ import annotations

import argparse
import asyncio
import logging
from logging.handlers import RotatingFileHandler
from typing import Any, Optional, Sequence

import structlog
from pydantic import ValidationError

from .capture.session import CaptureSession, FrameProgress
from .capture.specs import parse_start_time
from .capture.state import create_plan_store
from .config.settings import Settings, load_settings
from .errors import DriftAbortError, FrameSpecError, SkyDarksError

logger = logging.getLogger(__name__)

_LOG_HANDLER_FLAG = "_skydarks_capture_handler"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_DRIFT_ABORT = 3

# argparse dest -> Settings field
_OVERRIDES = {
    "server": "server_address",
    "port": "server_port",
    "timeout": "command_timeout_seconds",
    "cool": "use_cooler",
    "coolto": "cool_to",
    "coolstarttol": "cool_start_tolerance",
    "coolwait": "cool_wait_minutes",
    "coolpoll": "cool_poll_seconds",
    "coolabort": "abort_on_cooling",
    "coolaborttol": "cool_abort_tolerance",
    "cooloffatend": "cooler_off_at_end",
    "bias": "bias_frames",
    "dark": "dark_frames",
    "darksfirst": "darks_first",
    "nobias": "no_bias",
    "nodark": "no_dark",
    "clear": "clear_done",
    "statefile": "state_file",
    "pertemperature": "state_file_per_temperature",
    "startat": "start_at",
    "verbosity": "verbosity",
}


def _verbosity_level(verbosity: int) -> int:
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def configure_logging(verbosity: int) -> None:
    level = _verbosity_level(verbosity)
    logging.basicConfig(level=level, format="%(message)s")
    logging.getLogger().setLevel(level)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def _configure_capture_logging(settings: Settings) -> None:
    """Persist capture run logs to a rotating file next to the state file."""

    try:
        log_dir = settings.state_file.parent / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / "skydarks-capture.log"
    except OSError as exc:
        logger.warning("cli.capture.logfile_init_failed error=%s", exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if getattr(handler, _LOG_HANDLER_FLAG, False):
            return

    handler = RotatingFileHandler(
        log_path,
        maxBytes=5_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    setattr(handler, _LOG_HANDLER_FLAG, True)
    root_logger.addHandler(handler)
    logger.info("cli.capture.logfile_enabled path=%s", log_path)


def _report_progress(progress: FrameProgress) -> None:
    logger.info(
        "cli.capture.progress %s %s: %d of %d",
        progress.kind,
        progress.key,
        progress.done,
        progress.required,
    )


async def capture_command(*, settings: Settings, session: Optional[CaptureSession] = None) -> int:
    """Run a full capture, returning the process exit status."""

    if not settings.bias_frames and not settings.dark_frames:
        logger.error("cli.capture.no_sets at least one bias or dark frame set must be specified")
        return EXIT_CONFIG

    _configure_capture_logging(settings)
    session = session or CaptureSession(settings, on_progress=_report_progress)
    try:
        plan = await session.run()
    except DriftAbortError as exc:
        logger.warning("cli.capture.drift_abort %s", exc)
        return EXIT_DRIFT_ABORT
    except SkyDarksError as exc:
        logger.error("cli.capture.failed %s", exc)
        return EXIT_FAILURE
    logger.info("cli.capture.complete state_file=%s complete=%s", session.store.path, plan.is_complete)
    return EXIT_OK


def validate_command(*, settings: Settings) -> int:
    print("Server settings")
    print(f"   Address: {settings.server_address}")
    print(f"   Port: {settings.server_port}")
    print("Delayed start")
    start_time = parse_start_time(settings.start_at)
    print(f"   Start at: {start_time.isoformat(sep=' ') if start_time else 'immediately'}")
    print("Cooling settings")
    print(f"   Use cooler: {settings.use_cooler}")
    print(f"   Cool to: {settings.cool_to:g} degrees")
    print(f"   Start tolerance: {settings.cool_start_tolerance:g} degrees")
    print(f"   Wait maximum: {settings.cool_wait_minutes} minutes")
    print(f"   Abort if cooling outside tolerance: {settings.abort_on_cooling}")
    print(f"   Abort tolerance: {settings.cool_abort_tolerance:g} degrees")
    print(f"   Turn off cooler at end of session: {settings.cooler_off_at_end}")
    print("Bias frames" + (" (skipped)" if settings.no_bias else ""))
    for bias in settings.bias_specs():
        print(f"   {bias.count} bias frames at {bias.binning} x {bias.binning} binning")
    print("Dark frames" + (" (skipped)" if settings.no_dark else ""))
    for dark in settings.dark_specs():
        print(
            f"   {dark.count} dark frames of {dark.exposure_seconds:.2f} seconds "
            f"at {dark.binning} x {dark.binning} binning"
        )
    print(f"Order: {'darks' if settings.darks_first else 'bias'} first")
    store = create_plan_store(
        settings.state_file,
        settings.cool_to,
        per_temperature=settings.state_file_per_temperature,
    )
    print(f"State file: {store.path}")
    return EXIT_OK


def status_command(*, settings: Settings) -> int:
    store = create_plan_store(
        settings.state_file,
        settings.cool_to,
        per_temperature=settings.state_file_per_temperature,
    )
    plan = store.load()
    if plan is None:
        print(f"No saved progress in {store.path}")
        return EXIT_OK
    print(f"State file: {store.path}")
    for title, specs in (("Bias frames", plan.bias_required), ("Dark frames", plan.darks_required)):
        print(title)
        for key, spec in specs.items():
            print(
                f"   {key}: {plan.done(spec)} of {spec.count} captured, "
                f"{plan.remaining(spec)} remaining"
            )
    print("Download times")
    for binning, seconds in sorted(plan.download_times.items()):
        measured = f"{seconds:.2f} seconds" if seconds else "not measured"
        print(f"   binning {binning}: {measured}")
    print("Complete" if plan.is_complete else "Incomplete")
    return EXIT_OK


def reset_command(*, settings: Settings) -> int:
    store = create_plan_store(
        settings.state_file,
        settings.cool_to,
        per_temperature=settings.state_file_per_temperature,
    )
    if store.reset():
        print(f"Progress cleared in {store.path}")
    else:
        print(f"No saved progress in {store.path}")
    return EXIT_OK


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=str,
        help="Path to a settings YAML file to load in addition to environment variables.",
    )
    parser.add_argument("-f", "--statefile", type=str, help="State file base path.")
    parser.add_argument(
        "--per-temperature",
        dest="pertemperature",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Qualify the state file name with the cooling target temperature.",
    )
    parser.add_argument("--coolto", type=float, help="Cooling target temperature (selects the state file).")
    parser.add_argument(
        "-v",
        "--verbosity",
        type=int,
        help="Number of messages, 0 (few) to 5 (lots).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="skydarks",
        description="Collect bias and dark calibration frames through TheSkyX.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    capture_parser = subparsers.add_parser(
        "capture",
        help="Capture bias and dark frames, resuming any interrupted run.",
    )
    _add_common_arguments(capture_parser)
    capture_parser.add_argument("-s", "--server", type=str, help="Address of TheSkyX server.")
    capture_parser.add_argument("-p", "--port", type=int, help="Port number of TheSkyX server.")
    capture_parser.add_argument("--timeout", type=float, help="Seconds to wait for each TheSkyX reply.")
    capture_parser.add_argument(
        "--cool",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Use the camera cooler.",
    )
    capture_parser.add_argument("--coolstarttol", type=float, help="Cooling tolerance to start capture.")
    capture_parser.add_argument("--coolwait", type=int, help="Maximum minutes to reach temperature.")
    capture_parser.add_argument("--coolpoll", type=float, help="Seconds between temperature checks while cooling.")
    capture_parser.add_argument(
        "--coolabort",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Abort capture if the temperature leaves the abort tolerance.",
    )
    capture_parser.add_argument("--coolaborttol", type=float, help="Temperature drift that aborts capture.")
    capture_parser.add_argument(
        "--cooloffatend",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Switch the cooler off when the session ends.",
    )
    capture_parser.add_argument(
        "--bias",
        action="append",
        help="Bias frame set count,binning (repeatable).",
    )
    capture_parser.add_argument(
        "--dark",
        action="append",
        help="Dark frame set count,seconds,binning (repeatable).",
    )
    capture_parser.add_argument(
        "--darksfirst",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Capture dark frames before bias frames.",
    )
    capture_parser.add_argument("--nobias", action="store_const", const=True, help="Skip bias frames.")
    capture_parser.add_argument("--nodark", action="store_const", const=True, help="Skip dark frames.")
    capture_parser.add_argument(
        "--clear",
        action="store_const",
        const=True,
        help="Ignore progress saved by a previous run and start over.",
    )
    capture_parser.add_argument(
        "--startat",
        type=str,
        help="Delay the start: HH:MM, or today|tomorrow|YYYY-MM-DD,HH:MM.",
    )

    validate_parser = subparsers.add_parser("validate", help="Validate and display the settings.")
    _add_common_arguments(validate_parser)
    status_parser = subparsers.add_parser("status", help="Display progress recorded in the state file.")
    _add_common_arguments(status_parser)
    reset_parser = subparsers.add_parser("reset", help="Clear recorded progress so capture starts over.")
    _add_common_arguments(reset_parser)
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    for dest, field_name in _OVERRIDES.items():
        value = getattr(args, dest, None)
        if value is not None:
            overrides[field_name] = value
    return load_settings(config_path=getattr(args, "config", None), **overrides)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point for capturing calibration frames and managing saved progress."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    try:
        settings = settings_from_args(args)
    except (ValidationError, FrameSpecError, ValueError, FileNotFoundError) as exc:
        logger.error("cli.settings_invalid %s", exc)
        return EXIT_CONFIG
    configure_logging(settings.verbosity)

    try:
        if args.command == "capture":
            return asyncio.run(capture_command(settings=settings))
        if args.command == "validate":
            return validate_command(settings=settings)
        if args.command == "status":
            return status_command(settings=settings)
        return reset_command(settings=settings)
    except SkyDarksError as exc:
        logger.error("cli.%s.failed %s", args.command, exc)
        return EXIT_FAILURE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
