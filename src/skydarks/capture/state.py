from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from ..errors import PlanStoreError
from .plan import CapturePlan

logger = structlog.get_logger(__name__)

# One writer at a time across every store in the process.
_STORE_LOCK = threading.RLock()


def resolve_state_path(base: Path, cool_to: float, *, per_temperature: bool = True) -> Path:
    """Return the state file location, optionally qualified by the cooling target.

    ``var/skydarks`` at -10 degrees becomes ``var/skydarks_-10_000.state`` so that
    progress gathered at one set point is never resumed at another.
    """
    if not per_temperature:
        return Path(base)
    # a target that rounds to -0.000 shares the 0_000 file
    suffix = f"{round(cool_to, 3) + 0.0:.3f}".replace(".", "_")
    base_path = Path(base)
    return base_path.with_name(f"{base_path.name}_{suffix}.state")


@dataclass
class PlanStore:
    path: Path

    def save(self, plan: CapturePlan) -> None:
        payload = json.dumps(plan.to_dict(), indent=3)
        with _STORE_LOCK:
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tmp_path.open("w", encoding="utf-8") as stream:
                    stream.write(payload)
                    stream.flush()
                    os.fsync(stream.fileno())
                os.replace(tmp_path, self.path)
            except OSError as exc:
                logger.error("capture.state.save_failed", path=str(self.path), error=str(exc))
                raise PlanStoreError(f"unable to write state file {self.path}: {exc}") from exc
        logger.debug("capture.state.saved", path=str(self.path))

    def load(self) -> Optional[CapturePlan]:
        """Read the persisted plan; a missing file means no prior progress."""
        with _STORE_LOCK:
            if not self.path.exists():
                logger.debug("capture.state.missing", path=str(self.path))
                return None
            try:
                with self.path.open("r", encoding="utf-8") as stream:
                    data = json.load(stream)
            except OSError as exc:
                raise PlanStoreError(f"unable to read state file {self.path}: {exc}") from exc
            except json.JSONDecodeError as exc:
                raise PlanStoreError(f"error decoding state file {self.path}: {exc}") from exc
        try:
            plan = CapturePlan.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise PlanStoreError(f"invalid capture plan in state file {self.path}: {exc}") from exc
        logger.debug("capture.state.loaded", path=str(self.path))
        return plan

    def merge_from_store(self, plan: CapturePlan) -> CapturePlan:
        """Bring forward any progress recorded in the state file into ``plan``."""
        with _STORE_LOCK:
            persisted = self.load()
        if persisted is not None:
            logger.info("capture.state.resuming", path=str(self.path))
        return plan.merge_progress(persisted)

    def reset(self) -> bool:
        """Zero every done count in the state file, keeping measured download times.

        Returns False when there was no state file to reset.
        """
        with _STORE_LOCK:
            plan = self.load()
            if plan is None:
                return False
            plan.clear_progress()
            self.save(plan)
        logger.info("capture.state.reset", path=str(self.path))
        return True


def create_plan_store(base: Path, cool_to: float, *, per_temperature: bool = True) -> PlanStore:
    return PlanStore(path=resolve_state_path(base, cool_to, per_temperature=per_temperature))


__all__ = ["PlanStore", "create_plan_store", "resolve_state_path"]
