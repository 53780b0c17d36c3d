"""Persistence for retry loop state so other processes can inspect or cancel it."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from agent_relay.orchestrator.models import LoopStatus

logger = logging.getLogger(__name__)

LOOP_STATE_SCHEMA_VERSION = 1
LAST_OUTPUT_MAX_CHARS = 2_000

_REQUIRED_FIELDS: dict[str, type] = {
    "task_id": str,
    "prompt": str,
    "iteration": int,
    "max_iterations": int,
    "completion_promise": str,
    "expert_id": str,
    "started_at": str,
    "status": str,
}


@dataclass(slots=True)
class LoopState:
    """Snapshot of the active loop. The transcript itself is never persisted."""

    task_id: str
    prompt: str
    iteration: int
    max_iterations: int
    completion_promise: str
    expert_id: str
    started_at: datetime
    status: LoopStatus = LoopStatus.RUNNING
    last_output: str | None = None
    cancel_requested: bool = False
    failed_iterations: int = 0

    @property
    def active(self) -> bool:
        return self.status == LoopStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": LOOP_STATE_SCHEMA_VERSION,
            "task_id": self.task_id,
            "prompt": self.prompt,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "completion_promise": self.completion_promise,
            "expert_id": self.expert_id,
            "started_at": self.started_at.isoformat(),
            "status": self.status.value,
            "last_output": self.last_output,
            "cancel_requested": self.cancel_requested,
            "failed_iterations": self.failed_iterations,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LoopState:
        for name, expected in _REQUIRED_FIELDS.items():
            if not isinstance(payload.get(name), expected):
                raise ValueError(
                    f"Loop state field {name!r} is missing or not {expected.__name__}",
                )
        return cls(
            task_id=payload["task_id"],
            prompt=payload["prompt"],
            iteration=payload["iteration"],
            max_iterations=payload["max_iterations"],
            completion_promise=payload["completion_promise"],
            expert_id=payload["expert_id"],
            started_at=datetime.fromisoformat(payload["started_at"]),
            status=LoopStatus(payload["status"]),
            last_output=payload.get("last_output"),
            cancel_requested=bool(payload.get("cancel_requested", False)),
            failed_iterations=int(payload.get("failed_iterations", 0)),
        )


class LoopStateStore(Protocol):
    """Backing store for the single active loop."""

    def load(self) -> LoopState | None: ...

    def save(self, state: LoopState) -> None: ...

    def clear(self) -> None: ...

    def request_cancel(self) -> bool:
        """Flag the active loop for cancellation; False when nothing is running."""


class InMemoryLoopStateStore:
    def __init__(self) -> None:
        self._state: LoopState | None = None

    def load(self) -> LoopState | None:
        return self._state

    def save(self, state: LoopState) -> None:
        self._state = state

    def clear(self) -> None:
        self._state = None

    def request_cancel(self) -> bool:
        if self._state is None or not self._state.active:
            return False
        self._state.cancel_requested = True
        return True


class JsonLoopStateStore:
    """File-backed store; a separate CLI invocation can read status or request cancel."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> LoopState | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text("utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Loop state file must hold a JSON object")
            return LoopState.from_dict(payload)
        except (OSError, ValueError) as error:
            logger.warning("Ignoring unreadable loop state %s: %s", self.path, error)
            return None

    def save(self, state: LoopState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(state.to_dict(), indent=2), "utf-8")
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def request_cancel(self) -> bool:
        state = self.load()
        if state is None or not state.active:
            return False
        state.cancel_requested = True
        self.save(state)
        return True
