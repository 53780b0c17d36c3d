"""Backend interface for expert invocation."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol


@dataclass(slots=True)
class BackendMessage:
    """One transcript entry; ``role`` is ``user`` or ``assistant``."""

    role: str
    content: str


@dataclass(slots=True)
class BackendRequest:
    """Inputs required for one expert call."""

    expert_id: str
    prompt: str
    messages: list[BackendMessage] = field(default_factory=list)
    context: str | None = None
    timeout_seconds: float | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    def render_transcript(self) -> str:
        """Flatten the transcript, newest last, with the current prompt at the end."""

        parts: list[str] = []
        if self.context:
            parts.append(f"## Context\n{self.context}")
        for message in self.messages:
            parts.append(f"[{message.role}]\n{message.content}")
        parts.append(self.prompt if not self.messages else f"[user]\n{self.prompt}")
        return "\n\n".join(parts)


@dataclass(slots=True)
class BackendResponse:
    """Raw expert output."""

    expert_id: str
    content: str
    elapsed_ms: float = 0.0
    model: str | None = None


class BackendCallError(RuntimeError):
    """Expert call failure; the message text is what the failure classifier reads."""

    def __init__(
        self,
        message: str,
        *,
        expert_id: str,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.expert_id = expert_id
        self.exit_code = exit_code


class ExpertBackend(Protocol):
    """Protocol implemented by expert backends."""

    async def call(self, request: BackendRequest) -> BackendResponse:
        """Run one expert call and return its raw output."""
