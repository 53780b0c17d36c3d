"""Shared test fixtures."""

from __future__ import annotations

import os
import sys

import pytest

from agent_relay.orchestrator.backend import BackendRequest, BackendResponse

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m agent_relay.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)

DEFAULT_REPLY = "Implemented the requested change and checked it against the existing tests."


class ScriptedBackend:
    """In-process expert backend replaying canned replies or raising canned errors."""

    def __init__(
        self,
        replies: list[str | Exception] | None = None,
        *,
        by_expert: dict[str, list[str | Exception]] | None = None,
        default: str = DEFAULT_REPLY,
    ) -> None:
        self.replies = list(replies or [])
        self.by_expert = {expert: list(items) for expert, items in (by_expert or {}).items()}
        self.default = default
        self.requests: list[BackendRequest] = []

    @property
    def experts_called(self) -> list[str]:
        return [request.expert_id for request in self.requests]

    async def call(self, request: BackendRequest) -> BackendResponse:
        self.requests.append(request)
        queue = self.by_expert.get(request.expert_id)
        if queue:
            reply = queue.pop(0)
        elif self.replies:
            reply = self.replies.pop(0)
        else:
            reply = self.default
        if isinstance(reply, Exception):
            raise reply
        return BackendResponse(expert_id=request.expert_id, content=reply)


class SleepRecorder:
    """Awaitable stand-in for ``asyncio.sleep`` that only records delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture()
def scripted_backend():
    """Factory for :class:`ScriptedBackend` instances."""

    return ScriptedBackend


@pytest.fixture()
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def relay_env(monkeypatch, tmp_path):
    """Isolate AGENT_RELAY_* settings and route every expert to the echo agent."""

    for name in list(os.environ):
        if name.startswith("AGENT_RELAY_"):
            monkeypatch.delenv(name, raising=False)
    state_path = tmp_path / "loop-state.json"
    monkeypatch.setenv("AGENT_RELAY_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("AGENT_RELAY_LOOP_STATE_PATH", str(state_path))
    monkeypatch.setenv("AGENT_RELAY_LOOP_ITERATION_DELAY_SECONDS", "0")
    monkeypatch.setenv("AGENT_RELAY_RETRY_BASE_DELAY_SECONDS", "0")
    monkeypatch.setenv("AGENT_RELAY_RATE_LIMIT_BASE_DELAY_SECONDS", "0")
    monkeypatch.setenv("AGENT_RELAY_BUILTIN_HOOKS", "false")
    return state_path
