from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import allure
import pytest

from agent_relay.orchestrator.backend import (
    BackendCallError,
    BackendMessage,
    BackendRequest,
    CliExpertBackend,
)
from agent_relay.orchestrator.backend.cli_backend import _build_run_args
from agent_relay.orchestrator.failure_classifier import classify_failure
from agent_relay.orchestrator.models import FailureType

pytestmark = [
    allure.epic("Expert Backends"),
    allure.feature("CLI Subprocess Backend"),
]

ECHO = (
    f"{sys.executable} -m agent_relay.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)


def _args(template: str, prompt: str = "fix it's bug") -> list[str]:
    return _build_run_args(
        command_template=template,
        expert_id="writer",
        model="m1",
        prompt=prompt,
        prompt_file=Path("/tmp/prompt file.txt"),
    )


def _call(backend: CliExpertBackend, expert_id: str = "reviewer", prompt: str = "Review it"):
    return asyncio.run(backend.call(BackendRequest(expert_id=expert_id, prompt=prompt)))


def test_build_run_args_quotes_every_placeholder() -> None:
    assert _args("agent --expert {expert} --model {model} -- {prompt}") == [
        "agent",
        "--expert",
        "writer",
        "--model",
        "m1",
        "--",
        "fix it's bug",
    ]
    assert _args("agent --file {prompt_file}") == ["agent", "--file", "/tmp/prompt file.txt"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --model {model}", "must include {prompt} or {prompt_file}"),
        ("agent {unknown} {prompt}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(BackendCallError, match=message) as excinfo:
        _args(template)
    assert excinfo.value.expert_id == "writer"


def test_render_transcript_puts_history_before_current_prompt() -> None:
    request = BackendRequest(
        expert_id="writer",
        prompt="Continue",
        context="Repository uses hatch",
        messages=[
            BackendMessage(role="user", content="Start"),
            BackendMessage(role="assistant", content="Started"),
        ],
    )

    assert request.render_transcript() == (
        "## Context\nRepository uses hatch\n\n"
        "[user]\nStart\n\n"
        "[assistant]\nStarted\n\n"
        "[user]\nContinue"
    )
    assert BackendRequest(expert_id="writer", prompt="Solo").render_transcript() == "Solo"


def test_echo_agent_round_trip_uses_expert_model_and_prompt_file() -> None:
    backend = CliExpertBackend(
        command_templates={"default": ECHO},
        models={"reviewer": "opus"},
        timeout_seconds=30,
    )

    response = _call(backend, prompt="Review the patch\nsecond line")

    assert response.expert_id == "reviewer"
    assert response.model == "opus"
    assert response.content.startswith("[reviewer] handled: Review the patch")
    assert "<promise>DONE</promise>" in response.content
    assert response.elapsed_ms > 0


def test_per_expert_template_overrides_default() -> None:
    backend = CliExpertBackend(
        command_templates={
            "default": f"{ECHO} --fail-with 'default template used'",
            "writer": f"{ECHO} --no-promise",
        },
        timeout_seconds=30,
    )

    response = _call(backend, expert_id="writer", prompt="Draft docs")

    assert response.content.startswith("[writer] handled: Draft docs")
    assert "<promise>" not in response.content


def test_missing_template_is_a_backend_error() -> None:
    backend = CliExpertBackend(command_templates={"writer": ECHO})

    with pytest.raises(BackendCallError, match="No command template configured"):
        _call(backend, expert_id="reviewer")


def test_non_zero_exit_carries_stderr_for_classification() -> None:
    backend = CliExpertBackend(
        command_templates={"default": f"{ECHO} --fail-with '429 Too Many Requests' --exit-code 3"},
        timeout_seconds=30,
    )

    with pytest.raises(BackendCallError) as excinfo:
        _call(backend)

    error = excinfo.value
    assert error.exit_code == 3
    assert str(error) == "Expert reviewer exited with code 3: 429 Too Many Requests"
    assert classify_failure(error).failure_type == FailureType.RATE_LIMIT


def test_non_zero_exit_redacts_credentials_in_stderr() -> None:
    backend = CliExpertBackend(
        command_templates={
            "default": f"{ECHO} --fail-with 'Unauthorized: ANTHROPIC_API_KEY=sk-ant-abcdefghijkl'",
        },
        timeout_seconds=30,
    )

    with pytest.raises(BackendCallError) as excinfo:
        _call(backend)

    assert str(excinfo.value) == (
        "Expert reviewer exited with code 1: Unauthorized: ANTHROPIC_API_KEY=[redacted]"
    )
    assert "abcdefghijkl" not in str(excinfo.value)
    assert classify_failure(excinfo.value).failure_type == FailureType.AUTH_ERROR


def test_empty_output_is_an_invalid_response() -> None:
    backend = CliExpertBackend(
        command_templates={"default": f"{sys.executable} -c pass {{prompt_file}}"},
        timeout_seconds=30,
    )

    with pytest.raises(BackendCallError, match="empty output") as excinfo:
        _call(backend)
    assert classify_failure(excinfo.value).failure_type == FailureType.INVALID_RESPONSE


def test_slow_expert_times_out() -> None:
    backend = CliExpertBackend(
        command_templates={
            "default": f"{sys.executable} -c 'import time; time.sleep(10)' {{prompt_file}}",
        },
        timeout_seconds=0.3,
    )

    with pytest.raises(BackendCallError, match="timed out") as excinfo:
        _call(backend)
    assert excinfo.value.exit_code == 124
    assert classify_failure(excinfo.value).failure_type == FailureType.TIMEOUT


def test_unknown_command_is_reported() -> None:
    backend = CliExpertBackend(command_templates={"default": "agent-relay-missing-cli {prompt}"})

    with pytest.raises(BackendCallError, match="command not found"):
        _call(backend)
