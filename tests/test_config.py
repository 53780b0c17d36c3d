from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from agent_relay.config import DEFAULT_COMMAND_TEMPLATE, Settings, _env_bool

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


@pytest.fixture()
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("AGENT_RELAY_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults_without_environment(clean_env) -> None:
    settings = Settings.from_env()

    assert settings.workflow.max_attempts == 3
    assert settings.workflow.timeout_seconds == 600.0
    assert settings.workflow.skip_verification is False
    assert settings.workflow.exploration_parallelism == 3
    assert settings.failure.switch_after_attempts == 2
    assert settings.failure.rate_limit_base_delay_seconds == 5.0
    assert settings.loop.max_iterations == 10
    assert settings.loop.completion_promise == "DONE"
    assert settings.loop.state_path == Path(".agent-relay/loop-state.json")
    assert settings.backend.command_templates == {"default": DEFAULT_COMMAND_TEMPLATE}
    assert settings.backend.models == {}
    assert settings.hooks.enabled is True
    assert settings.hooks.config_path is None
    settings.validate()


def test_environment_overrides(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("AGENT_RELAY_MAX_ATTEMPTS", "5")
    clean_env.setenv("AGENT_RELAY_SKIP_EXPLORATION", "yes")
    clean_env.setenv("AGENT_RELAY_SKIP_VERIFICATION", "1")
    clean_env.setenv("AGENT_RELAY_REVIEWER_COMMAND", "reviewer-cli {prompt}")
    clean_env.setenv("AGENT_RELAY_REVIEWER_MODEL", " opus ")
    clean_env.setenv("AGENT_RELAY_LOOP_EXPERT", " Writer ")
    clean_env.setenv("AGENT_RELAY_LOOP_STATE_PATH", str(tmp_path / "state.json"))
    clean_env.setenv("AGENT_RELAY_HOOKS_CONFIG", str(tmp_path / "env-hooks.yaml"))

    settings = Settings.from_env()

    assert settings.workflow.max_attempts == 5
    assert settings.workflow.skip_exploration is True
    assert settings.workflow.skip_verification is True
    assert settings.backend.command_templates["reviewer"] == "reviewer-cli {prompt}"
    assert settings.backend.models == {"reviewer": "opus"}
    assert settings.loop.default_expert == "writer"
    assert settings.loop.state_path == tmp_path / "state.json"
    assert settings.hooks.config_path == tmp_path / "env-hooks.yaml"

    explicit = Settings.from_env(hooks_config=tmp_path / "cli-hooks.yaml")
    assert explicit.hooks.config_path == tmp_path / "cli-hooks.yaml"


@pytest.mark.parametrize(
    ("value", "expected"),
    [("1", True), ("TRUE", True), (" on ", True), ("no", False), ("0", False)],
)
def test_env_bool_accepts_common_spellings(clean_env, value: str, expected: bool) -> None:
    clean_env.setenv("AGENT_RELAY_FLAG", value)

    assert _env_bool("AGENT_RELAY_FLAG", default=not expected) is expected


def test_env_bool_default_and_invalid_value(clean_env) -> None:
    assert _env_bool("AGENT_RELAY_FLAG", default=True) is True

    clean_env.setenv("AGENT_RELAY_FLAG", "sometimes")
    with pytest.raises(ValueError, match="Invalid boolean value for AGENT_RELAY_FLAG"):
        _env_bool("AGENT_RELAY_FLAG", default=False)


def _set_max_attempts(settings: Settings) -> None:
    settings.workflow.max_attempts = 6


def _set_timeout(settings: Settings) -> None:
    settings.workflow.timeout_seconds = 0


def _set_parallelism(settings: Settings) -> None:
    settings.workflow.exploration_parallelism = 0


def _set_switch(settings: Settings) -> None:
    settings.failure.switch_after_attempts = 0


def _set_max_delay(settings: Settings) -> None:
    settings.failure.max_delay_seconds = 2.0


def _set_jitter(settings: Settings) -> None:
    settings.failure.jitter_ratio = 1.0


def _set_loop_iterations(settings: Settings) -> None:
    settings.loop.max_iterations = 51


def _set_promise(settings: Settings) -> None:
    settings.loop.completion_promise = "  "


def _set_loop_expert(settings: Settings) -> None:
    settings.loop.default_expert = "oracle"


def _set_empty_template(settings: Settings) -> None:
    settings.backend.command_templates["writer"] = " "


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (_set_max_attempts, "AGENT_RELAY_MAX_ATTEMPTS must be between 1 and 5"),
        (_set_timeout, "AGENT_RELAY_TIMEOUT_SECONDS"),
        (_set_parallelism, "AGENT_RELAY_EXPLORATION_PARALLELISM"),
        (_set_switch, "AGENT_RELAY_SWITCH_AFTER_ATTEMPTS"),
        (_set_max_delay, "AGENT_RELAY_RETRY_MAX_DELAY_SECONDS"),
        (_set_jitter, "AGENT_RELAY_RETRY_JITTER_RATIO"),
        (_set_loop_iterations, "AGENT_RELAY_LOOP_MAX_ITERATIONS must be between 1 and 50"),
        (_set_promise, "AGENT_RELAY_LOOP_COMPLETION_PROMISE"),
        (_set_loop_expert, "Unsupported AGENT_RELAY_LOOP_EXPERT"),
        (_set_empty_template, "Empty command template for expert='writer'"),
    ],
)
def test_validate_rejects_out_of_range_values(mutate, message: str) -> None:
    settings = Settings()
    mutate(settings)

    with pytest.raises(ValueError, match=message):
        settings.validate()
