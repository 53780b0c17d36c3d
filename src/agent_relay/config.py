"""Runtime configuration for workflow, recovery, retry loop, backends and hooks."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_relay.orchestrator.routing import SUPPORTED_EXPERTS

DEFAULT_COMMAND_TEMPLATE = "claude -p --model {model} -- {prompt}"
MAX_WORKFLOW_ATTEMPTS = 5
MAX_LOOP_ITERATIONS = 50


@dataclass(slots=True)
class WorkflowSettings:
    """Phase sequencing and budget settings."""

    max_attempts: int = 3
    timeout_seconds: float = 600.0
    skip_intent: bool = False
    skip_assessment: bool = False
    skip_exploration: bool = False
    skip_verification: bool = False
    exploration_parallelism: int = 3


@dataclass(slots=True)
class FailureSettings:
    """Retry backoff and expert-switch thresholds."""

    switch_after_attempts: int = 2
    base_delay_seconds: float = 1.0
    rate_limit_base_delay_seconds: float = 5.0
    max_delay_seconds: float = 30.0
    jitter_ratio: float = 0.2


@dataclass(slots=True)
class LoopSettings:
    """Retry loop defaults; callers may override per invocation."""

    max_iterations: int = 10
    completion_promise: str = "DONE"
    iteration_delay_seconds: float = 1.0
    default_expert: str = "strategist"
    state_path: Path = Path(".agent-relay/loop-state.json")


@dataclass(slots=True)
class BackendSettings:
    """CLI command templates and models per expert."""

    command_templates: dict[str, str] = field(
        default_factory=lambda: {"default": DEFAULT_COMMAND_TEMPLATE},
    )
    models: dict[str, str] = field(default_factory=dict)
    default_model: str = "sonnet"
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class HookSettings:
    enabled: bool = True
    builtin_hooks: bool = True
    config_path: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)
    failure: FailureSettings = field(default_factory=FailureSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)
    hooks: HookSettings = field(default_factory=HookSettings)

    @classmethod
    def from_env(cls, hooks_config: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        hooks_config_env = os.getenv("AGENT_RELAY_HOOKS_CONFIG", "").strip()
        return cls(
            workflow=WorkflowSettings(
                max_attempts=int(os.getenv("AGENT_RELAY_MAX_ATTEMPTS", "3")),
                timeout_seconds=float(os.getenv("AGENT_RELAY_TIMEOUT_SECONDS", "600")),
                skip_intent=_env_bool("AGENT_RELAY_SKIP_INTENT", default=False),
                skip_assessment=_env_bool("AGENT_RELAY_SKIP_ASSESSMENT", default=False),
                skip_exploration=_env_bool("AGENT_RELAY_SKIP_EXPLORATION", default=False),
                skip_verification=_env_bool("AGENT_RELAY_SKIP_VERIFICATION", default=False),
                exploration_parallelism=int(
                    os.getenv("AGENT_RELAY_EXPLORATION_PARALLELISM", "3"),
                ),
            ),
            failure=FailureSettings(
                switch_after_attempts=int(
                    os.getenv("AGENT_RELAY_SWITCH_AFTER_ATTEMPTS", "2"),
                ),
                base_delay_seconds=float(
                    os.getenv("AGENT_RELAY_RETRY_BASE_DELAY_SECONDS", "1.0"),
                ),
                rate_limit_base_delay_seconds=float(
                    os.getenv("AGENT_RELAY_RATE_LIMIT_BASE_DELAY_SECONDS", "5.0"),
                ),
                max_delay_seconds=float(os.getenv("AGENT_RELAY_RETRY_MAX_DELAY_SECONDS", "30.0")),
                jitter_ratio=float(os.getenv("AGENT_RELAY_RETRY_JITTER_RATIO", "0.2")),
            ),
            loop=LoopSettings(
                max_iterations=int(os.getenv("AGENT_RELAY_LOOP_MAX_ITERATIONS", "10")),
                completion_promise=os.getenv("AGENT_RELAY_LOOP_COMPLETION_PROMISE", "DONE"),
                iteration_delay_seconds=float(
                    os.getenv("AGENT_RELAY_LOOP_ITERATION_DELAY_SECONDS", "1.0"),
                ),
                default_expert=os.getenv("AGENT_RELAY_LOOP_EXPERT", "strategist").strip().lower(),
                state_path=Path(
                    os.getenv("AGENT_RELAY_LOOP_STATE_PATH", ".agent-relay/loop-state.json"),
                ),
            ),
            backend=BackendSettings(
                command_templates=_collect_command_templates(),
                models=_collect_models(),
                default_model=os.getenv("AGENT_RELAY_DEFAULT_MODEL", "sonnet"),
                timeout_seconds=float(os.getenv("AGENT_RELAY_BACKEND_TIMEOUT_SECONDS", "300")),
            ),
            hooks=HookSettings(
                enabled=_env_bool("AGENT_RELAY_HOOKS_ENABLED", default=True),
                builtin_hooks=_env_bool("AGENT_RELAY_BUILTIN_HOOKS", default=True),
                config_path=hooks_config or (Path(hooks_config_env) if hooks_config_env else None),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if not 1 <= self.workflow.max_attempts <= MAX_WORKFLOW_ATTEMPTS:
            raise ValueError(
                f"AGENT_RELAY_MAX_ATTEMPTS must be between 1 and {MAX_WORKFLOW_ATTEMPTS}.",
            )
        if self.workflow.timeout_seconds <= 0:
            raise ValueError("AGENT_RELAY_TIMEOUT_SECONDS must be > 0.")
        if self.workflow.exploration_parallelism < 1:
            raise ValueError("AGENT_RELAY_EXPLORATION_PARALLELISM must be >= 1.")

        if self.failure.switch_after_attempts < 1:
            raise ValueError("AGENT_RELAY_SWITCH_AFTER_ATTEMPTS must be >= 1.")
        if self.failure.base_delay_seconds < 0 or self.failure.rate_limit_base_delay_seconds < 0:
            raise ValueError("Retry base delays must be >= 0.")
        if self.failure.max_delay_seconds < max(
            self.failure.base_delay_seconds,
            self.failure.rate_limit_base_delay_seconds,
        ):
            raise ValueError(
                "AGENT_RELAY_RETRY_MAX_DELAY_SECONDS must be >= both retry base delays.",
            )
        if not 0 <= self.failure.jitter_ratio < 1:
            raise ValueError("AGENT_RELAY_RETRY_JITTER_RATIO must be in [0, 1).")

        if not 1 <= self.loop.max_iterations <= MAX_LOOP_ITERATIONS:
            raise ValueError(
                f"AGENT_RELAY_LOOP_MAX_ITERATIONS must be between 1 and {MAX_LOOP_ITERATIONS}.",
            )
        if not self.loop.completion_promise.strip():
            raise ValueError("AGENT_RELAY_LOOP_COMPLETION_PROMISE must not be empty.")
        if self.loop.iteration_delay_seconds < 0:
            raise ValueError("AGENT_RELAY_LOOP_ITERATION_DELAY_SECONDS must be >= 0.")
        if self.loop.default_expert not in SUPPORTED_EXPERTS:
            raise ValueError(f"Unsupported AGENT_RELAY_LOOP_EXPERT: {self.loop.default_expert!r}")

        if self.backend.timeout_seconds <= 0:
            raise ValueError("AGENT_RELAY_BACKEND_TIMEOUT_SECONDS must be > 0.")
        if not self.backend.command_templates:
            raise ValueError("At least one expert command template is required.")
        for expert, template in self.backend.command_templates.items():
            if not template.strip():
                raise ValueError(f"Empty command template for expert={expert!r}")


def _collect_command_templates() -> dict[str, str]:
    templates = {
        "default": os.getenv("AGENT_RELAY_COMMAND_TEMPLATE", DEFAULT_COMMAND_TEMPLATE),
    }
    for expert in SUPPORTED_EXPERTS:
        value = os.getenv(f"AGENT_RELAY_{expert.upper()}_COMMAND")
        if value is not None:
            templates[expert] = value
    return templates


def _collect_models() -> dict[str, str]:
    models: dict[str, str] = {}
    for expert in SUPPORTED_EXPERTS:
        value = os.getenv(f"AGENT_RELAY_{expert.upper()}_MODEL", "").strip()
        if value:
            models[expert] = value
    return models


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
