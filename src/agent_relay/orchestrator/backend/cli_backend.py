"""Subprocess-based expert backend for CLI agents."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import tempfile
import time
from collections.abc import Mapping
from pathlib import Path

from agent_relay.orchestrator.backend.base import (
    BackendCallError,
    BackendRequest,
    BackendResponse,
)
from agent_relay.orchestrator.redaction import redact_backend_text

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_KEY = "default"
_TERMINATE_GRACE_SECONDS = 2.0
_ERROR_DETAIL_CHARS = 1_000


class CliExpertBackend:
    """Run one expert call as a CLI command rendered from a per-expert template.

    Templates may use ``{expert}``, ``{model}``, ``{prompt}`` and
    ``{prompt_file}``; every value is shell-quoted before the command is split.
    """

    def __init__(
        self,
        *,
        command_templates: Mapping[str, str],
        models: Mapping[str, str] | None = None,
        default_model: str = "default",
        timeout_seconds: float = 300.0,
    ) -> None:
        self.command_templates = dict(command_templates)
        self.models = dict(models or {})
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds

    async def call(self, request: BackendRequest) -> BackendResponse:
        expert_id = request.expert_id
        template = self.command_templates.get(expert_id) or self.command_templates.get(
            DEFAULT_TEMPLATE_KEY,
        )
        if not template:
            raise BackendCallError(
                f"No command template configured for expert={expert_id!r}",
                expert_id=expert_id,
            )
        model = self.models.get(expert_id) or self.default_model
        prompt = request.render_transcript()
        timeout = request.timeout_seconds or self.timeout_seconds

        with tempfile.TemporaryDirectory(prefix="agent-relay-") as workdir:
            prompt_file = Path(workdir) / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            run_args = _build_run_args(
                command_template=template,
                expert_id=expert_id,
                model=model,
                prompt=prompt,
                prompt_file=prompt_file,
            )

            env = os.environ.copy()
            env["AGENT_RELAY_EXPERT"] = expert_id
            env["AGENT_RELAY_MODEL"] = model

            started = time.perf_counter()
            stdout, stderr, returncode = await _run_process(
                run_args=run_args,
                env=env,
                timeout_seconds=timeout,
                expert_id=expert_id,
            )
            elapsed_ms = (time.perf_counter() - started) * 1000

        if returncode != 0:
            detail = (
                redact_backend_text(stderr, max_chars=_ERROR_DETAIL_CHARS)
                or redact_backend_text(stdout, max_chars=_ERROR_DETAIL_CHARS)
                or "no output"
            )
            raise BackendCallError(
                f"Expert {expert_id} exited with code {returncode}: {detail}",
                expert_id=expert_id,
                exit_code=returncode,
            )
        content = stdout.strip()
        if not content:
            raise BackendCallError(
                f"Invalid response from expert {expert_id}: empty output",
                expert_id=expert_id,
                exit_code=returncode,
            )
        logger.debug("Expert %s answered in %.0fms", expert_id, elapsed_ms)
        return BackendResponse(
            expert_id=expert_id,
            content=content,
            elapsed_ms=elapsed_ms,
            model=model,
        )


def _build_run_args(
    *,
    command_template: str,
    expert_id: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendCallError("CLI backend command template is empty.", expert_id=expert_id)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendCallError(
            "CLI backend command template must include {prompt} or {prompt_file}.",
            expert_id=expert_id,
        )

    try:
        rendered = stripped.format(
            expert=shlex.quote(expert_id),
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise BackendCallError(
            f"Unsupported command template placeholder: {error}",
            expert_id=expert_id,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendCallError(
            "CLI backend command template rendered empty command.",
            expert_id=expert_id,
        )
    return argv


async def _run_process(
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: float,
    expert_id: str,
) -> tuple[str, str, int]:
    try:
        process = await asyncio.create_subprocess_exec(
            *run_args,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as error:
        raise BackendCallError(
            f"CLI backend command not found: {run_args[0]}",
            expert_id=expert_id,
        ) from error
    except OSError as error:
        raise BackendCallError(
            f"CLI backend failed to start: {error}",
            expert_id=expert_id,
        ) from error

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError as error:
        await _terminate_process(process)
        raise BackendCallError(
            f"Expert {expert_id} timed out after {timeout_seconds:.0f}s",
            expert_id=expert_id,
            exit_code=124,
        ) from error
    except asyncio.CancelledError:
        await _terminate_process(process)
        raise

    return (
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
        process.returncode if process.returncode is not None else -1,
    )


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
