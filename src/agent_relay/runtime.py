"""Explicit per-process context wiring hooks, recovery, loop and backend together."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agent_relay.config import Settings
from agent_relay.hooks import HookDispatcher
from agent_relay.hooks.builtin import register_builtin_hooks
from agent_relay.hooks.loader import load_hooks_from_config
from agent_relay.orchestrator.backend import CliExpertBackend, ExpertBackend
from agent_relay.orchestrator.failure_classifier import FailureEngine
from agent_relay.orchestrator.loop import RetryLoopController
from agent_relay.orchestrator.loop_store import JsonLoopStateStore, LoopStateStore
from agent_relay.orchestrator.routing import RoutingTables
from agent_relay.orchestrator.workflow import WorkflowOrchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RelayRuntime:
    """Everything one session needs; build one per process instead of using globals."""

    settings: Settings
    dispatcher: HookDispatcher
    backend: ExpertBackend
    routing: RoutingTables
    failure_engine: FailureEngine
    loop_controller: RetryLoopController
    workflow: WorkflowOrchestrator

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        backend: ExpertBackend | None = None,
        loop_store: LoopStateStore | None = None,
    ) -> RelayRuntime:
        settings.validate()

        dispatcher = HookDispatcher()
        dispatcher.set_enabled(settings.hooks.enabled)
        if settings.hooks.builtin_hooks:
            register_builtin_hooks(dispatcher)
        if settings.hooks.config_path is not None:
            loaded = load_hooks_from_config(settings.hooks.config_path, dispatcher)
            logger.info("Loaded %d hooks from %s", loaded, settings.hooks.config_path)

        backend = backend or CliExpertBackend(
            command_templates=settings.backend.command_templates,
            models=settings.backend.models,
            default_model=settings.backend.default_model,
            timeout_seconds=settings.backend.timeout_seconds,
        )
        routing = RoutingTables()
        failure_engine = FailureEngine(
            fallback_chain=routing.fallback_chain,
            switch_after_attempts=settings.failure.switch_after_attempts,
            base_delay_seconds=settings.failure.base_delay_seconds,
            rate_limit_base_delay_seconds=settings.failure.rate_limit_base_delay_seconds,
            max_delay_seconds=settings.failure.max_delay_seconds,
            jitter_ratio=settings.failure.jitter_ratio,
        )
        loop_controller = RetryLoopController(
            backend=backend,
            dispatcher=dispatcher,
            store=loop_store or JsonLoopStateStore(settings.loop.state_path),
            default_max_iterations=settings.loop.max_iterations,
            default_completion_promise=settings.loop.completion_promise,
            default_expert=settings.loop.default_expert,
            iteration_delay_seconds=settings.loop.iteration_delay_seconds,
        )
        workflow = WorkflowOrchestrator(
            backend=backend,
            dispatcher=dispatcher,
            failure_engine=failure_engine,
            loop_controller=loop_controller,
            routing=routing,
            settings=settings.workflow,
        )
        return cls(
            settings=settings,
            dispatcher=dispatcher,
            backend=backend,
            routing=routing,
            failure_engine=failure_engine,
            loop_controller=loop_controller,
            workflow=workflow,
        )
