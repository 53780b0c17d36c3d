"""Ordered hook registry and event dispatch."""

from __future__ import annotations

import dataclasses
import inspect
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from agent_relay.hooks.models import (
    HookContext,
    HookDecision,
    HookDefinition,
    HookEvent,
    HookResult,
)

logger = logging.getLogger(__name__)

_IMMUTABLE_CONTEXT_FIELDS = frozenset({"timestamp"})


@dataclass(slots=True)
class HookStats:
    """Execution counters for one registered hook."""

    executions: int = 0
    succeeded: int = 0
    failed: int = 0
    blocked: int = 0
    total_duration_ms: float = 0.0
    last_error: str | None = None

    @property
    def average_duration_ms(self) -> float:
        if self.executions == 0:
            return 0.0
        return self.total_duration_ms / self.executions


@dataclass(slots=True)
class DispatcherStats:
    """System-wide snapshot for status output."""

    enabled: bool
    total_hooks: int
    enabled_hooks: int
    total_dispatches: int
    total_executions: int
    uptime_seconds: float
    hooks_by_event: dict[str, int]


@dataclass(slots=True)
class DispatchResult:
    """Resolved outcome of one event dispatch.

    ``context`` is the working copy after all ``modify`` merges, ``modified``
    holds the merged partial payload, and ``messages`` the injected texts in
    chain order.
    """

    decision: HookDecision
    context: HookContext
    reason: str | None = None
    blocked_by: str | None = None
    messages: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    modified: dict[str, Any] = field(default_factory=dict)

    @property
    def blocked(self) -> bool:
        return self.decision == HookDecision.BLOCK


class HookDispatcher:
    """Holds per-event hook chains and resolves their decisions."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._chains: dict[HookEvent, list[HookDefinition]] = {}
        self._hooks: dict[str, HookDefinition] = {}
        self._stats: dict[str, HookStats] = {}
        self._enabled = True
        self._clock = clock
        self._started_at = clock()
        self._dispatches = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        """Toggle the whole hook system; disabled dispatch is a pass-through."""

        self._enabled = enabled
        logger.info("Hook system %s", "enabled" if enabled else "disabled")

    def register(self, hook: HookDefinition) -> None:
        """Add a hook to its event chain, keeping priority order stable."""

        if hook.id in self._hooks:
            raise ValueError(f"Hook already registered: {hook.id!r}")
        chain = self._chains.setdefault(hook.event, [])
        chain.append(hook)
        chain.sort(key=lambda item: item.priority.rank)
        self._hooks[hook.id] = hook
        self._stats[hook.id] = HookStats()
        logger.debug(
            "Registered hook %s on %s (priority=%s)",
            hook.id,
            hook.event.value,
            hook.priority.value,
        )

    def unregister(self, hook_id: str) -> bool:
        hook = self._hooks.pop(hook_id, None)
        if hook is None:
            return False
        self._chains[hook.event].remove(hook)
        self._stats.pop(hook_id, None)
        return True

    def set_hook_enabled(self, hook_id: str, enabled: bool) -> bool:
        hook = self._hooks.get(hook_id)
        if hook is None:
            return False
        hook.enabled = enabled
        return True

    def get_hook(self, hook_id: str) -> HookDefinition | None:
        return self._hooks.get(hook_id)

    def list_hooks(self, event: HookEvent | None = None) -> list[HookDefinition]:
        """Registered hooks in execution order, optionally for one event."""

        if event is not None:
            return list(self._chains.get(event, ()))
        ordered: list[HookDefinition] = []
        for known_event in HookEvent:
            ordered.extend(self._chains.get(known_event, ()))
        return ordered

    def hook_stats(self, hook_id: str) -> HookStats | None:
        return self._stats.get(hook_id)

    def system_stats(self) -> DispatcherStats:
        return DispatcherStats(
            enabled=self._enabled,
            total_hooks=len(self._hooks),
            enabled_hooks=sum(1 for hook in self._hooks.values() if hook.enabled),
            total_dispatches=self._dispatches,
            total_executions=sum(stats.executions for stats in self._stats.values()),
            uptime_seconds=max(0.0, self._clock() - self._started_at),
            hooks_by_event={
                event.value: len(chain) for event, chain in self._chains.items() if chain
            },
        )

    async def dispatch(self, context: HookContext) -> DispatchResult:
        """Run the chain for ``context.event`` and resolve one outcome.

        Hooks run strictly one after another in priority order. A ``block``
        stops the chain at once. A ``modify`` is merged into the working copy
        seen by later hooks. A handler that raises is logged and counted as a
        failed execution, and the chain continues as if it returned
        ``continue``.
        """

        result = DispatchResult(decision=HookDecision.CONTINUE, context=context)
        if not self._enabled:
            return result
        self._dispatches += 1

        # Snapshot so handlers registering or unregistering hooks do not reorder this run.
        chain = list(self._chains.get(context.event, ()))
        for hook in chain:
            if not hook.enabled:
                continue
            outcome = await self._invoke(hook, result.context)
            if outcome is None:
                continue

            if outcome.decision == HookDecision.BLOCK:
                self._stats.setdefault(hook.id, HookStats()).blocked += 1
                reason = outcome.reason or f"Blocked by hook {hook.name}"
                logger.info(
                    "Hook %s blocked %s: %s",
                    hook.id,
                    context.event.value,
                    reason,
                )
                result.decision = HookDecision.BLOCK
                result.reason = reason
                result.blocked_by = hook.id
                return result

            if outcome.decision == HookDecision.MODIFY and outcome.modified_data:
                merged = self._merge(hook, result.context, outcome.modified_data, result)
                if merged is not result.context:
                    result.context = merged
                    result.decision = HookDecision.MODIFY

            if outcome.inject_message:
                result.messages.append(outcome.inject_message)
            if outcome.metadata:
                result.metadata.update(outcome.metadata)

        return result

    async def _invoke(self, hook: HookDefinition, context: HookContext) -> HookResult | None:
        stats = self._stats.setdefault(hook.id, HookStats())
        started = time.perf_counter()
        stats.executions += 1
        try:
            outcome = hook.handler(context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:  # noqa: BLE001
            stats.failed += 1
            stats.last_error = str(exc)
            logger.error(
                "Hook %s failed on %s, continuing",
                hook.id,
                context.event.value,
                exc_info=True,
            )
            return None
        finally:
            stats.total_duration_ms += (time.perf_counter() - started) * 1000

        stats.succeeded += 1
        if outcome is not None and not isinstance(outcome, HookResult):
            logger.warning(
                "Hook %s returned %s instead of HookResult, ignoring",
                hook.id,
                type(outcome).__name__,
            )
            return None
        return outcome

    @staticmethod
    def _merge(
        hook: HookDefinition,
        context: HookContext,
        data: Mapping[str, Any],
        result: DispatchResult,
    ) -> HookContext:
        known = {item.name for item in dataclasses.fields(context)} - _IMMUTABLE_CONTEXT_FIELDS
        accepted: dict[str, Any] = {}
        for key, value in data.items():
            if key in known:
                accepted[key] = value
            else:
                logger.warning(
                    "Hook %s tried to modify unknown field %r of %s, ignoring",
                    hook.id,
                    key,
                    context.event.value,
                )
        if not accepted:
            return context
        result.modified.update(accepted)
        return dataclasses.replace(context, **accepted)
