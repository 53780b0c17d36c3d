"""Load hooks from YAML configuration."""

from __future__ import annotations

import functools
import importlib
import logging
import os
import sys
from pathlib import Path
from typing import Any

import yaml

from agent_relay.hooks.dispatcher import HookDispatcher
from agent_relay.hooks.models import HookDefinition, HookEvent, HookHandler, HookPriority

logger = logging.getLogger(__name__)


def load_hooks_from_config(config_path: Path, dispatcher: HookDispatcher) -> int:
    """Register hooks declared in a YAML file.

    The file maps event names to lists of entries::

        python_path: [./hooks]
        hooks:
          onExpertCall:
            - id: audit
              module: my_hooks
              function: audit
              priority: high
              config: {channel: ops}

    Entries with an unknown event, an invalid priority, or an unimportable
    handler are logged and skipped. A ``config`` mapping is passed to the
    handler as the ``config`` keyword argument. Relative ``python_path``
    entries resolve against the config file's directory.

    Returns the number of hooks registered.
    """

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as error:
        raise ValueError(f"Cannot read hooks config {config_path}: {error}") from error
    if not isinstance(raw, dict):
        raise ValueError(f"Hooks config {config_path} must be a mapping.")

    for entry in raw.get("python_path", []) or []:
        expanded = Path(os.path.expandvars(str(entry)))
        if not expanded.is_absolute():
            expanded = (config_path.parent / expanded).resolve()
        if str(expanded) not in sys.path:
            sys.path.insert(0, str(expanded))

    hooks_section = raw.get("hooks", {}) or {}
    if not isinstance(hooks_section, dict):
        raise ValueError(f"'hooks' in {config_path} must map event names to lists.")

    count = 0
    for event_name, entries in hooks_section.items():
        try:
            event = HookEvent(event_name)
        except ValueError:
            logger.warning("Unknown hook event %r in %s", event_name, config_path)
            continue
        if not isinstance(entries, list):
            logger.warning("Hook list for %s is not a list", event_name)
            continue

        for entry in entries:
            definition = _build_definition(event, entry)
            if definition is None:
                continue
            try:
                dispatcher.register(definition)
            except ValueError as error:
                logger.warning("Skipping hook: %s", error)
                continue
            count += 1

    logger.info("Loaded %d hooks from %s", count, config_path)
    return count


def _build_definition(event: HookEvent, entry: Any) -> HookDefinition | None:
    if not isinstance(entry, dict) or "module" not in entry or "function" not in entry:
        logger.warning("Hook entry for %s needs 'module' and 'function': %r", event.value, entry)
        return None

    module_name = str(entry["module"])
    function_name = str(entry["function"])
    try:
        priority = HookPriority(str(entry.get("priority", HookPriority.NORMAL.value)).lower())
    except ValueError:
        logger.warning(
            "Invalid priority %r for hook %s.%s",
            entry.get("priority"),
            module_name,
            function_name,
        )
        return None

    try:
        handler = _load_handler(module_name, function_name)
    except (ImportError, AttributeError):
        logger.error("Failed to load hook %s.%s", module_name, function_name, exc_info=True)
        return None

    hook_config = entry.get("config") or {}
    if hook_config:
        handler = functools.partial(handler, config=hook_config)

    return HookDefinition(
        id=str(entry.get("id") or f"{event.value}:{module_name}.{function_name}"),
        name=str(entry.get("name") or function_name),
        event=event,
        handler=handler,
        priority=priority,
        enabled=bool(entry.get("enabled", True)),
        description=str(entry.get("description", "")),
    )


def _load_handler(module_name: str, function_name: str) -> HookHandler:
    module = importlib.import_module(module_name)
    handler = getattr(module, function_name)
    if not callable(handler):
        raise AttributeError(f"{module_name}.{function_name} is not callable")
    return handler
