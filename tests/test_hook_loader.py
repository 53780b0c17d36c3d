from __future__ import annotations

import asyncio
import sys
import textwrap
from pathlib import Path

import allure
import pytest

from agent_relay.hooks import ExpertCallContext, HookDispatcher, HookEvent, HookPriority
from agent_relay.hooks.loader import load_hooks_from_config

pytestmark = [
    allure.epic("Hooks"),
    allure.feature("YAML Configuration"),
]

_HOOK_MODULE = """
from agent_relay.hooks import HookResult


def greet(context, config):
    return HookResult(inject_message=f"{config['greeting']} {context.expert_id}")


def audit(context):
    return None


not_callable = 42
"""


@pytest.fixture(autouse=True)
def _restore_sys_path(monkeypatch):
    monkeypatch.setattr(sys, "path", list(sys.path))


def _write_module(directory: Path, module_name: str) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"{module_name}.py").write_text(_HOOK_MODULE, "utf-8")


def _write_config(path: Path, body: str) -> Path:
    path.write_text(textwrap.dedent(body), "utf-8")
    return path


def test_loads_hooks_with_priority_config_and_relative_python_path(tmp_path: Path) -> None:
    _write_module(tmp_path / "hooks", "relay_hooks_basic")
    config = _write_config(
        tmp_path / "hooks.yaml",
        """
        python_path: [./hooks]
        hooks:
          onExpertCall:
            - id: greeter
              name: Greeter
              module: relay_hooks_basic
              function: greet
              priority: high
              config:
                greeting: Hello
            - module: relay_hooks_basic
              function: audit
              enabled: false
        """,
    )
    dispatcher = HookDispatcher()

    count = load_hooks_from_config(config, dispatcher)

    assert count == 2
    greeter = dispatcher.get_hook("greeter")
    assert greeter is not None
    assert greeter.priority == HookPriority.HIGH
    audit = dispatcher.get_hook("onExpertCall:relay_hooks_basic.audit")
    assert audit is not None
    assert audit.enabled is False

    result = asyncio.run(
        dispatcher.dispatch(ExpertCallContext(expert_id="writer", prompt="draft docs")),
    )
    assert result.messages == ["Hello writer"]


def test_invalid_entries_are_skipped(tmp_path: Path) -> None:
    _write_module(tmp_path, "relay_hooks_invalid")
    config = _write_config(
        tmp_path / "hooks.yaml",
        f"""
        python_path: ["{tmp_path}"]
        hooks:
          onSomethingElse:
            - module: relay_hooks_invalid
              function: audit
          onError:
            - module: relay_hooks_invalid
              function: audit
              priority: urgent
            - module: relay_hooks_missing_module
              function: audit
            - module: relay_hooks_invalid
              function: not_callable
            - function: audit
            - id: kept
              module: relay_hooks_invalid
              function: audit
            - id: kept
              module: relay_hooks_invalid
              function: audit
        """,
    )
    dispatcher = HookDispatcher()

    count = load_hooks_from_config(config, dispatcher)

    assert count == 1
    assert [hook.id for hook in dispatcher.list_hooks(HookEvent.ERROR)] == ["kept"]


def test_unreadable_or_non_mapping_config_raises(tmp_path: Path) -> None:
    dispatcher = HookDispatcher()

    with pytest.raises(ValueError, match="Cannot read hooks config"):
        load_hooks_from_config(tmp_path / "missing.yaml", dispatcher)

    config = _write_config(tmp_path / "list.yaml", "- just\n- a list\n")
    with pytest.raises(ValueError, match="must be a mapping"):
        load_hooks_from_config(config, dispatcher)
