"""Plugin hook bus.

A plugin is a module that exports one or more factory callables. Each
factory receives a ``PluginInput`` and returns a ``Hooks`` instance (or
a plain dict of hook name -> coroutine function). Hooks run in load order
and mutate the ``output`` object they are given.

Plugin list entries are either ``file:///path/to/plugin.py`` or an
importable module spec ``package.module[@version]`` (the version is
informational; nothing is installed).
"""
from __future__ import annotations

import importlib
import importlib.util
import inspect
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote, urlparse

from codeagent.adapters.events import BusEvent, event_to_dict

if TYPE_CHECKING:
    from codeagent.adapters.event_bus import EventBus
    from codeagent.shared.services.project import ProjectInfo
    from codeagent.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

# Hooks that may be passed to trigger(); "event" is fed from the bus.
HOOK_NAMES = (
    "chat.message",
    "chat.params",
    "permission.ask",
    "tool.execute.before",
    "tool.execute.after",
)

# Appended unless CODEAGENT_DISABLE_DEFAULT_PLUGINS is set.
DEFAULT_PLUGINS = ("codeagent.plugins.todo",)


class Hooks:
    """Base class for plugin hooks. Override only what you need.

    Every hook is ``async def hook(input, output)`` except ``config``
    (receives the raw config dict) and ``event`` (receives the wire dict
    ``{"type", "properties"}``). ``tool.register`` receives the tool
    registry as output; call ``register`` or ``register_http`` on it.
    """

    async def config(self, config: dict[str, Any]) -> None:
        return None

    async def event(self, event: dict[str, Any]) -> None:
        return None

    async def chat_message(self, input: dict, output: dict) -> None:
        return None

    async def chat_params(self, input: dict, output: dict) -> None:
        return None

    async def permission_ask(self, input: Any, output: dict) -> None:
        return None

    async def tool_execute_before(self, input: dict, output: dict) -> None:
        return None

    async def tool_execute_after(self, input: dict, output: dict) -> None:
        return None

    async def tool_register(self, input: dict, output: ToolRegistry) -> None:
        return None


def _attr_name(hook: str) -> str:
    return hook.replace(".", "_")


class _DictHooks(Hooks):
    """Adapter for plugins that return ``{"chat.params": fn, ...}``."""

    def __init__(self, mapping: dict[str, Any]) -> None:
        for key, fn in mapping.items():
            setattr(self, _attr_name(key), fn)


@dataclass
class PluginInput:
    project: ProjectInfo
    directory: str
    worktree: str
    extra: dict[str, Any] = field(default_factory=dict)


def _load_module(spec: str):
    if spec.startswith("file://"):
        path = Path(unquote(urlparse(spec).path))
        name = f"codeagent_plugin_{path.stem}"
        module_spec = importlib.util.spec_from_file_location(name, path)
        if module_spec is None or module_spec.loader is None:
            raise ImportError(f"Cannot load plugin from {path}")
        module = importlib.util.module_from_spec(module_spec)
        sys.modules[name] = module
        module_spec.loader.exec_module(module)
        return module
    module_name = spec.split("@", 1)[0]
    return importlib.import_module(module_name)


def _factories(module) -> list:
    exported = getattr(module, "__all__", None)
    names = exported if exported is not None else [
        n for n in vars(module) if not n.startswith("_")
    ]
    result = []
    for name in names:
        obj = getattr(module, name, None)
        if obj is None or inspect.isclass(obj) or inspect.ismodule(obj):
            continue
        if not callable(obj):
            continue
        if getattr(obj, "__module__", None) != module.__name__:
            continue
        result.append(obj)
    return result


class PluginManager:
    """Loads plugins and dispatches hooks to them in load order."""

    def __init__(self, plugin_input: PluginInput, specs: list[str]) -> None:
        self._input = plugin_input
        self._specs = list(specs)
        self._hooks: list[Hooks] = []
        self._loaded = False
        self._unsubscribe = None

    @property
    def hooks(self) -> list[Hooks]:
        return list(self._hooks)

    def add(self, hooks: Hooks | dict[str, Any]) -> None:
        """Register an in-process hooks object."""
        self._hooks.append(hooks if isinstance(hooks, Hooks) else _DictHooks(hooks))

    async def load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        for spec in self._specs:
            logger.info("loading plugin path=%s", spec)
            module = _load_module(spec)
            for factory in _factories(module):
                result = factory(self._input)
                if inspect.isawaitable(result):
                    result = await result
                if result is None:
                    continue
                self.add(result)
        logger.info("plugins loaded count=%d", len(self._hooks))

    async def trigger(self, name: str, input: Any, output: Any) -> Any:
        """Run hook *name* on every plugin in order; returns *output*."""
        if name not in HOOK_NAMES:
            raise ValueError(f"Unknown hook: {name}")
        attr = _attr_name(name)
        for hooks in self._hooks:
            fn = getattr(hooks, attr, None)
            if fn is None:
                continue
            await fn(input, output)
        return output

    async def init(
        self, config: dict[str, Any], registry: ToolRegistry, bus: EventBus
    ) -> None:
        """Load plugins, run config/tool.register hooks, subscribe to events."""
        await self.load()
        for hooks in self._hooks:
            await hooks.config(config)
            await hooks.tool_register({}, registry)
        self._unsubscribe = bus.subscribe_all(self._on_event)

    async def _on_event(self, event: BusEvent) -> None:
        payload = event_to_dict(event)
        for hooks in self._hooks:
            try:
                await hooks.event(payload)
            except Exception:
                logger.exception("plugin event hook failed type=%s", event.event_type)

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
