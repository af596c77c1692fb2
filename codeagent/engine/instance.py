"""Per-project runtime context.

One ``ProjectContext`` owns every service for a working directory: the
store, bus, locks, permissions, tools, plugins, snapshots, providers and
the session engines. Components receive the context explicitly instead
of looking it up in module-level state.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from codeagent.adapters.event_bus import EventBus
from codeagent.shared.services.file_watcher import FileWatcher
from codeagent.shared.services.project import ProjectInfo, discover_project
from codeagent.shared.services.session_store import SessionStore
from codeagent.shared.services.snapshot import SnapshotService, cleanup_stale
from codeagent.shared.services.storage import Storage
from codeagent.tools.builtin import builtin_tools
from codeagent.tools.registry import ToolRegistry

from .agents import AgentCatalog
from .compaction import SessionCompaction
from .config import EngineConfig
from .lock import SessionLocks
from .permission import PermissionManager
from .plugins import DEFAULT_PLUGINS, PluginInput, PluginManager
from .prompt import SessionPrompt
from .providers.registry import ProviderRegistry
from .revert import SessionRevert
from .yaml_config import ProjectConfig, find_config_file, load_project_config

logger = logging.getLogger(__name__)


class ProjectContext:
    """All services bound to one project directory."""

    def __init__(
        self,
        directory: str | Path,
        config: EngineConfig | None = None,
        project_config: ProjectConfig | None = None,
        providers: ProviderRegistry | None = None,
        project: ProjectInfo | None = None,
    ) -> None:
        self.config = config or EngineConfig.from_env()
        self.directory = str(Path(directory).resolve())
        self.project = project or discover_project(Path(self.directory))
        self.worktree = self.project.worktree if self.project.is_git else self.directory

        if project_config is None:
            path = self.config.config_path or find_config_file(
                Path(self.directory), Path(self.worktree)
            )
            project_config = load_project_config(path)
        self.project_config = project_config

        self.bus = EventBus()
        self.storage = Storage(self.config.storage_dir)
        self.store = SessionStore(
            self.storage,
            self.bus,
            self.project.id,
            self.directory,
            share_url=project_config.share_url,
        )
        self.locks = SessionLocks(self.bus, self.store)

        specs = list(project_config.plugins)
        if not self.config.disable_default_plugins:
            specs.extend(s for s in DEFAULT_PLUGINS if s not in specs)
        self.plugins = PluginManager(
            PluginInput(
                project=self.project, directory=self.directory, worktree=self.worktree
            ),
            specs,
        )
        self.permissions = PermissionManager(self.bus, self.plugins)
        self.locks.add_abort_listener(self.permissions.reject_session)

        self.agents = AgentCatalog(project_config.agents)
        self.providers = providers or ProviderRegistry.from_config(
            project_config, self.config.default_model, self.config.small_model
        )
        self.snapshot = SnapshotService(
            self.project,
            self.config.snapshot_dir,
            directory=self.directory,
            enabled=project_config.snapshot,
        )
        self.compaction = SessionCompaction(self)
        self.revert = SessionRevert(self)
        self.prompt = SessionPrompt(self)
        self.tools = ToolRegistry(builtin_tools(self))
        self.watcher: FileWatcher | None = None
        logger.info(
            "project context id=%s directory=%s git=%s",
            self.project.id, self.directory, self.project.is_git,
        )

    async def init(self) -> None:
        """Load plugins and start background services."""
        removed = await asyncio.to_thread(cleanup_stale, self.config.data_dir)
        if removed:
            logger.info("removed %d stale snapshot dirs", removed)
        await self.plugins.init(self.project_config.raw, self.tools, self.bus)
        if self.config.experimental_watcher and self.project.is_git:
            self.watcher = FileWatcher(
                self.worktree, self.bus, self.config.watcher_interval_seconds
            )
            self.watcher.start()

    async def dispose(self) -> None:
        """Abort running turns and stop background services."""
        self.locks.dispose()
        await self.prompt.dispose()
        if self.watcher is not None:
            await self.watcher.stop()
        self.plugins.dispose()
        self.bus.close()
        logger.info("project context disposed id=%s", self.project.id)
