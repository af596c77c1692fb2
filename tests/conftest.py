"""Shared fixtures: a scripted model provider and a throwaway project context."""
from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from codeagent.engine.config import EngineConfig
from codeagent.engine.instance import ProjectContext
from codeagent.engine.providers.base import GenerateResult, ModelInfo, Provider
from codeagent.engine.providers.registry import ProviderRegistry
from codeagent.engine.stream_events import (
    FinishStepEvent,
    StartStepEvent,
    TextDeltaEvent,
    TextEndEvent,
    TextStartEvent,
    ToolCallEvent,
    Usage,
)
from codeagent.engine.yaml_config import ModelLimit, ProjectConfig
from codeagent.shared.services.project import ProjectInfo
from codeagent.tools.base import ToolInfo, ToolResult

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


class ScriptedProvider(Provider):
    """Replays one scripted step per ``stream`` call.

    A step is a list of events (an exception in the list is raised at
    that point) or a callable returning an async iterator of events.
    """

    def __init__(self, steps=None, generate_text: str = "Scripted summary") -> None:
        self.steps = list(steps or [])
        self.generate_text = generate_text
        self.requests = []
        self.generate_requests = []

    @property
    def name(self) -> str:
        return "fake"

    async def stream(self, request):
        self.requests.append(request)
        step = self.steps.pop(0)
        if callable(step):
            async for event in step(request):
                yield event
            return
        for event in step:
            if isinstance(event, BaseException):
                raise event
            yield event

    async def generate(self, request):
        self.generate_requests.append(request)
        return GenerateResult(
            text=self.generate_text, usage=Usage(input_tokens=100, output_tokens=20)
        )


def text_step(text: str, finish: str = "stop", usage: Usage | None = None) -> list:
    return [
        StartStepEvent(),
        TextStartEvent(id="t1"),
        TextDeltaEvent(id="t1", text=text),
        TextEndEvent(id="t1"),
        FinishStepEvent(finish_reason=finish, usage=usage or Usage(input_tokens=10, output_tokens=5)),
    ]


def tool_step(tool: str, args: dict, call_id: str = "call_1") -> list:
    return [
        StartStepEvent(),
        ToolCallEvent(tool_call_id=call_id, tool_name=tool, input=args),
        FinishStepEvent(finish_reason="tool-calls", usage=Usage(input_tokens=10, output_tokens=5)),
    ]


def echo_tool() -> ToolInfo:
    async def execute(args, ctx):
        return ToolResult(title="echo", output=args["text"], metadata={"length": len(args["text"])})

    return ToolInfo(
        id="echo",
        description="Echo the text back",
        parameters={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
        execute=execute,
    )


def fake_registry(provider: Provider, context: int = 200_000, output: int = 32_000) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("fake", provider)
    registry.add_model(
        ModelInfo(
            provider_id="fake",
            model_id="m1",
            name="m1",
            limit=ModelLimit(context=context, output=output),
        )
    )
    registry.default_ref = "fake/m1"
    return registry


def make_context(
    directory: Path,
    data_dir: Path,
    provider: Provider | None = None,
    project_config: ProjectConfig | None = None,
    project: ProjectInfo | None = None,
    **config,
) -> ProjectContext:
    directory.mkdir(parents=True, exist_ok=True)
    return ProjectContext(
        directory,
        config=EngineConfig(data_dir=data_dir, **config),
        project_config=project_config or ProjectConfig(),
        providers=fake_registry(provider or ScriptedProvider()),
        project=project or ProjectInfo(id="test-project", worktree=str(directory)),
    )


def init_git_repo(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init", "--quiet"], cwd=path, check=True)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def ctx(tmp_path, provider):
    return make_context(tmp_path / "work", tmp_path / "data", provider)
