from __future__ import annotations

import asyncio
import shlex

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from codeagent.engine.agents import AgentCatalog
from codeagent.engine.errors import HttpToolError, PermissionRejectedError, ToolNotFoundError
from codeagent.engine.lock import AbortHandle
from codeagent.engine.yaml_config import AgentConfig, ProjectConfig
from codeagent.tools.base import ToolContext, ToolInfo, ToolResult, validate_args
from codeagent.tools.builtin import bash_permission, command_pattern, split_commands
from codeagent.tools.registry import HttpToolRegistration, ToolRegistry, build_http_schema

from conftest import echo_tool, make_context


def _ctx(**kw):
    return ToolContext(session_id="ses", message_id="msg", call_id="call", **kw)


# ── validation ──


def test_validate_args_checks_required_and_types():
    schema = echo_tool().parameters
    validate_args(schema, {"text": "ok"})
    with pytest.raises(ValueError, match="Missing required parameter: text"):
        validate_args(schema, {})
    with pytest.raises(ValueError, match="expected string"):
        validate_args(schema, {"text": 1})


def test_booleans_are_not_numbers():
    schema = {"type": "object", "properties": {"n": {"type": "number"}}}
    with pytest.raises(ValueError):
        validate_args(schema, {"n": True})


# ── registry ──


def test_registration_replaces_same_id_and_keeps_order():
    registry = ToolRegistry([echo_tool()])

    async def other(args, ctx):
        return ToolResult(output="other")

    registry.register(ToolInfo(id="extra", description="x", parameters={}, execute=other))
    registry.register(ToolInfo(id="extra", description="y", parameters={}, execute=other))
    assert registry.ids() == ["echo", "extra"]
    assert registry.get("extra").description == "y"
    with pytest.raises(ToolNotFoundError):
        registry.get("nope")
    assert registry.find("nope") is None


def test_http_schema_rejects_unsupported_types():
    reg = HttpToolRegistration.from_dict({
        "id": "t", "description": "d", "callback_url": "http://x",
        "parameters": {"properties": {"o": {"type": "object"}}},
    })
    with pytest.raises(ValueError, match="Unsupported type"):
        build_http_schema(reg.properties)


def test_http_schema_marks_optional_and_array_items():
    reg = HttpToolRegistration.from_dict({
        "id": "t", "description": "d", "callback_url": "http://x",
        "parameters": {"properties": {
            "names": {"type": "array", "items": "string"},
            "limit": {"type": "number", "optional": True},
        }},
    })
    schema = build_http_schema(reg.properties)
    assert schema["required"] == ["names"]
    assert schema["properties"]["names"]["items"] == {"type": "string"}


def test_registration_requires_fields():
    with pytest.raises(ValueError, match="callback_url"):
        HttpToolRegistration.from_dict({"id": "t", "description": "d", "parameters": {}})


def test_enabled_follows_agent_permissions():
    catalog = AgentCatalog({"review": AgentConfig(permission={"edit": "deny", "bash": {"*": "deny"}})})
    enabled = ToolRegistry.enabled(catalog.get("review"))
    assert enabled["edit"] is False
    assert enabled["bash"] is False
    assert "bash" not in ToolRegistry.enabled(catalog.get("build"))


@pytest.mark.asyncio
async def test_http_tool_posts_args_to_callback():
    received = []

    async def callback(request):
        received.append((await request.json(), request.headers.get("x-token")))
        return web.json_response({"title": "Weather", "output": "sunny", "metadata": {"c": 21}})

    app = web.Application()
    app.router.add_post("/cb", callback)
    async with TestServer(app) as server:
        registry = ToolRegistry()
        registry.register_http(HttpToolRegistration.from_dict({
            "id": "weather",
            "description": "Current weather",
            "parameters": {"properties": {"city": {"type": "string"}}},
            "callback_url": str(server.make_url("/cb")),
            "headers": {"x-token": "secret"},
        }))
        result = await registry.get("weather").execute({"city": "Oslo"}, _ctx())

    assert received == [({"args": {"city": "Oslo"}}, "secret")]
    assert result.title == "Weather"
    assert result.output == "sunny"
    assert result.metadata == {"c": 21}


@pytest.mark.asyncio
async def test_http_tool_error_status_raises():
    async def callback(request):
        return web.Response(status=500, text="kaput")

    app = web.Application()
    app.router.add_post("/cb", callback)
    async with TestServer(app) as server:
        registry = ToolRegistry()
        registry.register_http(HttpToolRegistration.from_dict({
            "id": "broken", "description": "d", "parameters": {},
            "callback_url": str(server.make_url("/cb")),
        }))
        with pytest.raises(HttpToolError) as excinfo:
            await registry.get("broken").execute({}, _ctx())
    assert excinfo.value.status == 500


# ── bash ──


def test_split_commands_on_shell_operators():
    assert split_commands("cd src && ls -la | grep py; echo done") == [
        "cd src", "ls -la", "grep py", "echo done",
    ]


def test_command_pattern_keeps_first_two_tokens():
    assert command_pattern("git push origin main") == "git push *"
    assert command_pattern("ls") == "ls *"


def test_bash_permission_strictest_subcommand_wins():
    rules = {"*": "allow", "rm *": "deny", "git push *": "ask"}
    assert bash_permission("ls && rm -rf build", rules) == ("deny", [])
    assert bash_permission("ls; git push origin main", rules) == ("ask", ["git push *"])
    assert bash_permission("ls -la", rules) == ("allow", [])


@pytest.mark.asyncio
async def test_bash_tool_runs_command(ctx):
    bash = ctx.tools.get("bash")
    agent = ctx.agents.get("build")
    updates = []

    async def on_metadata(title, metadata):
        updates.append(metadata)

    result = await bash.execute(
        {"command": "echo hello", "description": "Say hello"},
        _ctx(agent=agent, on_metadata=on_metadata),
    )
    assert "hello" in result.output
    assert result.metadata["exit"] == 0
    assert result.title == "Say hello"


@pytest.mark.asyncio
async def test_abort_kills_the_whole_process_group(ctx, tmp_path):
    marker = tmp_path / "marker"
    handle = AbortHandle()
    started = asyncio.Event()

    async def on_metadata(title, metadata):
        started.set()

    command = f"(sleep 2; touch {shlex.quote(str(marker))}) & echo started; sleep 30"
    task = asyncio.create_task(ctx.tools.get("bash").execute(
        {"command": command, "description": "background writer"},
        _ctx(agent=ctx.agents.get("build"), abort=handle, on_metadata=on_metadata),
    ))
    handle.track(task)
    await asyncio.wait_for(started.wait(), 10)

    handle.abort()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(2.5)

    assert not marker.exists()


@pytest.mark.asyncio
async def test_bash_tool_denied_by_agent_rules(tmp_path):
    ctx = make_context(
        tmp_path / "w", tmp_path / "d",
        project_config=ProjectConfig(
            agents={"build": AgentConfig(permission={"bash": {"*": "allow", "rm *": "deny"}})}
        ),
    )
    with pytest.raises(PermissionRejectedError):
        await ctx.tools.get("bash").execute(
            {"command": "rm -rf /tmp/x", "description": "delete"},
            _ctx(agent=ctx.agents.get("build")),
        )
