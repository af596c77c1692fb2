from __future__ import annotations

import asyncio

import pytest

from codeagent.adapters.event_bus import EventBus
from codeagent.engine.errors import PermissionRejectedError, SessionNotFoundError
from codeagent.engine.permission import PermissionManager


async def _ask(manager, pattern="git push *", session_id="ses_a"):
    return await manager.ask(
        type="bash",
        title="git push origin main",
        session_id=session_id,
        message_id="msg_1",
        call_id="call_1",
        pattern=pattern,
    )


async def _pending(manager, session_id="ses_a", count=1):
    for _ in range(50):
        if len(manager.pending(session_id)) >= count:
            return manager.pending(session_id)
        await asyncio.sleep(0)
    raise AssertionError("permission request never became pending")


@pytest.mark.asyncio
async def test_once_approves_a_single_request():
    bus = EventBus()
    updates = []
    bus.subscribe("permission.updated", updates.append)
    manager = PermissionManager(bus)

    task = asyncio.create_task(_ask(manager))
    [request] = await _pending(manager)
    assert updates[0].permission["id"] == request.id

    manager.respond("ses_a", request.id, "once")
    await task
    assert manager.pending("ses_a") == []

    second = asyncio.create_task(_ask(manager))
    await _pending(manager)
    assert not second.done()
    second.cancel()
    with pytest.raises(asyncio.CancelledError):
        await second
    assert manager.pending("ses_a") == []


@pytest.mark.asyncio
async def test_reject_raises_in_the_tool():
    manager = PermissionManager(EventBus())
    task = asyncio.create_task(_ask(manager))
    [request] = await _pending(manager)
    manager.respond("ses_a", request.id, "reject")
    with pytest.raises(PermissionRejectedError):
        await task


@pytest.mark.asyncio
async def test_always_covers_matching_requests_and_settles_siblings():
    manager = PermissionManager(EventBus())
    first = asyncio.create_task(_ask(manager))
    sibling = asyncio.create_task(_ask(manager))
    requests = await _pending(manager, count=2)

    manager.respond("ses_a", requests[0].id, "always")
    await first
    await sibling

    await _ask(manager)
    assert manager.pending("ses_a") == []


@pytest.mark.asyncio
async def test_reject_session_rejects_everything_pending():
    manager = PermissionManager(EventBus())
    task = asyncio.create_task(_ask(manager))
    await _pending(manager)
    manager.reject_session("ses_a")
    with pytest.raises(PermissionRejectedError):
        await task


@pytest.mark.asyncio
async def test_respond_validates_input():
    manager = PermissionManager(EventBus())
    with pytest.raises(ValueError):
        manager.respond("ses_a", "per_x", "maybe")
    with pytest.raises(SessionNotFoundError):
        manager.respond("ses_a", "per_x", "once")


@pytest.mark.asyncio
async def test_gate_applies_agent_actions():
    manager = PermissionManager(EventBus())
    await manager.gate("allow", type="edit", title="t", session_id="s", message_id="m")
    with pytest.raises(PermissionRejectedError):
        await manager.gate("deny", type="edit", title="t", session_id="s", message_id="m")


@pytest.mark.asyncio
async def test_plugin_can_decide_without_asking():
    from codeagent.engine.plugins import PluginInput, PluginManager
    from codeagent.shared.services.project import ProjectInfo

    plugins = PluginManager(PluginInput(project=ProjectInfo("p", "/"), directory="/", worktree="/"), [])

    async def permission_ask(input, output):
        output["status"] = "allow" if input.type == "bash" else "deny"

    plugins.add({"permission.ask": permission_ask})
    manager = PermissionManager(EventBus(), plugins)
    await _ask(manager)
    with pytest.raises(PermissionRejectedError):
        await manager.ask(type="edit", title="t", session_id="s", message_id="m")
