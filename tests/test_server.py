"""Tests for the HTTP + SSE control surface in codeagent/server/server.py."""
from __future__ import annotations

import asyncio
import json
import tempfile
from pathlib import Path

from aiohttp.test_utils import AioHTTPTestCase

from codeagent.adapters.events import SessionIdle
from codeagent.engine.stream_events import StartStepEvent
from codeagent.engine.yaml_config import CommandConfig, ProjectConfig
from codeagent.server.server import CodeAgentServer

from conftest import ScriptedProvider, make_context, text_step


class TestCodeAgentServer(AioHTTPTestCase):
    async def get_application(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.provider = ScriptedProvider()
        config = ProjectConfig(
            commands={"hello": CommandConfig(template="Say hello to $ARGUMENTS")}
        )
        self.ctx = make_context(
            root / "work", root / "data", self.provider, project_config=config
        )
        return CodeAgentServer(self.ctx).app

    async def asyncTearDown(self):
        await self.ctx.prompt.dispose()
        await super().asyncTearDown()
        self._tmp.cleanup()

    async def _create_session(self, **body) -> dict:
        resp = await self.client.post("/session", json=body)
        assert resp.status == 200
        return await resp.json()

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["project_id"] == "test-project"

    async def test_session_crud(self):
        created = await self._create_session()
        session_id = created["id"]
        assert created["title"].startswith("New session - ")

        resp = await self.client.get(f"/session/{session_id}")
        assert resp.status == 200
        assert (await resp.json())["id"] == session_id

        resp = await self.client.patch(f"/session/{session_id}", json={"title": "Renamed"})
        assert (await resp.json())["title"] == "Renamed"

        resp = await self.client.get("/session")
        assert [s["id"] for s in await resp.json()] == [session_id]

        resp = await self.client.delete(f"/session/{session_id}")
        assert await resp.json() is True
        resp = await self.client.get(f"/session/{session_id}")
        assert resp.status == 404

    async def test_delete_waits_for_the_running_turn_to_unwind(self):
        entered = asyncio.Event()

        async def blocking(request):
            yield StartStepEvent()
            entered.set()
            await asyncio.sleep(30)

        self.provider.steps = [blocking]
        session = await self._create_session()
        pending = asyncio.ensure_future(self.client.post(
            f"/session/{session['id']}/message",
            json={"parts": [{"type": "text", "text": "hello"}]},
        ))
        await asyncio.wait_for(entered.wait(), 10)

        resp = await self.client.delete(f"/session/{session['id']}")
        assert await resp.json() is True
        (await asyncio.wait_for(pending, 10)).release()
        await self.ctx.prompt.dispose()

        assert not self.ctx.locks.is_busy(session["id"])
        assert self.ctx.storage.list(["message", session["id"]]) == []
        resp = await self.client.get(f"/session/{session['id']}")
        assert resp.status == 404

    async def test_child_sessions_require_an_existing_parent(self):
        resp = await self.client.post("/session", json={"parent_id": "ses_missing"})
        assert resp.status == 404

        parent = await self._create_session()
        child = await self._create_session(parent_id=parent["id"])
        resp = await self.client.get(f"/session/{parent['id']}/children")
        assert [s["id"] for s in await resp.json()] == [child["id"]]

    async def test_prompt_returns_the_assistant_message(self):
        self.provider.steps = [text_step("Hi from the model")]
        session = await self._create_session()

        resp = await self.client.post(
            f"/session/{session['id']}/message",
            json={"parts": [{"type": "text", "text": "hello"}]},
        )
        assert resp.status == 200
        data = await resp.json()
        assert data["info"]["role"] == "assistant"
        texts = [p["text"] for p in data["parts"] if p["type"] == "text"]
        assert texts == ["Hi from the model"]

        resp = await self.client.get(f"/session/{session['id']}/message")
        messages = await resp.json()
        assert [m["info"]["role"] for m in messages] == ["user", "assistant"]

        message_id = messages[0]["info"]["id"]
        resp = await self.client.get(f"/session/{session['id']}/message/{message_id}")
        assert (await resp.json())["parts"][0]["text"] == "hello"

    async def test_prompt_rejects_bad_bodies(self):
        session = await self._create_session()
        resp = await self.client.post(
            f"/session/{session['id']}/message",
            data="not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400

        resp = await self.client.post(f"/session/{session['id']}/message", json={})
        assert resp.status == 400

    async def test_command_expands_the_template(self):
        self.provider.steps = [text_step("Hello Ada")]
        session = await self._create_session()

        resp = await self.client.post(
            f"/session/{session['id']}/command",
            json={"command": "hello", "arguments": "Ada"},
        )
        assert resp.status == 200
        request = self.provider.requests[0]
        assert "Say hello to Ada" in json.dumps(request.messages)

        resp = await self.client.post(
            f"/session/{session['id']}/command", json={"command": "missing"}
        )
        assert resp.status == 404

    async def test_abort_idle_session_returns_false(self):
        session = await self._create_session()
        resp = await self.client.post(f"/session/{session['id']}/abort")
        assert await resp.json() is False

    async def test_busy_session_refuses_revert(self):
        session = await self._create_session()
        lock = self.ctx.locks.lock(session["id"])
        try:
            resp = await self.client.post(
                f"/session/{session['id']}/revert", json={"message_id": "msg_x"}
            )
            assert resp.status == 409
        finally:
            lock.release()

    async def test_share_needs_a_share_url(self):
        session = await self._create_session()
        resp = await self.client.post(f"/session/{session['id']}/share")
        assert resp.status == 400
        assert "share_url" in (await resp.json())["error"]

    async def test_tool_registration(self):
        resp = await self.client.get("/experimental/tool/ids")
        ids = await resp.json()
        assert {"bash", "task", "invalid"} <= set(ids)

        resp = await self.client.post(
            "/experimental/tool/register",
            json={
                "id": "lookup",
                "description": "Look something up",
                "parameters": {"properties": {"query": {"type": "string"}}},
                "callback_url": "http://127.0.0.1:1/lookup",
            },
        )
        assert await resp.json() is True

        resp = await self.client.get("/experimental/tool")
        tools = {t["id"]: t for t in await resp.json()}
        assert tools["lookup"]["parameters"]["required"] == ["query"]

        resp = await self.client.post(
            "/experimental/tool/register", json={"id": "broken"}
        )
        assert resp.status == 400

    async def test_catalogs(self):
        resp = await self.client.get("/agent")
        names = [a["name"] for a in await resp.json()]
        assert {"build", "plan", "general"} <= set(names)

        resp = await self.client.get("/command")
        commands = await resp.json()
        assert commands[0]["name"] == "hello"
        assert commands[0]["template"] == "Say hello to $ARGUMENTS"

        resp = await self.client.get("/config")
        data = await resp.json()
        assert data["model"] == "fake/m1"
        assert data["commands"] == ["hello"]

    async def test_permission_response_validation(self):
        session = await self._create_session()
        resp = await self.client.post(
            f"/session/{session['id']}/permissions/per_1", json={}
        )
        assert resp.status == 400

    async def test_event_stream_starts_with_server_connected(self):
        resp = await self.client.get("/event")
        assert resp.status == 200
        assert resp.headers["Content-Type"] == "text/event-stream"

        first = await resp.content.readline()
        assert json.loads(first.decode()[len("data: "):]) == {
            "type": "server.connected",
            "properties": {},
        }
        await resp.content.readline()

        self.ctx.bus.publish(SessionIdle(session_id="ses_1"))
        line = await resp.content.readline()
        event = json.loads(line.decode()[len("data: "):])
        assert event == {"type": "session.idle", "properties": {"session_id": "ses_1"}}
        resp.close()
