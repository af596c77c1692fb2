"""HTTP + SSE control surface for one project.

JSON routes drive sessions, prompts and tool registration; ``GET /event``
streams every bus event as ``data: {"type", "properties"}``.

Usage:
    codeagent [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from dataclasses import asdict
from typing import Any

from aiohttp import web

from codeagent.adapters.events import ServerConnected, event_to_dict
from codeagent.engine.errors import (
    AgentNotFoundError,
    CommandNotFoundError,
    ConfigError,
    ModelNotFoundError,
    ProviderNotAvailableError,
    SessionBusyError,
    SessionNotFoundError,
    ToolNotFoundError,
)
from codeagent.engine.instance import ProjectContext
from codeagent.engine.prompt import CommandInput, PromptInput, ShellInput
from codeagent.shared.services.persistence import (
    message_with_parts_to_dict,
    session_to_dict,
)
from codeagent.tools.registry import HttpToolRegistration, describe

logger = logging.getLogger(__name__)

_NOT_FOUND = (
    SessionNotFoundError,
    AgentNotFoundError,
    CommandNotFoundError,
    ModelNotFoundError,
    ToolNotFoundError,
)
_BAD_REQUEST = (ValueError, KeyError, TypeError, ConfigError, ProviderNotAvailableError)
_KEEPALIVE_SECONDS = 30.0


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON body: {exc}") from exc
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValueError("JSON body must be an object")
    return body


def _require(body: dict[str, Any], key: str) -> Any:
    value = body.get(key)
    if value is None or value == "":
        raise ValueError(f"{key} is required")
    return value


class CodeAgentServer:
    """aiohttp application bound to a ProjectContext."""

    def __init__(
        self, ctx: ProjectContext, host: str = "127.0.0.1", port: int = 0
    ) -> None:
        self._ctx = ctx
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware]
        )
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-codeagent-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except _NOT_FOUND as exc:
            return web.json_response({"error": str(exc)}, status=404)
        except SessionBusyError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        except _BAD_REQUEST as exc:
            return web.json_response({"error": str(exc)}, status=400)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/event", self._handle_sse)
        # Sessions
        r.add_get("/session", self._handle_list_sessions)
        r.add_post("/session", self._handle_create_session)
        r.add_get("/session/{id}", self._handle_get_session)
        r.add_patch("/session/{id}", self._handle_update_session)
        r.add_delete("/session/{id}", self._handle_delete_session)
        r.add_get("/session/{id}/children", self._handle_children)
        r.add_post("/session/{id}/share", self._handle_share)
        r.add_delete("/session/{id}/share", self._handle_unshare)
        # Messages and turns
        r.add_get("/session/{id}/message", self._handle_list_messages)
        r.add_get("/session/{id}/message/{message_id}", self._handle_get_message)
        r.add_post("/session/{id}/message", self._handle_prompt)
        r.add_post("/session/{id}/command", self._handle_command)
        r.add_post("/session/{id}/shell", self._handle_shell)
        r.add_post("/session/{id}/abort", self._handle_abort)
        r.add_post("/session/{id}/summarize", self._handle_summarize)
        r.add_post("/session/{id}/revert", self._handle_revert)
        r.add_post("/session/{id}/unrevert", self._handle_unrevert)
        r.add_post("/session/{id}/permissions/{permission_id}", self._handle_permission)
        # Tools
        r.add_post("/experimental/tool/register", self._handle_register_tool)
        r.add_get("/experimental/tool/ids", self._handle_tool_ids)
        r.add_get("/experimental/tool", self._handle_list_tools)
        # Catalogs
        r.add_get("/agent", self._handle_list_agents)
        r.add_get("/command", self._handle_list_commands)
        r.add_get("/config", self._handle_get_config)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server, print the port to stdout and serve until cancelled."""
        await self._ctx.init()
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(runner)
        if actual_port is None:
            raise RuntimeError("codeagent server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("codeagent server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._ctx.dispose()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(runner: web.AppRunner) -> int | None:
        for address in runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return None

    # ── Handlers: health and events ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "directory": self._ctx.directory,
            "project_id": self._ctx.project.id,
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        queue = self._ctx.bus.open_queue()
        logger.info("SSE client connected req=%s", request.get("req_id", "unknown"))
        try:
            await response.write(
                f"data: {json.dumps(event_to_dict(ServerConnected()))}\n\n".encode()
            )
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=_KEEPALIVE_SECONDS)
                    data = json.dumps(event_to_dict(event))
                    await response.write(f"data: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._ctx.bus.close_queue(queue)
            logger.info("SSE client disconnected req=%s", request.get("req_id", "unknown"))
        return response

    # ── Handlers: sessions ──

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        return web.json_response([session_to_dict(s) for s in self._ctx.store.list()])

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        parent_id = body.get("parent_id")
        if parent_id:
            self._ctx.store.get(parent_id)
        info = self._ctx.store.create(parent_id=parent_id, title=body.get("title"))
        return web.json_response(session_to_dict(info))

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        info = self._ctx.store.get(request.match_info["id"])
        return web.json_response(session_to_dict(info))

    async def _handle_update_session(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        title = body.get("title")

        def _edit(info) -> None:
            if title is not None:
                info.title = str(title)

        info = self._ctx.store.update(request.match_info["id"], _edit)
        return web.json_response(session_to_dict(info))

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        store = self._ctx.store
        running = [session_id, *(child.id for child in store.children(session_id))]
        # Aborted turns still write their final state; wait for them to unwind.
        await asyncio.gather(*(self._ctx.locks.stop(sid) for sid in running))
        store.remove(session_id)
        return web.json_response(True)

    async def _handle_children(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        self._ctx.store.get(session_id)
        children = self._ctx.store.children(session_id)
        return web.json_response([session_to_dict(s) for s in children])

    async def _handle_share(self, request: web.Request) -> web.Response:
        info = self._ctx.store.share(request.match_info["id"])
        return web.json_response(session_to_dict(info))

    async def _handle_unshare(self, request: web.Request) -> web.Response:
        info = self._ctx.store.unshare(request.match_info["id"])
        return web.json_response(session_to_dict(info))

    # ── Handlers: messages and turns ──

    async def _handle_list_messages(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        self._ctx.store.get(session_id)
        messages = self._ctx.store.messages(session_id)
        return web.json_response([message_with_parts_to_dict(m) for m in messages])

    async def _handle_get_message(self, request: web.Request) -> web.Response:
        message = self._ctx.store.get_message(
            request.match_info["id"], request.match_info["message_id"]
        )
        return web.json_response(message_with_parts_to_dict(message))

    async def _handle_prompt(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        prompt_input = PromptInput.from_dict(request.match_info["id"], body)
        result = await self._ctx.prompt.prompt(prompt_input)
        return web.json_response(message_with_parts_to_dict(result))

    async def _handle_command(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        result = await self._ctx.prompt.command(
            CommandInput(
                session_id=request.match_info["id"],
                command=_require(body, "command"),
                arguments=str(body.get("arguments") or ""),
                message_id=body.get("message_id"),
                agent=body.get("agent"),
                model=body.get("model"),
            )
        )
        return web.json_response(message_with_parts_to_dict(result))

    async def _handle_shell(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        result = await self._ctx.prompt.shell(
            ShellInput(
                session_id=request.match_info["id"],
                agent=_require(body, "agent"),
                command=_require(body, "command"),
            )
        )
        return web.json_response(message_with_parts_to_dict(result))

    async def _handle_abort(self, request: web.Request) -> web.Response:
        return web.json_response(self._ctx.locks.abort(request.match_info["id"]))

    async def _handle_summarize(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        await self._ctx.prompt.summarize(
            request.match_info["id"],
            _require(body, "provider_id"),
            _require(body, "model_id"),
        )
        return web.json_response(True)

    async def _handle_revert(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        info = await self._ctx.revert.revert(
            request.match_info["id"],
            _require(body, "message_id"),
            body.get("part_id"),
        )
        return web.json_response(session_to_dict(info))

    async def _handle_unrevert(self, request: web.Request) -> web.Response:
        info = await self._ctx.revert.unrevert(request.match_info["id"])
        return web.json_response(session_to_dict(info))

    async def _handle_permission(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        self._ctx.permissions.respond(
            request.match_info["id"],
            request.match_info["permission_id"],
            _require(body, "response"),
        )
        return web.json_response(True)

    # ── Handlers: tools and catalogs ──

    async def _handle_register_tool(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        self._ctx.tools.register_http(HttpToolRegistration.from_dict(body))
        return web.json_response(True)

    async def _handle_tool_ids(self, request: web.Request) -> web.Response:
        return web.json_response(self._ctx.tools.ids())

    async def _handle_list_tools(self, request: web.Request) -> web.Response:
        return web.json_response([describe(t) for t in self._ctx.tools.tools()])

    async def _handle_list_agents(self, request: web.Request) -> web.Response:
        return web.json_response([a.to_dict() for a in self._ctx.agents.list()])

    async def _handle_list_commands(self, request: web.Request) -> web.Response:
        commands = [
            {"name": name, **asdict(cfg)}
            for name, cfg in self._ctx.project_config.commands.items()
        ]
        return web.json_response(commands)

    async def _handle_get_config(self, request: web.Request) -> web.Response:
        cfg = self._ctx.project_config
        return web.json_response({
            "path": str(cfg.path) if cfg.path else None,
            "model": self._ctx.providers.default_ref,
            "small_model": self._ctx.providers.small_ref,
            "providers": self._ctx.providers.list_names(),
            "models": [m.ref for m in self._ctx.providers.list_models()],
            "agents": [a.name for a in self._ctx.agents.list()],
            "commands": sorted(cfg.commands),
            "plugins": list(cfg.plugins),
            "snapshot": cfg.snapshot,
            "share_url": cfg.share_url,
        })
