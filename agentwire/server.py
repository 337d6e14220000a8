"""HTTP + SSE transport for the turn event stream.

Thin adapter over TurnOrchestrator: it starts turns from JSON requests,
forwards abort requests, and fans every turn's events out to all
connected SSE clients. No turn semantics live here.

Routes:
    GET  /health
    GET  /events                    SSE stream of every turn's events
    POST /turns                     start a turn (JSON turn request)
    POST /sessions/{id}/abort       abort the session's running turn
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from agentwire.adapters.events import TurnEvent, event_to_dict
from agentwire.engine.config import AgentConfig
from agentwire.engine.errors import SessionBusyError
from agentwire.engine.models import TurnRequest
from agentwire.engine.orchestrator import TurnOrchestrator

logger = logging.getLogger(__name__)


class AgentWireServer:
    """HTTP + SSE server wrapping one TurnOrchestrator."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
        orchestrator: TurnOrchestrator | None = None,
    ) -> None:
        self._config = config
        self._host = host
        self._port = port
        self._orchestrator = orchestrator or TurnOrchestrator(config)
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._turn_tasks: set[asyncio.Task] = set()
        self._started_at = time.time()
        self._runner: web.AppRunner | None = None
        self.app = web.Application(middlewares=[self._request_logging_middleware])
        self.app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def orchestrator(self) -> TurnOrchestrator:
        return self._orchestrator

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
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

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self.app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_post("/turns", self._handle_start_turn)
        r.add_post("/sessions/{id}/abort", self._handle_abort)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start listening and print the bound port to stdout."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, self._runner)
        if actual_port is None:
            raise RuntimeError("Server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("agentwire server listening on %s:%d", self._host, actual_port)

    async def serve_forever(self) -> None:
        await self.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def _on_shutdown(self, app: web.Application) -> None:
        await self._orchestrator.shutdown()
        if self._turn_tasks:
            await asyncio.gather(*self._turn_tasks, return_exceptions=True)

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── SSE fan-out ──

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping event")

    async def _on_turn_event(self, event: TurnEvent) -> None:
        self._broadcast_sse(event.event_type, event_to_dict(event))

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "active_sessions": self._orchestrator.active_sessions,
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

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            connected = {"activeSessions": self._orchestrator.active_sessions}
            await response.write(
                f"event: connected\ndata: {json.dumps(connected)}\n\n".encode()
            )
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=30.0)
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))
        return response

    async def _handle_start_turn(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Request body must be JSON"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Request body must be an object"}, status=400)

        turn = TurnRequest.from_dict(body)
        if not turn.prompt.strip():
            return web.json_response({"error": "No prompt provided"}, status=400)
        if turn.session_id and self._orchestrator.is_active(turn.session_id):
            return web.json_response(
                {"error": f"Session {turn.session_id} already has a turn in progress"},
                status=409,
            )

        logger.info(
            "Turn requested session=%s prompt_len=%d images=%d",
            turn.session_id or "<new>", len(turn.prompt), len(turn.images),
        )
        task = asyncio.create_task(self._run_turn(turn))
        self._turn_tasks.add(task)
        task.add_done_callback(self._turn_tasks.discard)
        return web.json_response(
            {"status": "started", "sessionId": turn.session_id},
            status=202,
        )

    async def _run_turn(self, turn: TurnRequest) -> None:
        try:
            await self._orchestrator.run_turn(turn, self._on_turn_event)
        except SessionBusyError as exc:
            logger.warning("Turn rejected: %s", exc)
            self._broadcast_sse("error", {
                "event": "error",
                "sessionId": exc.session_id,
                "message": str(exc),
                "kind": exc.kind,
            })
        except Exception:
            logger.exception("Turn task crashed session=%s", turn.session_id)

    async def _handle_abort(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if not self._orchestrator.abort(session_id):
            return web.json_response(
                {"error": f"No running turn for session {session_id}"}, status=404,
            )
        return web.json_response({"status": "aborting", "sessionId": session_id})
