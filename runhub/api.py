"""HTTP + websocket transport for the run hub (aiohttp).

Endpoints:
  POST /api/run                          Start a run (202 + runId)
  POST /api/run-failed                   Re-run the latest run's failures
  POST /api/stop                         Stop every running run
  POST /api/stop-single-test/{runId}     Stop one run
  GET  /api/runs                         Running + recently finished runs
  GET  /api/runs/{runId}                 Full state of one run
  GET  /api/runs/{runId}/failed          Failed test ids of one run
  GET  /ws/status                        WebSocket: start/realtime/exit/stopped messages
  GET  /healthz                          Health check
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

from aiohttp import WSMsgType, web

from . import __version__
from .cancel import CancellationController
from .command import build_command
from .config import HubConfig
from .errors import HubError, InvalidRequest, UnknownRun
from .hub import BroadcastHub
from .notify import Notifier
from .registry import RunRegistry
from .router import RunRouter
from .supervisor import CommandBuilder, RunSupervisor
from .watcher import FileWatcher

log = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 10


def error_response(exc: HubError) -> web.Response:
    return web.json_response(
        {"ok": False, "error": str(exc), "error_class": exc.error_class},
        status=exc.http_status,
    )


class HubServer:
    """Owns the registry, hub, supervisor, canceller and router for one app."""

    def __init__(
        self,
        config: HubConfig,
        command_builder: CommandBuilder = build_command,
        watch: bool = False,
    ):
        self.config = config
        self.started_at = time.time()
        self.registry = RunRegistry(history_size=config.history_size)
        self.hub = BroadcastHub(queue_size=config.viewer_queue_size)
        self.notifier = Notifier(config.notify_argv)
        self.supervisor = RunSupervisor(
            config, self.registry, self.hub, self.notifier, command_builder
        )
        self.canceller = CancellationController(
            self.supervisor, self.registry, self.hub, config.grace_period_sec
        )
        self.router = RunRouter(
            self.supervisor, self.canceller, self.registry, config.max_concurrent_runs
        )
        self.app = web.Application(middlewares=[self.error_middleware])
        self.app[HUB_KEY] = self
        self.watcher: Optional[FileWatcher] = None
        if watch:
            self.watcher = FileWatcher(
                Path(config.cwd),
                self._rerun_on_change,
                paths=config.watch_paths,
                extensions=config.watch_extensions,
                debounce_sec=config.watch_debounce_sec,
            )
            self.app.on_startup.append(self._start_watcher)
        self.app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_post("/api/run", self.handle_run)
        self.app.router.add_post("/api/run-failed", self.handle_run_failed)
        self.app.router.add_post("/api/stop", self.handle_stop_all)
        self.app.router.add_post("/api/stop-single-test/{run_id}", self.handle_stop_one)
        self.app.router.add_get("/api/runs", self.handle_runs)
        self.app.router.add_get("/api/runs/{run_id}", self.handle_run_state)
        self.app.router.add_get("/api/runs/{run_id}/failed", self.handle_run_failed_ids)
        self.app.router.add_get("/ws/status", self.handle_ws)
        self.app.router.add_get("/healthz", self.handle_health)

    @web.middleware
    async def error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except HubError as exc:
            if exc.http_status >= 500:
                log.error("%s %s failed: %s", request.method, request.path, exc)
            else:
                log.info("%s %s rejected: %s", request.method, request.path, exc)
            return error_response(exc)

    @staticmethod
    async def _json_body(request: web.Request) -> Optional[Any]:
        """Parsed JSON body, or None when the body is empty."""
        raw = await request.text()
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidRequest("Invalid JSON") from exc

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def handle_run(self, req: web.Request) -> web.Response:
        payload = await self._json_body(req)
        run_id = await self.router.start_run(payload)
        return web.json_response({"ok": True, "runId": run_id}, status=202)

    async def handle_run_failed(self, req: web.Request) -> web.Response:
        payload = await self._json_body(req)
        run_id = await self.router.run_failed(payload)
        return web.json_response({"ok": True, "runId": run_id}, status=202)

    async def handle_stop_all(self, req: web.Request) -> web.Response:
        result = self.router.stop()
        return web.json_response(result.to_dict(), status=202)

    async def handle_stop_one(self, req: web.Request) -> web.Response:
        result = self.router.stop(req.match_info["run_id"])
        return web.json_response(result.to_dict(), status=202)

    async def handle_runs(self, req: web.Request) -> web.Response:
        running = []
        for record in self.registry.live():
            item = {"runId": record.run_id, "contextId": record.context.context_id,
                    "status": record.status.value, "startedAt": record.started_at}
            handle = self.supervisor.get(record.run_id)
            if handle is not None:
                item["pid"] = handle.pid
            running.append(item)
        history = [
            {"runId": r.run_id, "contextId": r.context.context_id, "status": r.status.value,
             "result": r.result(), "exitCode": r.exit_code, "finishedAt": r.finished_at}
            for r in reversed(self.registry.history())
        ]
        return web.json_response({"ok": True, "running": running, "history": history})

    async def handle_run_state(self, req: web.Request) -> web.Response:
        run_id = req.match_info["run_id"]
        record = self.registry.get(run_id)
        if record is None:
            raise UnknownRun(run_id)
        body = record.to_dict()
        handle = self.supervisor.get(run_id)
        if handle is not None:
            body["process"] = handle.to_dict()
        return web.json_response({"ok": True, **body})

    async def handle_run_failed_ids(self, req: web.Request) -> web.Response:
        run_id = req.match_info["run_id"]
        failed = self.registry.failed_test_ids(run_id)
        return web.json_response({"ok": True, "runId": run_id, "failedTestIds": sorted(failed)})

    # ------------------------------------------------------------------
    # Viewers
    # ------------------------------------------------------------------

    async def handle_ws(self, req: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=HEARTBEAT_INTERVAL)
        await ws.prepare(req)
        sub = self.hub.register(ws)
        try:
            async for msg in ws:
                # viewers only listen; anything they send is ignored
                if msg.type == WSMsgType.ERROR:
                    log.warning("Viewer #%d websocket error: %s", sub.id, ws.exception())
                    break
        finally:
            self.hub.unregister(sub)
        return ws

    async def handle_health(self, req: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "version": __version__,
            "uptime_sec": round(time.time() - self.started_at, 1),
            "running": self.supervisor.running_count,
            "viewers": self.hub.viewer_count,
        })

    async def _start_watcher(self, app: web.Application) -> None:
        assert self.watcher is not None
        await self.watcher.start()

    async def _rerun_on_change(self) -> None:
        if self.supervisor.running_count:
            log.info("Skipping re-run, a test run is still in progress")
            return
        await self.router.rerun_last()

    async def _on_shutdown(self, app: web.Application) -> None:
        if self.watcher is not None:
            await self.watcher.stop()
        await self.supervisor.shutdown()
        await self.notifier.drain()
        await self.hub.close()


HUB_KEY = web.AppKey("hub_server", HubServer)


def create_app(config: Optional[HubConfig] = None, **kwargs: Any) -> web.Application:
    return HubServer(config or HubConfig(), **kwargs).app
