"""Run supervisor – spawns one test process per run and follows it to exit.

Per run there are two pumps: stdout is diagnostics (logged, last lines kept
on the handle), stderr is the event log (buffered into lines, decoded, folded
into the registry and broadcast, strictly in that order). When both streams
close and the process has exited, the remainder of the stderr buffer is
flushed through the same path and the run is reaped exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from typing import Callable, Optional

from .command import build_command
from .config import HubConfig
from .errors import DecodeError, SpawnError, TerminateError
from .events import LineBuffer, decode
from .hub import BroadcastHub
from .models import RunContext, RunStatus
from .notify import Notifier
from .registry import RunRegistry

log = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024

CommandBuilder = Callable[[HubConfig, RunContext], list[str]]


class RunHandle:
    """A spawned test process and everything needed to stop and reap it."""

    def __init__(
        self,
        context: RunContext,
        process: asyncio.subprocess.Process,
        argv: list[str],
        tail_lines: int = 200,
    ):
        self.context = context
        self.process = process
        self.argv = argv
        self.stdout_tail: deque[str] = deque(maxlen=tail_lines)
        self.stop_requested = False
        self.forced = False
        self.reaped = False
        self.kill_timer: Optional[asyncio.TimerHandle] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def run_id(self) -> str:
        return self.context.run_id

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def status(self) -> RunStatus:
        if self.reaped:
            return RunStatus.STOPPED if self.stop_requested else RunStatus.FINISHED
        return RunStatus.STOPPING if self.stop_requested else RunStatus.RUNNING

    def is_running(self) -> bool:
        return not self.reaped and self.process.returncode is None

    def send_signal(self, sig: int) -> None:
        try:
            self.process.send_signal(sig)
        except ProcessLookupError as exc:
            raise TerminateError(f"process {self.pid} already gone") from exc
        except OSError as exc:
            raise TerminateError(f"cannot signal process {self.pid}: {exc}") from exc

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    def cancel_kill_timer(self) -> None:
        if self.kill_timer is not None:
            self.kill_timer.cancel()
            self.kill_timer = None

    async def wait(self) -> Optional[int]:
        """Wait until the run has been reaped; returns the exit code."""
        if self.task is not None:
            await asyncio.shield(self.task)
        return self.process.returncode

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "contextId": self.context.context_id,
            "pid": self.pid,
            "status": self.status.value,
            "argv": list(self.argv),
            "stdoutTail": list(self.stdout_tail),
        }


class RunSupervisor:
    def __init__(
        self,
        config: HubConfig,
        registry: RunRegistry,
        hub: BroadcastHub,
        notifier: Optional[Notifier] = None,
        command_builder: CommandBuilder = build_command,
    ):
        self.config = config
        self.registry = registry
        self.hub = hub
        self.notifier = notifier
        self._build = command_builder
        self._handles: dict[str, RunHandle] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, run_id: str) -> Optional[RunHandle]:
        return self._handles.get(run_id)

    def running_handles(self) -> list[RunHandle]:
        return [h for h in self._handles.values() if h.is_running()]

    @property
    def running_count(self) -> int:
        return len(self.running_handles())

    # ------------------------------------------------------------------
    # Spawn
    # ------------------------------------------------------------------

    async def spawn(self, context: RunContext) -> RunHandle:
        argv = self._build(self.config, context)
        cwd = self.config.cwd
        log.info("[%s] starting test run: %s (cwd=%s)", context.run_id, " ".join(argv), cwd)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd,
                env={**os.environ, **self.config.env},
            )
        except (OSError, ValueError) as exc:
            log.error("[%s] could not start %s: %s", context.run_id, argv[0], exc)
            raise SpawnError(f"Could not start test runner {argv[0]!r}: {exc}") from exc

        handle = RunHandle(context, process, argv, self.config.stdout_tail_lines)
        self._handles[context.run_id] = handle
        self.registry.create(context)
        self.hub.broadcast({
            "type": "start",
            "runId": context.run_id,
            "contextId": context.context_id,
        })
        handle.task = asyncio.get_running_loop().create_task(self._supervise(handle))
        log.info("[%s] test process started (PID %d)", context.run_id, process.pid)
        return handle

    # ------------------------------------------------------------------
    # Output pumps
    # ------------------------------------------------------------------

    async def _supervise(self, handle: RunHandle) -> None:
        events = LineBuffer()
        results = await asyncio.gather(
            self._pump_stdout(handle),
            self._pump_events(handle, events),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                log.error(
                    "[%s] output pump failed: %r", handle.run_id, result,
                    exc_info=result,
                )
        exit_code = await handle.process.wait()
        self._reap(handle, events, exit_code)

    async def _pump_stdout(self, handle: RunHandle) -> None:
        lines = LineBuffer()
        stream = handle.process.stdout
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            for line in lines.feed(chunk):
                self._record_stdout(handle, line)
        for line in lines.flush():
            self._record_stdout(handle, line)

    @staticmethod
    def _record_stdout(handle: RunHandle, line: str) -> None:
        handle.stdout_tail.append(line)
        log.debug("[%s] stdout: %s", handle.run_id, line)

    async def _pump_events(self, handle: RunHandle, events: LineBuffer) -> None:
        stream = handle.process.stderr
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            for line in events.feed(chunk):
                self._dispatch(handle, line)

    def _dispatch(self, handle: RunHandle, line: str) -> None:
        try:
            event = decode(line)
        except DecodeError as exc:
            log.warning("[%s] skipping malformed event line: %s", handle.run_id, exc)
            return
        if event is None:
            return
        self.registry.apply(handle.run_id, event)
        self.hub.broadcast({
            "type": "realtime",
            "runId": handle.run_id,
            "data": event.raw,
        })

    # ------------------------------------------------------------------
    # Exit
    # ------------------------------------------------------------------

    def _reap(self, handle: RunHandle, events: LineBuffer, exit_code: Optional[int]) -> None:
        if handle.reaped:
            return

        try:
            for line in events.flush():
                self._dispatch(handle, line)
        except Exception:
            log.exception("[%s] trailing event could not be applied", handle.run_id)

        handle.reaped = True
        handle.cancel_kill_timer()
        status = RunStatus.STOPPED if handle.stop_requested else RunStatus.FINISHED
        try:
            record = self.registry.finish(handle.run_id, status, exit_code)
            self.hub.broadcast({
                "type": "exit",
                "runId": handle.run_id,
                "exitCode": exit_code,
                "contextId": handle.context.context_id,
            })
            log.info(
                "[%s] test run %s with code %s (%s)",
                handle.run_id, status.value, exit_code, record.result(),
            )
            if self.notifier is not None:
                self.notifier.notify(record)
        except Exception:
            log.exception("[%s] exit handling failed", handle.run_id)
        finally:
            self._handles.pop(handle.run_id, None)
            self.registry.reap(handle.run_id)

    async def shutdown(self) -> None:
        """Kill every live process and wait for each run to be reaped."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.stop_requested = True
            handle.cancel_kill_timer()
            if handle.is_running():
                try:
                    handle.kill()
                except TerminateError as exc:
                    log.warning("[%s] kill during shutdown failed: %s", handle.run_id, exc)
        for handle in handles:
            await handle.wait()
