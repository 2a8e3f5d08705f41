"""Cancellation controller – graceful stop, optimistic notice, forced kill.

running --(stop)--> stopping --(exit)--> stopped
stopping --(grace timer, still alive)--> SIGKILL, stays stopping until exit
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .errors import NoRunInProgress, TerminateError, UnknownRun
from .hub import BroadcastHub
from .registry import RunRegistry
from .supervisor import RunHandle, RunSupervisor

log = logging.getLogger(__name__)


@dataclass
class StopResult:
    stopped: list[str] = field(default_factory=list)
    already_stopping: list[str] = field(default_factory=list)

    @property
    def run_ids(self) -> list[str]:
        return self.stopped + self.already_stopping

    def to_dict(self) -> dict:
        return {"ok": True, "stopped": self.run_ids}


class CancellationController:
    def __init__(
        self,
        supervisor: RunSupervisor,
        registry: RunRegistry,
        hub: BroadcastHub,
        grace_period_sec: float = 2.0,
    ):
        self.supervisor = supervisor
        self.registry = registry
        self.hub = hub
        self.grace_period_sec = grace_period_sec

    def stop_all(self) -> StopResult:
        handles = self.supervisor.running_handles()
        if not handles:
            raise NoRunInProgress()
        result = StopResult()
        for handle in handles:
            self._stop(handle, result)
        return result

    def stop_one(self, run_id: str) -> StopResult:
        handle = self.supervisor.get(run_id)
        if handle is None or not handle.is_running():
            raise UnknownRun(run_id)
        result = StopResult()
        self._stop(handle, result)
        return result

    def _stop(self, handle: RunHandle, result: StopResult) -> None:
        if handle.stop_requested:
            result.already_stopping.append(handle.run_id)
            return

        handle.stop_requested = True
        self.registry.mark_stopping(handle.run_id)
        log.info("[%s] stopping test run (PID %d)", handle.run_id, handle.pid)
        try:
            handle.terminate()
        except TerminateError as exc:
            # exit handling still reconciles the run
            log.warning("[%s] terminate failed: %s", handle.run_id, exc)

        self.hub.broadcast({"type": "stopped", "runId": handle.run_id})
        handle.kill_timer = asyncio.get_running_loop().call_later(
            self.grace_period_sec, self._escalate, handle
        )
        result.stopped.append(handle.run_id)

    def _escalate(self, handle: RunHandle) -> None:
        handle.kill_timer = None
        if not handle.is_running():
            return
        log.warning(
            "[%s] still running %.1fs after SIGTERM, sending SIGKILL",
            handle.run_id, self.grace_period_sec,
        )
        try:
            handle.kill()
        except TerminateError as exc:
            log.warning("[%s] kill failed: %s", handle.run_id, exc)
            return
        handle.forced = True
        self.hub.broadcast({"type": "stopped", "runId": handle.run_id, "forced": True})
