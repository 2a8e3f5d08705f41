"""Side notification fired once per finished run (e.g. notify-send)."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .models import RunRecord, summary_count

log = logging.getLogger(__name__)


class Notifier:
    def __init__(self, argv: Optional[list[str]] = None):
        self.argv = list(argv) if argv else None
        self._tasks: set[asyncio.Task] = set()

    @staticmethod
    def fields(record: RunRecord) -> dict[str, object]:
        return {
            "result": record.result(),
            "run_id": record.run_id,
            "context_id": record.context.context_id or "",
            "exit_code": record.exit_code,
            "tests": summary_count(record.summary, "numberOfTests"),
            "failures": summary_count(record.summary, "numberOfFailures"),
            "errors": summary_count(record.summary, "numberOfErrors"),
        }

    def render(self, record: RunRecord) -> list[str]:
        values = self.fields(record)
        return [part.format(**values) for part in self.argv or []]

    def notify(self, record: RunRecord) -> None:
        """Log the outcome and start the configured command, fire-and-forget."""
        values = self.fields(record)
        log.info(
            "[%s] run %s (exit %s, %s tests, %s failures, %s errors)",
            record.run_id, values["result"], values["exit_code"],
            values["tests"], values["failures"], values["errors"],
        )
        if not self.argv:
            return
        try:
            argv = self.render(record)
        except (KeyError, IndexError, ValueError) as exc:
            log.error("notify_argv has a bad placeholder: %s", exc)
            return
        task = asyncio.get_running_loop().create_task(self._run(argv))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, argv: list[str]) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            code = await proc.wait()
        except OSError as exc:
            log.warning("Notification command %s failed to start: %s", argv[0], exc)
            return
        if code != 0:
            log.warning("Notification command %s exited with %s", argv[0], code)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
