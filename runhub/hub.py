"""Broadcast hub – fan-out of run lifecycle messages to websocket viewers.

Every viewer gets its own bounded queue and sender task. ``broadcast`` only
enqueues, so a slow or dead viewer can never hold up the supervisor or the
other viewers; a viewer whose send fails (or whose queue overflows) is
dropped on its own.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Mapping, Optional, Protocol

from .events import encode

log = logging.getLogger(__name__)

_ids = itertools.count(1)


class Viewer(Protocol):
    async def send_str(self, data: str) -> None: ...

    async def close(self) -> Any: ...


class Subscription:
    """A registered viewer, its outbound queue and its sender task."""

    def __init__(self, viewer: Viewer, queue_size: int):
        self.id = next(_ids)
        self.viewer = viewer
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self.task: Optional[asyncio.Task] = None
        self.active = True

    def __repr__(self) -> str:
        return f"<Subscription #{self.id} active={self.active}>"


class BroadcastHub:
    def __init__(self, queue_size: int = 1000):
        self._queue_size = queue_size
        self._subs: dict[int, Subscription] = {}

    @property
    def viewer_count(self) -> int:
        return len(self._subs)

    def register(self, viewer: Viewer) -> Subscription:
        sub = Subscription(viewer, self._queue_size)
        sub.task = asyncio.get_running_loop().create_task(self._pump(sub))
        self._subs[sub.id] = sub
        log.info("Viewer #%d connected (total: %d)", sub.id, len(self._subs))
        return sub

    def unregister(self, sub: Subscription) -> None:
        if self._subs.pop(sub.id, None) is None:
            return
        sub.active = False
        if sub.task is not None and sub.task is not asyncio.current_task():
            sub.task.cancel()
        # unblock anyone waiting in flush()
        while not sub.queue.empty():
            sub.queue.get_nowait()
            sub.queue.task_done()
        log.info("Viewer #%d disconnected (remaining: %d)", sub.id, len(self._subs))

    def broadcast(self, message: Mapping[str, Any]) -> int:
        """Queue one message for every viewer. Returns the number of viewers reached."""
        payload = encode(message)
        delivered = 0
        for sub in list(self._subs.values()):
            try:
                sub.queue.put_nowait(payload)
            except asyncio.QueueFull:
                log.warning("Viewer #%d is not keeping up, dropping it", sub.id)
                self.unregister(sub)
                continue
            delivered += 1
        return delivered

    async def flush(self) -> None:
        """Wait until every queued message was handed to its viewer."""
        for sub in list(self._subs.values()):
            await sub.queue.join()

    async def close(self) -> None:
        for sub in list(self._subs.values()):
            self.unregister(sub)
            try:
                await sub.viewer.close()
            except Exception:
                log.debug("Viewer #%d close failed", sub.id, exc_info=True)

    async def _pump(self, sub: Subscription) -> None:
        while sub.active:
            payload = await sub.queue.get()
            try:
                await sub.viewer.send_str(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("Viewer #%d send failed: %s", sub.id, exc)
                self.unregister(sub)
                return
            finally:
                sub.queue.task_done()
