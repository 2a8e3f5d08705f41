"""File watcher – re-runs the last request when source files change.

Relies on ``inotifywait`` (inotify-tools). When it is not installed the
watcher logs an error and stays off; the server keeps running.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .events import LineBuffer

log = logging.getLogger(__name__)

INOTIFY_EVENTS = "modify,create,delete,move"


def composer_watch_paths(root: Path) -> list[str]:
    """PSR-4 autoload paths (prod + dev) declared in composer.json."""
    composer = root / "composer.json"
    if not composer.is_file():
        return []
    try:
        data = json.loads(composer.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("Cannot read %s: %s", composer, exc)
        return []

    paths: list[str] = []
    for section in ("autoload", "autoload-dev"):
        psr4 = (data.get(section) or {}).get("psr-4") or {}
        for value in psr4.values():
            paths.extend(value if isinstance(value, list) else [value])
    return paths


def resolve_watch_paths(root: Path, configured: list[str]) -> list[Path]:
    candidates = configured or composer_watch_paths(root) or ["src", "tests"]
    resolved: list[Path] = []
    for p in candidates:
        path = (root / p.strip("/\\")).resolve()
        if path.is_dir() and path not in resolved:
            resolved.append(path)
    return resolved


class FileWatcher:
    def __init__(
        self,
        root: Path,
        on_change: Callable[[], Awaitable[object]],
        paths: Optional[list[str]] = None,
        extensions: Optional[list[str]] = None,
        debounce_sec: float = 0.5,
        binary: str = "inotifywait",
    ):
        self.root = root
        self.on_change = on_change
        self.paths = list(paths or [])
        self.extensions = tuple(e.lower() for e in (extensions or [".php"]))
        self.debounce_sec = debounce_sec
        self.binary = binary
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pending: set[asyncio.Task] = set()

    def command(self, watch_paths: list[Path]) -> list[str]:
        return [
            self.binary, "-q", "-m", "-r",
            "-e", INOTIFY_EVENTS,
            "--format", "%e %w%f",
            *[str(p) for p in watch_paths],
        ]

    async def start(self) -> bool:
        if shutil.which(self.binary) is None:
            log.error(
                "`%s` not found; install inotify-tools to use --watch "
                "(e.g. sudo apt-get install inotify-tools)", self.binary,
            )
            return False

        watch_paths = resolve_watch_paths(self.root, self.paths)
        if not watch_paths:
            log.warning("No directories to watch under %s", self.root)
            return False

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command(watch_paths),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            log.error("Failed to start file watcher: %s", exc)
            return False

        for path in watch_paths:
            log.info("Watching for changes in %s", path)
        self._task = asyncio.get_running_loop().create_task(self._read())
        return True

    def matches(self, line: str) -> bool:
        line = line.strip()
        if not line or line == "0":
            return False
        return line.lower().endswith(self.extensions)

    def feed_line(self, line: str) -> bool:
        """Handle one watcher line; returns True if it (re)armed the debounce."""
        if not self.matches(line):
            return False
        log.info("File change detected: %s", line.strip())
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(
            self.debounce_sec, self._fire
        )
        return True

    def _fire(self) -> None:
        self._timer = None
        log.info("Re-running tests due to file changes...")
        task = asyncio.get_running_loop().create_task(self._trigger())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _trigger(self) -> None:
        try:
            await self.on_change()
        except Exception:
            log.exception("Re-run after file change failed")

    async def _read(self) -> None:
        assert self._proc is not None
        lines = LineBuffer()
        while True:
            chunk = await self._proc.stdout.read(4096)
            if not chunk:
                break
            for line in lines.feed(chunk):
                self.feed_line(line)
        code = await self._proc.wait()
        if code not in (0, None, -15):
            err = (await self._proc.stderr.read()).decode(errors="replace").strip()
            log.error("Watcher exited with code %s: %s", code, err)

    async def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._proc is not None and self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass
        if self._task is not None:
            await self._task
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
