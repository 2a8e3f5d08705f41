"""Tests for the file watcher (no inotifywait needed)."""

from __future__ import annotations

import asyncio
import json

from runhub.watcher import FileWatcher, composer_watch_paths, resolve_watch_paths


def noop():
    async def on_change():
        return None

    return on_change


def test_composer_paths(tmp_path):
    (tmp_path / "composer.json").write_text(json.dumps({
        "autoload": {"psr-4": {"App\\": "src/", "Lib\\": ["lib/", "more/"]}},
        "autoload-dev": {"psr-4": {"App\\Tests\\": "tests/"}},
    }))
    assert composer_watch_paths(tmp_path) == ["src/", "lib/", "more/", "tests/"]


def test_composer_missing_or_broken(tmp_path):
    assert composer_watch_paths(tmp_path) == []
    (tmp_path / "composer.json").write_text("{broken")
    assert composer_watch_paths(tmp_path) == []


def test_resolve_keeps_existing_dirs(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "composer.json").write_text(json.dumps({
        "autoload": {"psr-4": {"App\\": "src/"}},
        "autoload-dev": {"psr-4": {"App\\Tests\\": "tests/"}},
    }))
    assert resolve_watch_paths(tmp_path, []) == [(tmp_path / "src").resolve()]


def test_resolve_configured_wins(tmp_path):
    (tmp_path / "app").mkdir()
    (tmp_path / "src").mkdir()
    assert resolve_watch_paths(tmp_path, ["app"]) == [(tmp_path / "app").resolve()]


def test_resolve_fallback(tmp_path):
    (tmp_path / "tests").mkdir()
    assert resolve_watch_paths(tmp_path, []) == [(tmp_path / "tests").resolve()]


def test_command(tmp_path):
    watcher = FileWatcher(tmp_path, noop())
    argv = watcher.command([tmp_path])
    assert argv[0] == "inotifywait"
    assert "-m" in argv and "-r" in argv
    assert argv[-1] == str(tmp_path)


def test_matches_extensions(tmp_path):
    watcher = FileWatcher(tmp_path, noop(), extensions=[".php"])
    assert watcher.matches("MODIFY /app/src/Foo.php")
    assert watcher.matches("CLOSE_WRITE,CLOSE /app/src/Foo.PHP\n")
    assert not watcher.matches("MODIFY /app/src/notes.txt")
    assert not watcher.matches("0")
    assert not watcher.matches("")


def test_debounce_triggers_once(tmp_path):
    calls = []

    async def on_change():
        calls.append(1)

    async def scenario():
        watcher = FileWatcher(tmp_path, on_change, debounce_sec=0.05)
        assert watcher.feed_line("MODIFY /app/src/A.php")
        assert watcher.feed_line("MODIFY /app/src/B.php")
        assert not watcher.feed_line("MODIFY /app/README.md")
        await asyncio.sleep(0.2)
        await watcher.stop()

    asyncio.run(scenario())
    assert calls == [1]


def test_failing_callback_is_logged(tmp_path, caplog):
    async def on_change():
        raise RuntimeError("spawn broke")

    async def scenario():
        watcher = FileWatcher(tmp_path, on_change, debounce_sec=0.01)
        watcher.feed_line("MODIFY /app/src/A.php")
        await asyncio.sleep(0.1)
        await watcher.stop()

    asyncio.run(scenario())
    assert "Re-run after file change failed" in caplog.text


def test_start_without_binary(tmp_path, caplog):
    watcher = FileWatcher(tmp_path, noop(), binary="definitely-not-inotifywait")
    assert asyncio.run(watcher.start()) is False
    assert "not found" in caplog.text
