"""Shared helpers: a recording viewer, the fake runner, a polling wait."""

from __future__ import annotations

import asyncio
import json
import os
import sys

import pytest

from runhub.config import HubConfig
from runhub.hub import BroadcastHub
from runhub.registry import RunRegistry
from runhub.supervisor import RunSupervisor

FAKE_RUNNER = os.path.join(os.path.dirname(__file__), "fixtures", "fake_runner.py")


class RecordingViewer:
    def __init__(self):
        self.sent: list[str] = []
        self.closed = False

    async def send_str(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    @property
    def messages(self) -> list[dict]:
        return [json.loads(s) for s in self.sent]

    def of_type(self, type_: str) -> list[dict]:
        return [m for m in self.messages if m["type"] == type_]


class BrokenViewer(RecordingViewer):
    async def send_str(self, data: str) -> None:
        raise ConnectionResetError("viewer went away")


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def fake_runner_config(mode: str = "scenario", **kwargs) -> HubConfig:
    env = {"FAKE_RUNNER_MODE": mode, **kwargs.pop("env", {})}
    return HubConfig(runner_argv=[sys.executable, FAKE_RUNNER], env=env, **kwargs)


@pytest.fixture
def registry():
    return RunRegistry()


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def make_supervisor(registry, hub):
    def _make(mode: str = "scenario", **kwargs) -> RunSupervisor:
        return RunSupervisor(fake_runner_config(mode, **kwargs), registry, hub)

    return _make
