"""End-to-end tests for the HTTP + websocket API (aiohttp test client, fake runner)."""

from __future__ import annotations

import asyncio
import json

from aiohttp.test_utils import TestClient, TestServer

from runhub import __version__
from runhub.api import HubServer

from conftest import fake_runner_config, wait_until


def with_client(config, scenario):
    async def _run():
        server = HubServer(config)
        async with TestClient(TestServer(server.app)) as client:
            return await scenario(server, client)

    return asyncio.run(_run())


async def receive_until_exit(ws, run_id):
    messages = []
    while True:
        msg = await ws.receive_json(timeout=10)
        messages.append(msg)
        if msg["type"] == "exit" and msg["runId"] == run_id:
            return messages


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_healthz():
    async def scenario(server, client):
        resp = await client.get("/healthz")
        return resp.status, await resp.json()

    status, body = with_client(fake_runner_config(), scenario)
    assert status == 200
    assert body["ok"] is True
    assert body["version"] == __version__
    assert body["running"] == 0
    assert body["viewers"] == 0


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

def test_run_streams_to_viewer_and_records_state():
    async def scenario(server, client):
        ws = await client.ws_connect("/ws/status")
        await wait_until(lambda: server.hub.viewer_count == 1)

        resp = await client.post("/api/run", json={"filters": [], "contextId": "global"})
        assert resp.status == 202
        run_id = (await resp.json())["runId"]
        messages = await receive_until_exit(ws, run_id)

        state = await (await client.get(f"/api/runs/{run_id}")).json()
        failed = await (await client.get(f"/api/runs/{run_id}/failed")).json()
        runs = await (await client.get("/api/runs")).json()
        await ws.close()
        return run_id, messages, state, failed, runs

    run_id, messages, state, failed, runs = with_client(fake_runner_config(), scenario)

    assert messages[0] == {"type": "start", "runId": run_id, "contextId": "global"}
    assert [m["type"] for m in messages[1:-1]] == ["realtime"] * 8
    assert messages[-1]["exitCode"] == 0
    assert json.loads(messages[1]["data"])["event"] == "suite.started"

    assert state["status"] == "finished"
    assert state["failedTestIds"] == ["S::T1"]
    assert state["suites"]["S"]["failed"] == 1
    assert state["suites"]["S"]["tests"]["S::T1"]["message"] == "boom"
    assert failed == {"ok": True, "runId": run_id, "failedTestIds": ["S::T1"]}
    assert runs["running"] == []
    assert runs["history"][0]["runId"] == run_id
    assert runs["history"][0]["result"] == "failed"


def test_run_without_body():
    async def scenario(server, client):
        resp = await client.post("/api/run")
        body = await resp.json()
        await server.supervisor.get(body["runId"]).wait()
        return resp.status, body

    status, body = with_client(fake_runner_config(), scenario)
    assert status == 202
    assert body["ok"] is True


def test_run_failed_flow():
    async def scenario(server, client):
        empty = await client.post("/api/run-failed")
        empty_body = await empty.json()

        first = (await (await client.post("/api/run", json={})).json())["runId"]
        await server.supervisor.get(first).wait()

        resp = await client.post("/api/run-failed")
        second = (await resp.json())["runId"]
        await server.supervisor.get(second).wait()
        return empty.status, empty_body, resp.status, server.registry.get(second)

    empty_status, empty_body, status, record = with_client(fake_runner_config(), scenario)
    assert empty_status == 400
    assert empty_body == {
        "ok": False, "error": "No failed tests to run.", "error_class": "NOTHING_TO_RUN",
    }
    assert status == 202
    assert record.context.filters == ("S::T1",)
    assert record.context.context_id == "failed"


def test_spawn_failure_is_500():
    config = fake_runner_config()
    config.runner_argv = ["/nonexistent/phpunit"]

    async def scenario(server, client):
        resp = await client.post("/api/run", json={})
        return resp.status, await resp.json()

    status, body = with_client(config, scenario)
    assert status == 500
    assert body["error_class"] == "SPAWN_FAILED"


def test_invalid_json_body():
    async def scenario(server, client):
        bad = await client.post("/api/run", data="{nope", headers={"Content-Type": "application/json"})
        wrong = await client.post("/api/run", json={"filters": "S::T1"})
        return bad.status, await bad.json(), wrong.status, await wrong.json()

    bad_status, bad_body, wrong_status, wrong_body = with_client(fake_runner_config(), scenario)
    assert bad_status == 400
    assert bad_body["error_class"] == "INVALID_REQUEST"
    assert wrong_status == 400
    assert wrong_body["error_class"] == "INVALID_REQUEST"


def test_unknown_run_state_is_404():
    async def scenario(server, client):
        state = await client.get("/api/runs/missing")
        failed = await client.get("/api/runs/missing/failed")
        return state.status, failed.status, await failed.json()

    state_status, failed_status, body = with_client(fake_runner_config(), scenario)
    assert state_status == 404
    assert failed_status == 404
    assert body["error"] == "No test run found with ID missing."


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------

def test_stop_without_runs():
    async def scenario(server, client):
        resp = await client.post("/api/stop")
        return resp.status, await resp.json()

    status, body = with_client(fake_runner_config(), scenario)
    assert status == 400
    assert body == {
        "ok": False, "error": "No test run in progress.", "error_class": "NO_RUN_IN_PROGRESS",
    }


def test_stop_single_unknown():
    async def scenario(server, client):
        resp = await client.post("/api/stop-single-test/X")
        return resp.status, await resp.json()

    status, body = with_client(fake_runner_config(), scenario)
    assert status == 404
    assert body["error"] == "No test run found with ID X."


def test_stop_running_run():
    async def scenario(server, client):
        ws = await client.ws_connect("/ws/status")
        await wait_until(lambda: server.hub.viewer_count == 1)
        run_id = (await (await client.post("/api/run", json={})).json())["runId"]
        await wait_until(lambda: "S" in server.registry.get(run_id).suites)

        resp = await client.post(f"/api/stop-single-test/{run_id}")
        body = await resp.json()
        messages = await receive_until_exit(ws, run_id)
        await ws.close()
        return run_id, resp.status, body, messages, server.registry.get(run_id)

    run_id, status, body, messages, record = with_client(
        fake_runner_config("sleep"), scenario
    )
    assert status == 202
    assert body == {"ok": True, "stopped": [run_id]}
    types = [m["type"] for m in messages]
    assert "stopped" in types
    assert types.index("stopped") < types.index("exit")
    assert record.status.value == "stopped"


def test_run_limit_is_429():
    config = fake_runner_config("sleep", max_concurrent_runs=1)

    async def scenario(server, client):
        first = await client.post("/api/run", json={})
        second = await client.post("/api/run", json={})
        return first.status, second.status, await second.json()

    first, second, body = with_client(config, scenario)
    assert first == 202
    assert second == 429
    assert body["error_class"] == "RUN_LIMIT_EXCEEDED"
