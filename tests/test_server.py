"""Tests for the HTTP control server."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from relayflow.engine import Engine
from relayflow.pipeline.models import PipelineDefinition, RunStatus
from relayflow.server import ControlServer

MakeDefinition = Callable[..., PipelineDefinition]

DOT = """\
digraph orders {
    extract [type="extract" adapter="memory-extract" config="{\\"records\\": [{\\"id\\": 1}]}"]
    load [type="load" adapter="memory-load" config="{\\"target\\": \\"orders\\"}"]
    extract -> load
}
"""


async def send_request(
    server: ControlServer,
    method: str,
    path: str,
    body: str = "",
    headers: dict[str, str] | None = None,
) -> tuple[int, dict[str, Any]]:
    """Send one request over a real TCP connection; return (status, json)."""
    reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
    body_bytes = body.encode("utf-8")
    extra = "".join(f"{k}: {v}\r\n" for k, v in (headers or {}).items())
    request = (
        f"{method} {path} HTTP/1.1\r\n"
        f"Host: 127.0.0.1\r\n"
        f"Content-Length: {len(body_bytes)}\r\n"
        f"Content-Type: application/json\r\n"
        f"{extra}"
        f"\r\n"
    )
    writer.write(request.encode("utf-8") + body_bytes)
    await writer.drain()

    response = (await asyncio.wait_for(reader.read(65536), timeout=5.0)).decode("utf-8")
    writer.close()
    await writer.wait_closed()

    status_code = int(response.split("\r\n")[0].split(" ")[1])
    return status_code, json.loads(response.split("\r\n\r\n", 1)[1])


@pytest.fixture
async def server(engine: Engine) -> AsyncIterator[ControlServer]:
    """A control server bound to a free port."""
    srv = ControlServer(engine, host="127.0.0.1", port=0)
    await srv.start()
    yield srv
    await srv.stop()


def _gated(make_definition: MakeDefinition, step_dicts: Any) -> PipelineDefinition:
    return make_definition(
        steps=[
            step_dicts.extract([{"id": 1}]),
            {"key": "gate", "type": "gate"},
            step_dicts.load("orders"),
        ],
        edges=[{"from": "extract", "to": "gate"}, {"from": "gate", "to": "load"}],
    )


class TestHealth:
    async def test_health(self, server: ControlServer) -> None:
        status, body = await send_request(server, "GET", "/health")
        assert status == 200
        assert body == {"status": "ok", "configVersion": 1, "activeRuns": 0}

    async def test_config_reload_bumps_version(self, server: ControlServer) -> None:
        status, body = await send_request(server, "POST", "/config/reload")
        assert status == 200
        assert body == {"configVersion": 2}

        _, health = await send_request(server, "GET", "/health")
        assert health["configVersion"] == 2

    async def test_unknown_route(self, server: ControlServer) -> None:
        status, body = await send_request(server, "GET", "/nowhere")
        assert status == 404
        assert "Not found" in body["error"]


class TestRuns:
    async def test_start_and_poll_run(
        self, server: ControlServer, engine: Engine, make_definition: MakeDefinition
    ) -> None:
        await engine.deploy(make_definition())

        status, body = await send_request(server, "POST", "/pipelines/orders/runs", "{}")
        assert status == 202
        await engine.coordinator.join(body["id"])

        status, run = await send_request(server, "GET", f"/runs/{body['id']}")
        assert status == 200
        assert run["status"] == RunStatus.SUCCEEDED.value
        assert run["trigger"] == "api"

    async def test_unpublished_pipeline_conflicts(
        self, server: ControlServer, engine: Engine, make_definition: MakeDefinition
    ) -> None:
        await engine.lifecycle.create(make_definition())
        status, body = await send_request(server, "POST", "/pipelines/orders/runs")
        assert status == 409
        assert "only PUBLISHED pipelines run" in body["error"]

    async def test_unknown_pipeline_and_run(self, server: ControlServer) -> None:
        assert (await send_request(server, "POST", "/pipelines/nope/runs"))[0] == 404
        assert (await send_request(server, "GET", "/runs/run-missing"))[0] == 404

    async def test_invalid_body(self, server: ControlServer) -> None:
        status, _ = await send_request(server, "POST", "/pipelines/orders/runs", "not json")
        assert status == 400
        status, body = await send_request(
            server, "POST", "/pipelines/orders/runs", json.dumps({"records": "x"})
        )
        assert status == 400
        assert body["error"] == "'records' must be a list"


class TestGatesAndRetries:
    async def test_approve_gate(
        self,
        server: ControlServer,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
    ) -> None:
        await engine.deploy(_gated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")

        status, body = await send_request(server, "POST", f"/runs/{run.id}/gates/gate/approve")
        assert status == 202
        finished = await engine.coordinator.join(run.id)
        assert finished.status == RunStatus.SUCCEEDED

    async def test_reject_gate(
        self,
        server: ControlServer,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
    ) -> None:
        await engine.deploy(_gated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")

        status, body = await send_request(
            server,
            "POST",
            f"/runs/{run.id}/gates/gate/reject",
            json.dumps({"reason": "wrong totals"}),
        )
        assert status == 200
        assert body["status"] == RunStatus.FAILED.value
        assert engine.coordinator.get_run(run.id).error == "Gate 'gate' rejected: wrong totals"

    async def test_wrong_gate_conflicts(
        self,
        server: ControlServer,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
    ) -> None:
        await engine.deploy(_gated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")
        status, _ = await send_request(server, "POST", f"/runs/{run.id}/gates/other/approve")
        assert status == 409

    async def test_cancel(
        self,
        server: ControlServer,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
    ) -> None:
        await engine.deploy(_gated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")
        status, body = await send_request(server, "POST", f"/runs/{run.id}/cancel")
        assert status == 200
        assert body["status"] == RunStatus.CANCELLED.value

    async def test_retry_requires_confirmation(
        self,
        server: ControlServer,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
    ) -> None:
        definition = make_definition(
            steps=[
                step_dicts.extract([{"id": 1}]),
                {
                    "key": "check",
                    "type": "validate",
                    "adapterCode": "required-fields",
                    "config": {"fields": ["email"]},
                },
                step_dicts.load("orders"),
            ],
            edges=[{"from": "extract", "to": "check"}, {"from": "check", "to": "load"}],
        )
        await engine.deploy(definition)
        run = await engine.coordinator.start("orders")
        error = engine.store.list_errors(run_id=run.id)[0]
        path = f"/errors/{error.id}/retry"
        patch = {"patch": {"email": "a@b"}}

        status, _ = await send_request(server, "POST", path, json.dumps(patch))
        assert status == 409

        status, body = await send_request(server, "POST", path, json.dumps({**patch, "confirm": True}))
        assert status == 202
        await engine.coordinator.join(body["id"])
        assert engine.store.get_error(error.id).resolved is True

        status, body = await send_request(server, "POST", path, json.dumps({"confirm": True}))
        assert status == 200
        assert body == {"errorId": error.id, "resolved": True}


class TestWebhookAndValidate:
    async def test_webhook_route(
        self, server: ControlServer, engine: Engine, make_definition: MakeDefinition, step_dicts: Any
    ) -> None:
        definition = make_definition(
            steps=[
                {"key": "seed", "type": "extract", "adapterCode": "seed-extract"},
                step_dicts.load("orders"),
            ],
            edges=[{"from": "seed", "to": "load"}],
            triggers=[{"key": "inbound", "type": "webhook", "code": "orders-in"}],
        )
        await engine.deploy(definition)

        status, body = await send_request(
            server,
            "POST",
            "/webhook/orders-in",
            json.dumps([{"id": 5}]),
            headers={"X-Idempotency-Key": "evt-1"},
        )
        assert status == 202
        run = await engine.coordinator.join(body["runId"])
        assert run.trigger == "webhook:inbound"

        status, again = await send_request(
            server,
            "POST",
            "/webhook/orders-in",
            json.dumps([{"id": 5}]),
            headers={"X-Idempotency-Key": "evt-1"},
        )
        assert status == 202
        assert again["runId"] == body["runId"]

    async def test_validate_definition(
        self, server: ControlServer, make_definition: MakeDefinition
    ) -> None:
        payload = {"definition": make_definition().to_dict()}
        status, body = await send_request(server, "POST", "/validate", json.dumps(payload))
        assert status == 200
        assert body["valid"] is True
        assert body["code"] == "orders"

    async def test_validate_dot(self, server: ControlServer) -> None:
        status, body = await send_request(server, "POST", "/validate", json.dumps({"dot": DOT}))
        assert status == 200
        assert body["valid"] is True

    async def test_validate_reports_issues(self, server: ControlServer) -> None:
        broken = {
            "code": "broken",
            "steps": [{"key": "a", "type": "transform", "adapterCode": "field-map"}],
            "edges": [{"from": "a", "to": "a"}],
        }
        status, body = await send_request(
            server, "POST", "/validate", json.dumps({"definition": broken})
        )
        assert status == 200
        assert body["valid"] is False
        assert "cycle" in {i["reason"] for i in body["issues"]}

    async def test_validate_needs_input(self, server: ControlServer) -> None:
        status, _ = await send_request(server, "POST", "/validate", "{}")
        assert status == 400
