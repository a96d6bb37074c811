"""Tests for webhook ingress."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any

import pytest

from relayflow.config import WebhookSettings
from relayflow.errors import LockContentionError
from relayflow.pipeline.models import LifecycleState, Run, WebhookTrigger
from relayflow.triggers.secrets import SecretResolver, secret_env_name
from relayflow.triggers.webhook import (
    IdempotencyCache,
    RateLimiter,
    WebhookGateway,
    parse_records,
    sign_body,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


@dataclass
class FakeRecord:
    state: LifecycleState = LifecycleState.PUBLISHED


class FakePipelines:
    def __init__(self) -> None:
        self.records = {"orders": FakeRecord()}

    def get(self, code: str) -> Any:
        return self.records.get(code)


class FakeStarter:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.error: Exception | None = None

    async def start(
        self,
        pipeline_code: str,
        trigger: str = "manual",
        seed_records: list[dict[str, Any]] | None = None,
        *,
        wait: bool = True,
        resume: bool = True,
    ) -> Run:
        if self.error is not None:
            raise self.error
        self.calls.append({"code": pipeline_code, "trigger": trigger, "seed": seed_records})
        return Run(id=f"run-{len(self.calls)}", pipeline_code=pipeline_code, trigger=trigger)


@pytest.fixture()
def starter() -> FakeStarter:
    return FakeStarter()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


def _gateway(
    starter: FakeStarter, clock: FakeClock, trigger: WebhookTrigger
) -> tuple[WebhookGateway, FakePipelines]:
    pipelines = FakePipelines()
    secrets = SecretResolver({"orders/key": "s3cret", "orders/basic": "user:pw"}, env={})
    gateway = WebhookGateway(pipelines, starter, secrets, WebhookSettings(), clock=clock)
    gateway.register("orders", trigger)
    return gateway, pipelines


BODY = json.dumps({"records": [{"id": 1}, {"id": 2}]}).encode()


class TestRouting:
    async def test_accepts_and_starts_run(self, starter: FakeStarter, clock: FakeClock) -> None:
        gateway, _ = _gateway(starter, clock, WebhookTrigger(key="inbound", code="orders-in"))

        response = await gateway.handle("orders-in", {}, BODY)

        assert response.status == 202
        assert response.body == {"accepted": True, "runId": "run-1"}
        assert starter.calls == [
            {"code": "orders", "trigger": "webhook:inbound", "seed": [{"id": 1}, {"id": 2}]}
        ]

    async def test_code_defaults_to_pipeline(
        self, starter: FakeStarter, clock: FakeClock
    ) -> None:
        gateway, _ = _gateway(starter, clock, WebhookTrigger(key="inbound"))
        assert gateway.codes() == ["orders"]

    async def test_unknown_code(self, starter: FakeStarter, clock: FakeClock) -> None:
        gateway, _ = _gateway(starter, clock, WebhookTrigger(key="inbound"))
        assert (await gateway.handle("nope", {}, BODY)).status == 404

    async def test_unpublished_pipeline(self, starter: FakeStarter, clock: FakeClock) -> None:
        gateway, pipelines = _gateway(starter, clock, WebhookTrigger(key="inbound"))
        pipelines.records["orders"].state = LifecycleState.ARCHIVED
        assert (await gateway.handle("orders", {}, BODY)).status == 404
        assert starter.calls == []

    async def test_lock_contention_is_409(self, starter: FakeStarter, clock: FakeClock) -> None:
        gateway, _ = _gateway(starter, clock, WebhookTrigger(key="inbound"))
        starter.error = LockContentionError("pipeline:orders", "instance-x")
        assert (await gateway.handle("orders", {}, BODY)).status == 409

    async def test_bad_body_is_400(self, starter: FakeStarter, clock: FakeClock) -> None:
        gateway, _ = _gateway(starter, clock, WebhookTrigger(key="inbound"))
        response = await gateway.handle("orders", {}, b"{not json")
        assert response.status == 400
        assert "not valid JSON" in response.body["error"]


class TestAuthentication:
    async def test_api_key(self, starter: FakeStarter, clock: FakeClock) -> None:
        trigger = WebhookTrigger(key="inbound", auth_type="api-key", secret_ref="orders/key")
        gateway, _ = _gateway(starter, clock, trigger)

        assert (await gateway.handle("orders", {"X-API-Key": "wrong"}, BODY)).status == 401
        assert (await gateway.handle("orders", {"X-API-Key": "s3cret"}, BODY)).status == 202

    @pytest.mark.parametrize("auth_type", ["hmac", "hmac-sha256"])
    async def test_hmac_signature(
        self, starter: FakeStarter, clock: FakeClock, auth_type: str
    ) -> None:
        trigger = WebhookTrigger(key="inbound", auth_type=auth_type, secret_ref="orders/key")
        gateway, _ = _gateway(starter, clock, trigger)
        signature = sign_body("s3cret", BODY)

        ok = await gateway.handle("orders", {"X-Relayflow-Signature": signature}, BODY)
        bare = await gateway.handle(
            "orders", {"x-relayflow-signature": signature.removeprefix("sha256=")}, BODY
        )
        tampered = await gateway.handle(
            "orders", {"x-relayflow-signature": signature}, BODY + b" "
        )

        assert ok.status == 202
        assert bare.status == 202
        assert tampered.status == 401

    async def test_custom_signature_header(
        self, starter: FakeStarter, clock: FakeClock
    ) -> None:
        trigger = WebhookTrigger(
            key="inbound",
            auth_type="hmac",
            secret_ref="orders/key",
            signature_header="X-Hub-Signature-256",
        )
        gateway, _ = _gateway(starter, clock, trigger)
        headers = {"X-Hub-Signature-256": sign_body("s3cret", BODY)}
        assert (await gateway.handle("orders", headers, BODY)).status == 202

    async def test_basic(self, starter: FakeStarter, clock: FakeClock) -> None:
        trigger = WebhookTrigger(key="inbound", auth_type="basic", secret_ref="orders/basic")
        gateway, _ = _gateway(starter, clock, trigger)
        token = base64.b64encode(b"user:pw").decode()

        assert (await gateway.handle("orders", {"Authorization": f"Basic {token}"}, BODY)).status == 202
        assert (await gateway.handle("orders", {"Authorization": "Basic !!"}, BODY)).status == 401
        assert (await gateway.handle("orders", {"Authorization": f"Bearer {token}"}, BODY)).status == 401

    async def test_missing_secret_is_500(self, starter: FakeStarter, clock: FakeClock) -> None:
        trigger = WebhookTrigger(key="inbound", auth_type="api-key", secret_ref="missing")
        gateway, _ = _gateway(starter, clock, trigger)
        assert (await gateway.handle("orders", {"x-api-key": "x"}, BODY)).status == 500


class TestIdempotencyAndLimits:
    async def test_duplicate_delivery_returns_original_run(
        self, starter: FakeStarter, clock: FakeClock
    ) -> None:
        gateway, _ = _gateway(starter, clock, WebhookTrigger(key="inbound"))
        headers = {"X-Idempotency-Key": "evt-1"}

        first = await gateway.handle("orders", headers, BODY)
        second = await gateway.handle("orders", headers, BODY)

        assert first.body["runId"] == second.body["runId"] == "run-1"
        assert second.body["duplicate"] is True
        assert len(starter.calls) == 1

    async def test_key_expires_after_retention(
        self, starter: FakeStarter, clock: FakeClock
    ) -> None:
        gateway, _ = _gateway(starter, clock, WebhookTrigger(key="inbound"))
        headers = {"X-Idempotency-Key": "evt-1"}
        await gateway.handle("orders", headers, BODY)

        clock.now += WebhookSettings().idempotency_retention_ms / 1000.0
        assert gateway.sweep() == 1
        await gateway.handle("orders", headers, BODY)
        assert len(starter.calls) == 2

    async def test_required_key_missing(self, starter: FakeStarter, clock: FakeClock) -> None:
        trigger = WebhookTrigger(key="inbound", idempotency_key_required=True)
        gateway, _ = _gateway(starter, clock, trigger)
        response = await gateway.handle("orders", {}, BODY)
        assert response.status == 400
        assert "x-idempotency-key" in response.body["error"]

    async def test_rate_limit(self, starter: FakeStarter, clock: FakeClock) -> None:
        trigger = WebhookTrigger(key="inbound", rate_limit_per_minute=2)
        gateway, _ = _gateway(starter, clock, trigger)

        statuses = [(await gateway.handle("orders", {}, BODY)).status for _ in range(3)]
        assert statuses == [202, 202, 429]

        clock.now += 60
        assert (await gateway.handle("orders", {}, BODY)).status == 202


class TestHelpers:
    def test_parse_records_shapes(self) -> None:
        assert parse_records(b"") == []
        assert parse_records(b'{"id": 1}') == [{"id": 1}]
        assert parse_records(b'[{"id": 1}, {"id": 2}]') == [{"id": 1}, {"id": 2}]
        assert parse_records(b'{"records": [{"id": 3}]}') == [{"id": 3}]
        with pytest.raises(ValueError):
            parse_records(b"[1, 2]")

    def test_idempotency_cache(self) -> None:
        clock = FakeClock()
        cache = IdempotencyCache(1000, clock)
        cache.put("k", "run-1")
        assert cache.get("k") == "run-1"
        clock.now += 1
        assert cache.get("k") is None

    def test_rate_limiter_is_per_key(self) -> None:
        limiter = RateLimiter(FakeClock())
        assert limiter.allow("a", 1)
        assert not limiter.allow("a", 1)
        assert limiter.allow("b", 1)

    def test_secret_env_fallback(self) -> None:
        env = {secret_env_name("orders/webhook-key"): "from-env"}
        assert secret_env_name("orders/webhook-key") == "RELAYFLOW_SECRET_ORDERS_WEBHOOK_KEY"
        assert SecretResolver(env=env).resolve("orders/webhook-key") == "from-env"
