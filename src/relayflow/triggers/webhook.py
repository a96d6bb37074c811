"""Webhook ingress.

:meth:`WebhookGateway.handle` turns an inbound HTTP request into a run of
the pipeline registered under the webhook code. Checks run in order:

1. the code maps to an enabled webhook trigger of a PUBLISHED pipeline (404),
2. the per-pipeline rate limit (429),
3. authentication: ``none``, ``api-key``, ``hmac``, ``hmac-sha256`` or ``basic`` (401),
4. the idempotency key, when present or required (400 when missing),
5. the body: ``{"records": [...]}``, a JSON list, or one JSON object (400).

Lock contention surfaces as 409. An accepted request answers 202 with
the run id; a repeated idempotency key answers 202 with the original run
id and does not start another run.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from relayflow.config import WebhookSettings
from relayflow.errors import FatalConfigError, LifecycleGuardError, LockContentionError
from relayflow.pipeline.models import LifecycleState, Run, WebhookTrigger
from relayflow.triggers.secrets import SecretResolver

logger = logging.getLogger(__name__)


class RunStarter(Protocol):
    async def start(
        self,
        pipeline_code: str,
        trigger: str = "manual",
        seed_records: list[dict[str, Any]] | None = None,
        *,
        wait: bool = True,
        resume: bool = True,
    ) -> Run: ...


class PipelineStates(Protocol):
    def get(self, code: str) -> Any: ...


@dataclass
class WebhookResponse:
    status: int
    body: dict[str, Any] = field(default_factory=dict)


class IdempotencyCache:
    """Remembers idempotency keys for ``retention_ms``."""

    def __init__(self, retention_ms: int, clock: Callable[[], float] = time.time) -> None:
        self._retention = retention_ms / 1000.0
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        run_id, stored_at = entry
        if self._clock() - stored_at >= self._retention:
            del self._entries[key]
            return None
        return run_id

    def put(self, key: str, run_id: str) -> None:
        self._entries[key] = (run_id, self._clock())

    def sweep(self) -> int:
        now = self._clock()
        stale = [k for k, (_, at) in self._entries.items() if now - at >= self._retention]
        for key in stale:
            del self._entries[key]
        return len(stale)


class RateLimiter:
    """Sliding one-minute window per key."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}

    def allow(self, key: str, limit_per_minute: int) -> bool:
        now = self._clock()
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= 60.0:
            hits.popleft()
        if len(hits) >= limit_per_minute:
            return False
        hits.append(now)
        return True


def sign_body(secret: str, body: bytes) -> str:
    """Signature header value for *body*: ``sha256=<hex digest>``."""
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@dataclass
class _Registration:
    pipeline_code: str
    trigger: WebhookTrigger


class WebhookGateway:
    """Authenticates webhook requests and starts runs.

    Args:
        pipelines: Lifecycle view used to check the PUBLISHED state.
        starter: Starts runs (the run coordinator).
        secrets: Resolves ``secretRef`` values.
        settings: Header names, retention and default rate limit.
        clock: Wall clock in seconds.
    """

    def __init__(
        self,
        pipelines: PipelineStates,
        starter: RunStarter,
        secrets: SecretResolver | None = None,
        settings: WebhookSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pipelines = pipelines
        self._starter = starter
        self._secrets = secrets or SecretResolver()
        self._settings = settings or WebhookSettings()
        self._idempotency = IdempotencyCache(self._settings.idempotency_retention_ms, clock)
        self._limiter = RateLimiter(clock)
        self._routes: dict[str, _Registration] = {}

    @property
    def settings(self) -> WebhookSettings:
        return self._settings

    @settings.setter
    def settings(self, settings: WebhookSettings) -> None:
        """Header names and rate limits apply to the next request."""
        self._settings = settings

    def register(self, pipeline_code: str, trigger: WebhookTrigger) -> str:
        code = trigger.code or pipeline_code
        self._routes[code] = _Registration(pipeline_code, trigger)
        logger.info("Webhook '%s' routes to pipeline '%s'", code, pipeline_code)
        return code

    def unregister(self, pipeline_code: str) -> int:
        doomed = [c for c, r in self._routes.items() if r.pipeline_code == pipeline_code]
        for code in doomed:
            del self._routes[code]
        return len(doomed)

    def codes(self) -> list[str]:
        return sorted(self._routes)

    def sweep(self) -> int:
        """Drop idempotency keys past their retention window."""
        return self._idempotency.sweep()

    async def handle(
        self, code: str, headers: Mapping[str, str], body: bytes
    ) -> WebhookResponse:
        headers = {k.lower(): v for k, v in headers.items()}
        registration = self._routes.get(code)
        if registration is None or not registration.trigger.enabled:
            return WebhookResponse(404, {"error": f"No webhook '{code}'"})
        pipeline_code = registration.pipeline_code
        trigger = registration.trigger
        record = self._pipelines.get(pipeline_code)
        if record is None or record.state != LifecycleState.PUBLISHED:
            return WebhookResponse(404, {"error": f"Pipeline '{pipeline_code}' is not published"})

        limit = trigger.rate_limit_per_minute or self._settings.rate_limit_per_minute
        if not self._limiter.allow(pipeline_code, limit):
            logger.info("Webhook '%s' rate limited (%d/min)", code, limit)
            return WebhookResponse(429, {"error": "Rate limit exceeded"})

        try:
            authorized = self._authenticate(trigger, headers, body)
        except FatalConfigError as exc:
            logger.error("Webhook '%s' misconfigured: %s", code, exc)
            return WebhookResponse(500, {"error": "Webhook authentication is misconfigured"})
        if not authorized:
            logger.warning("Webhook '%s' rejected: authentication failed", code)
            return WebhookResponse(401, {"error": "Unauthorized"})

        key = headers.get(self._settings.idempotency_header.lower())
        if not key and trigger.idempotency_key_required:
            return WebhookResponse(
                400, {"error": f"Missing {self._settings.idempotency_header} header"}
            )
        scoped_key = f"{pipeline_code}:{key}" if key else None
        if scoped_key:
            original = self._idempotency.get(scoped_key)
            if original is not None:
                logger.info("Duplicate webhook delivery '%s' -> run %s", key, original)
                return WebhookResponse(
                    202, {"accepted": True, "runId": original, "duplicate": True}
                )

        try:
            records = parse_records(body)
        except ValueError as exc:
            return WebhookResponse(400, {"error": str(exc)})

        try:
            run = await self._starter.start(
                pipeline_code,
                trigger=f"webhook:{trigger.key}",
                seed_records=records,
                wait=False,
            )
        except LockContentionError as exc:
            logger.info("Webhook '%s' skipped: %s", code, exc)
            return WebhookResponse(409, {"error": str(exc)})
        except LifecycleGuardError as exc:
            return WebhookResponse(404, {"error": str(exc)})

        if scoped_key:
            self._idempotency.put(scoped_key, run.id)
        return WebhookResponse(202, {"accepted": True, "runId": run.id})

    def _authenticate(
        self, trigger: WebhookTrigger, headers: Mapping[str, str], body: bytes
    ) -> bool:
        auth = (trigger.auth_type or "none").lower()
        if auth == "none":
            return True
        secret = self._secrets.resolve(trigger.secret_ref)
        if auth == "api-key":
            supplied = headers.get(self._settings.api_key_header.lower(), "")
            return hmac.compare_digest(supplied.encode(), secret.encode())
        if auth in ("hmac", "hmac-sha256"):
            header = (trigger.signature_header or self._settings.signature_header).lower()
            supplied = headers.get(header, "")
            if not supplied.startswith("sha256="):
                supplied = "sha256=" + supplied
            return hmac.compare_digest(supplied.encode(), sign_body(secret, body).encode())
        if auth == "basic":
            value = headers.get("authorization", "")
            scheme, _, encoded = value.partition(" ")
            if scheme.lower() != "basic":
                return False
            try:
                decoded = base64.b64decode(encoded, validate=True).decode()
            except (binascii.Error, UnicodeDecodeError):
                return False
            return hmac.compare_digest(decoded.encode(), secret.encode())
        logger.error("Unknown webhook auth type '%s'", trigger.auth_type)
        return False


def parse_records(body: bytes) -> list[dict[str, Any]]:
    """Decode a webhook body into seed records.

    Raises:
        ValueError: If the body is not JSON or has an unsupported shape.
    """
    if not body.strip():
        return []
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"Body is not valid JSON: {exc}") from exc
    if isinstance(payload, dict) and isinstance(payload.get("records"), list):
        payload = payload["records"]
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list) and all(isinstance(r, dict) for r in payload):
        return payload
    raise ValueError("Body must be an object, a list of objects, or {\"records\": [...]}")
