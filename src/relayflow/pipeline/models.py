"""Pipeline data models.

Defines the definition document structures (steps, edges, triggers,
settings) and the persisted execution records (runs, errors, retry
audits, dead letters, revisions) used throughout the engine.

Definition documents use camelCase keys on the wire; the dataclasses
use snake_case attributes and convert in ``from_dict``/``to_dict``.
"""

from __future__ import annotations

import copy
import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any


def new_id(prefix: str) -> str:
    """Return a short unique identifier such as ``run-3f9c0a1b2d4e``."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class StepType(str, enum.Enum):
    """Kinds of pipeline step."""

    EXTRACT = "extract"
    TRANSFORM = "transform"
    VALIDATE = "validate"
    ENRICH = "enrich"
    ROUTE = "route"
    LOAD = "load"
    FEED = "feed"
    EXPORT = "export"
    SINK = "sink"
    GATE = "gate"


TERMINAL_STEP_TYPES = frozenset(
    {StepType.LOAD, StepType.FEED, StepType.EXPORT, StepType.SINK}
)

# Step types the executor evaluates itself; an adapter is optional.
CONTROL_STEP_TYPES = frozenset({StepType.ROUTE, StepType.GATE})


@dataclass
class Step:
    """A single step in a pipeline definition.

    Attributes:
        key: Unique identifier within the definition.
        type: Step category.
        adapter_code: Capability registry key used to dispatch the step.
        config: Adapter- or step-specific configuration.
        name: Human-readable label.
    """

    key: str
    type: StepType
    adapter_code: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    name: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_STEP_TYPES

    @property
    def connection_code(self) -> str:
        return str(self.config.get("connectionCode", "") or "")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "type": self.type.value,
            "adapterCode": self.adapter_code,
            "config": copy.deepcopy(self.config),
        }
        if self.name:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Step:
        return cls(
            key=str(data.get("key", "")),
            type=StepType(data.get("type", "transform")),
            adapter_code=str(data.get("adapterCode", "") or ""),
            config=copy.deepcopy(data.get("config") or {}),
            name=str(data.get("name", "") or ""),
        )


@dataclass
class Edge:
    """A directed edge between two steps.

    Attributes:
        source: Key of the upstream step.
        target: Key of the downstream step.
        label: Branch label; required on edges leaving a route step.
    """

    source: str
    target: str
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"from": self.source, "to": self.target}
        if self.label is not None:
            data["label"] = self.label
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Edge:
        return cls(
            source=str(data.get("from", data.get("source", ""))),
            target=str(data.get("to", data.get("target", ""))),
            label=data.get("label") or data.get("branch"),
        )


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class TriggerType(str, enum.Enum):
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    EVENT = "event"
    FILE = "file"
    MESSAGE = "message"
    MANUAL = "manual"


class AckMode(str, enum.Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


@dataclass
class Trigger:
    """Base trigger. Concrete variants add their own fields."""

    key: str
    enabled: bool = True

    type: TriggerType = field(default=TriggerType.MANUAL, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "type": self.type.value, "enabled": self.enabled}


@dataclass
class ManualTrigger(Trigger):
    type: TriggerType = field(default=TriggerType.MANUAL, init=False)


@dataclass
class ScheduleTrigger(Trigger):
    cron: str = ""
    timezone: str = "UTC"

    type: TriggerType = field(default=TriggerType.SCHEDULE, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "cron": self.cron, "timezone": self.timezone}


@dataclass
class WebhookTrigger(Trigger):
    code: str = ""
    auth_type: str = "none"
    secret_ref: str = ""
    signature_header: str = ""
    idempotency_key_required: bool = False
    rate_limit_per_minute: int | None = None

    type: TriggerType = field(default=TriggerType.WEBHOOK, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "code": self.code,
            "authType": self.auth_type,
            "secretRef": self.secret_ref,
            "signatureHeader": self.signature_header,
            "idempotencyKeyRequired": self.idempotency_key_required,
            "rateLimitPerMinute": self.rate_limit_per_minute,
        }


@dataclass
class EventTrigger(Trigger):
    event_type: str = ""

    type: TriggerType = field(default=TriggerType.EVENT, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "eventType": self.event_type}


@dataclass
class FileTrigger(Trigger):
    connection_ref: str = ""
    path_glob: str = "*"
    poll_interval_ms: int = 30_000

    type: TriggerType = field(default=TriggerType.FILE, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "connectionRef": self.connection_ref,
            "pathGlob": self.path_glob,
            "pollIntervalMs": self.poll_interval_ms,
        }


@dataclass
class MessageTrigger(Trigger):
    queue_type: str = "memory"
    connection_ref: str = ""
    queue_name: str = ""
    batch_size: int = 10
    ack_mode: AckMode = AckMode.MANUAL
    consumer_group: str = ""
    dead_letter_queue: str = ""
    max_retries: int = 3

    type: TriggerType = field(default=TriggerType.MESSAGE, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "queueType": self.queue_type,
            "connectionRef": self.connection_ref,
            "queueName": self.queue_name,
            "batchSize": self.batch_size,
            "ackMode": self.ack_mode.value,
            "consumerGroup": self.consumer_group,
            "deadLetterQueue": self.dead_letter_queue,
            "maxRetries": self.max_retries,
        }


def trigger_from_dict(data: dict[str, Any]) -> Trigger:
    """Build the concrete trigger variant named by ``data["type"]``.

    Raises:
        ValueError: If the trigger type is unknown.
    """
    ttype = TriggerType(str(data.get("type", "manual")).lower())
    key = str(data.get("key", "") or ttype.value)
    enabled = bool(data.get("enabled", True))

    if ttype == TriggerType.SCHEDULE:
        return ScheduleTrigger(
            key=key,
            enabled=enabled,
            cron=str(data.get("cron", "")),
            timezone=str(data.get("timezone", "UTC") or "UTC"),
        )
    if ttype == TriggerType.WEBHOOK:
        rate = data.get("rateLimitPerMinute")
        return WebhookTrigger(
            key=key,
            enabled=enabled,
            code=str(data.get("code", "")),
            auth_type=str(data.get("authType", "none") or "none").lower(),
            secret_ref=str(data.get("secretRef", "") or ""),
            signature_header=str(data.get("signatureHeader", "") or ""),
            idempotency_key_required=bool(data.get("idempotencyKeyRequired", False)),
            rate_limit_per_minute=int(rate) if rate is not None else None,
        )
    if ttype == TriggerType.EVENT:
        return EventTrigger(
            key=key, enabled=enabled, event_type=str(data.get("eventType", ""))
        )
    if ttype == TriggerType.FILE:
        return FileTrigger(
            key=key,
            enabled=enabled,
            connection_ref=str(data.get("connectionRef", "")),
            path_glob=str(data.get("pathGlob", "*") or "*"),
            poll_interval_ms=int(data.get("pollIntervalMs", 30_000)),
        )
    if ttype == TriggerType.MESSAGE:
        return MessageTrigger(
            key=key,
            enabled=enabled,
            queue_type=str(data.get("queueType", "memory") or "memory"),
            connection_ref=str(data.get("connectionRef", "") or ""),
            queue_name=str(data.get("queueName", "")),
            batch_size=int(data.get("batchSize", 10)),
            ack_mode=AckMode(str(data.get("ackMode", "MANUAL")).upper()),
            consumer_group=str(data.get("consumerGroup", "") or ""),
            dead_letter_queue=str(data.get("deadLetterQueue", "") or ""),
            max_retries=int(data.get("maxRetries", 3)),
        )
    return ManualTrigger(key=key, enabled=enabled)


# ---------------------------------------------------------------------------
# Execution settings
# ---------------------------------------------------------------------------


@dataclass
class RetryPolicy:
    """Per-step retry behaviour for adapter errors.

    Raises:
        ValueError: If any constraint is violated (negative retries,
            negative delay, non-positive multiplier, or max delay below
            the base delay).
    """

    max_retries: int = 3
    retry_delay_ms: int = 1000
    max_retry_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_delay_ms < 0:
            raise ValueError(f"retry_delay_ms must be >= 0, got {self.retry_delay_ms}")
        if self.backoff_multiplier <= 0:
            raise ValueError(
                f"backoff_multiplier must be > 0, got {self.backoff_multiplier}"
            )
        if self.max_retry_delay_ms < self.retry_delay_ms:
            raise ValueError(
                f"max_retry_delay_ms ({self.max_retry_delay_ms}) must be "
                f">= retry_delay_ms ({self.retry_delay_ms})"
            )

    def delay_for_attempt(self, attempt: int) -> int:
        """Backoff delay in milliseconds before retry number ``attempt``.

        Uses ``retry_delay_ms * backoff_multiplier^attempt`` capped at
        ``max_retry_delay_ms``.

        Args:
            attempt: Zero-based retry index.
        """
        delay = self.retry_delay_ms * (self.backoff_multiplier**attempt)
        return int(min(delay, self.max_retry_delay_ms))

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxRetries": self.max_retries,
            "retryDelayMs": self.retry_delay_ms,
            "maxRetryDelayMs": self.max_retry_delay_ms,
            "backoffMultiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        return cls(
            max_retries=int(data.get("maxRetries", 3)),
            retry_delay_ms=int(data.get("retryDelayMs", 1000)),
            max_retry_delay_ms=int(data.get("maxRetryDelayMs", 30_000)),
            backoff_multiplier=float(data.get("backoffMultiplier", 2.0)),
        )


class CheckpointStrategy(str, enum.Enum):
    COUNT = "COUNT"
    INTERVAL = "INTERVAL"
    TIMESTAMP = "TIMESTAMP"


@dataclass
class CheckpointPolicy:
    """When to persist the resume cursor.

    Attributes:
        enabled: Whether checkpoints are written at all.
        strategy: COUNT (every ``interval`` records), INTERVAL (every
            ``interval`` ms of wall time) or TIMESTAMP (by watermark).
        interval: Record count or milliseconds, depending on strategy.
        watermark_field: Record field holding the watermark (TIMESTAMP).
    """

    enabled: bool = False
    strategy: CheckpointStrategy = CheckpointStrategy.COUNT
    interval: int = 1000
    watermark_field: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "strategy": self.strategy.value,
            "interval": self.interval,
            "field": self.watermark_field,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointPolicy:
        return cls(
            enabled=bool(data.get("enabled", False)),
            strategy=CheckpointStrategy(str(data.get("strategy", "COUNT")).upper()),
            interval=int(data.get("interval", 1000)),
            watermark_field=str(data.get("field", "") or ""),
        )


@dataclass
class Throughput:
    batch_size: int = 1000
    rate_limit_rps: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"batchSize": self.batch_size, "rateLimitRps": self.rate_limit_rps}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Throughput:
        rps = data.get("rateLimitRps")
        return cls(
            batch_size=int(data.get("batchSize", 1000)),
            rate_limit_rps=float(rps) if rps else None,
        )


class ErrorPolicy(str, enum.Enum):
    """How parallel branches react to a failing step."""

    FAIL_FAST = "FAIL_FAST"
    CONTINUE = "CONTINUE"
    BEST_EFFORT = "BEST_EFFORT"


@dataclass
class ParallelExecution:
    enabled: bool = False
    max_concurrent_steps: int = 4
    error_policy: ErrorPolicy = ErrorPolicy.FAIL_FAST

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "maxConcurrentSteps": self.max_concurrent_steps,
            "errorPolicy": self.error_policy.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParallelExecution:
        return cls(
            enabled=bool(data.get("enabled", False)),
            max_concurrent_steps=int(data.get("maxConcurrentSteps", 4)),
            error_policy=ErrorPolicy(str(data.get("errorPolicy", "FAIL_FAST")).upper()),
        )


@dataclass
class Settings:
    """Execution settings attached to a definition."""

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    checkpoint: CheckpointPolicy = field(default_factory=CheckpointPolicy)
    throughput: Throughput = field(default_factory=Throughput)
    parallel: ParallelExecution = field(default_factory=ParallelExecution)
    dead_letter_queue: bool = False
    step_timeout_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "retryPolicy": self.retry.to_dict(),
            "checkpoint": self.checkpoint.to_dict(),
            "throughput": self.throughput.to_dict(),
            "parallelExecution": self.parallel.to_dict(),
            "deadLetterQueue": self.dead_letter_queue,
            "stepTimeoutMs": self.step_timeout_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        timeout = data.get("stepTimeoutMs")
        dlq = data.get("deadLetterQueue", False)
        if isinstance(dlq, dict):
            dlq = dlq.get("enabled", False)
        return cls(
            retry=RetryPolicy.from_dict(data.get("retryPolicy") or {}),
            checkpoint=CheckpointPolicy.from_dict(data.get("checkpoint") or {}),
            throughput=Throughput.from_dict(data.get("throughput") or {}),
            parallel=ParallelExecution.from_dict(data.get("parallelExecution") or {}),
            dead_letter_queue=bool(dlq),
            step_timeout_ms=int(timeout) if timeout else None,
        )


@dataclass
class PipelineDefinition:
    """A versioned pipeline definition document.

    The engine treats a definition as immutable once read; lifecycle
    operations store copies as :class:`Revision` snapshots.
    """

    code: str
    steps: list[Step] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    triggers: list[Trigger] = field(default_factory=list)
    settings: Settings = field(default_factory=Settings)
    name: str = ""
    version: int = 1

    def step(self, key: str) -> Step | None:
        for s in self.steps:
            if s.key == key:
                return s
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "version": self.version,
            "steps": [s.to_dict() for s in self.steps],
            "edges": [e.to_dict() for e in self.edges],
            "triggers": [t.to_dict() for t in self.triggers],
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineDefinition:
        """Parse a definition document.

        Raises:
            ValueError: If a step type, trigger type or setting value is
                not recognised.
        """
        return cls(
            code=str(data.get("code", "")),
            name=str(data.get("name", "") or ""),
            version=int(data.get("version", 1)),
            steps=[Step.from_dict(s) for s in data.get("steps") or []],
            edges=[Edge.from_dict(e) for e in data.get("edges") or []],
            triggers=[trigger_from_dict(t) for t in data.get("triggers") or []],
            settings=Settings.from_dict(data.get("settings") or {}),
        )


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------


class RunStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass
class Run:
    """A single execution of a published pipeline definition.

    Attributes:
        id: Unique run identifier.
        pipeline_code: The pipeline being run.
        definition_version: Published revision number being executed.
        status: Current lifecycle status of the run.
        trigger: What started the run (``manual``, ``schedule:nightly``...).
        metrics: Aggregated counters maintained by the executor.
        checkpoint_cursor: Last cursor committed by this run.
        lock_token: Token of the pipeline lock held while running.
        waiting_step: Gate step key while the run is PAUSED.
        paused_state: Serialized executor state needed to resume.
        approved_gates: Gates already approved for this run.
        error: Failure or rejection reason.
        seed_records: Records supplied by the trigger (webhook, message).
    """

    id: str
    pipeline_code: str
    definition_version: int = 0
    status: RunStatus = RunStatus.PENDING
    trigger: str = "manual"
    started_at: float | None = None
    finished_at: float | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    checkpoint_cursor: dict[str, Any] = field(default_factory=dict)
    lock_token: str | None = None
    waiting_step: str | None = None
    paused_state: dict[str, Any] | None = None
    approved_gates: list[str] = field(default_factory=list)
    error: str | None = None
    seed_records: list[dict[str, Any]] = field(default_factory=list)
    paused_at: float | None = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_code": self.pipeline_code,
            "definition_version": self.definition_version,
            "status": self.status.value,
            "trigger": self.trigger,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "metrics": copy.deepcopy(self.metrics),
            "checkpoint_cursor": copy.deepcopy(self.checkpoint_cursor),
            "lock_token": self.lock_token,
            "waiting_step": self.waiting_step,
            "paused_state": copy.deepcopy(self.paused_state),
            "approved_gates": list(self.approved_gates),
            "error": self.error,
            "seed_records": copy.deepcopy(self.seed_records),
            "paused_at": self.paused_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Run:
        return cls(
            id=data["id"],
            pipeline_code=data["pipeline_code"],
            definition_version=int(data.get("definition_version", 0)),
            status=RunStatus(data.get("status", "PENDING")),
            trigger=data.get("trigger", "manual"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            metrics=copy.deepcopy(data.get("metrics") or {}),
            checkpoint_cursor=copy.deepcopy(data.get("checkpoint_cursor") or {}),
            lock_token=data.get("lock_token"),
            waiting_step=data.get("waiting_step"),
            paused_state=copy.deepcopy(data.get("paused_state")),
            approved_gates=list(data.get("approved_gates") or []),
            error=data.get("error"),
            seed_records=copy.deepcopy(data.get("seed_records") or []),
            paused_at=data.get("paused_at"),
            created_at=data.get("created_at", time.time()),
        )


@dataclass
class RunError:
    """A record-level failure captured during a run."""

    id: str
    run_id: str
    pipeline_code: str
    step_key: str
    message: str
    payload: dict[str, Any] = field(default_factory=dict)
    stack_trace: str = ""
    created_at: float = field(default_factory=time.time)
    resolved: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "pipeline_code": self.pipeline_code,
            "step_key": self.step_key,
            "message": self.message,
            "payload": copy.deepcopy(self.payload),
            "stack_trace": self.stack_trace,
            "created_at": self.created_at,
            "resolved": self.resolved,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunError:
        return cls(
            id=data["id"],
            run_id=data["run_id"],
            pipeline_code=data.get("pipeline_code", ""),
            step_key=data["step_key"],
            message=data.get("message", ""),
            payload=copy.deepcopy(data.get("payload") or {}),
            stack_trace=data.get("stack_trace", ""),
            created_at=data.get("created_at", time.time()),
            resolved=bool(data.get("resolved", False)),
        )


@dataclass(frozen=True)
class RetryAudit:
    """Append-only trace of one operator retry of a RunError."""

    id: str
    error_id: str
    previous_payload: dict[str, Any]
    patch: dict[str, Any]
    resulting_payload: dict[str, Any]
    created_at: float = field(default_factory=time.time)
    replay_run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "error_id": self.error_id,
            "previous_payload": copy.deepcopy(self.previous_payload),
            "patch": copy.deepcopy(self.patch),
            "resulting_payload": copy.deepcopy(self.resulting_payload),
            "created_at": self.created_at,
            "replay_run_id": self.replay_run_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryAudit:
        return cls(
            id=data["id"],
            error_id=data["error_id"],
            previous_payload=copy.deepcopy(data.get("previous_payload") or {}),
            patch=copy.deepcopy(data.get("patch") or {}),
            resulting_payload=copy.deepcopy(data.get("resulting_payload") or {}),
            created_at=data.get("created_at", time.time()),
            replay_run_id=data.get("replay_run_id"),
        )


class DeadLetterStatus(str, enum.Enum):
    PENDING = "PENDING"
    RETRIED = "RETRIED"
    DISCARDED = "DISCARDED"


@dataclass
class DeadLetterEntry:
    """A RunError routed out of its run after exhausting retries."""

    id: str
    error_id: str
    run_id: str
    pipeline_code: str
    step_key: str
    payload: dict[str, Any]
    reason: str
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "error_id": self.error_id,
            "run_id": self.run_id,
            "pipeline_code": self.pipeline_code,
            "step_key": self.step_key,
            "payload": copy.deepcopy(self.payload),
            "reason": self.reason,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeadLetterEntry:
        return cls(
            id=data["id"],
            error_id=data["error_id"],
            run_id=data["run_id"],
            pipeline_code=data.get("pipeline_code", ""),
            step_key=data["step_key"],
            payload=copy.deepcopy(data.get("payload") or {}),
            reason=data.get("reason", ""),
            status=DeadLetterStatus(data.get("status", "PENDING")),
            created_at=data.get("created_at", time.time()),
        )


class LifecycleState(str, enum.Enum):
    DRAFT = "DRAFT"
    REVIEW = "REVIEW"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class RevisionKind(str, enum.Enum):
    DRAFT = "DRAFT"
    REVIEW = "REVIEW"
    PUBLISHED = "PUBLISHED"


@dataclass(frozen=True)
class Revision:
    """Immutable snapshot of a definition at a lifecycle point."""

    id: str
    pipeline_code: str
    number: int
    kind: RevisionKind
    definition: dict[str, Any]
    created_at: float = field(default_factory=time.time)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_code": self.pipeline_code,
            "number": self.number,
            "kind": self.kind.value,
            "definition": copy.deepcopy(self.definition),
            "created_at": self.created_at,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Revision:
        return cls(
            id=data["id"],
            pipeline_code=data["pipeline_code"],
            number=int(data["number"]),
            kind=RevisionKind(data["kind"]),
            definition=copy.deepcopy(data.get("definition") or {}),
            created_at=data.get("created_at", time.time()),
            message=data.get("message", ""),
        )


@dataclass
class PipelineRecord:
    """Lifecycle bookkeeping for one pipeline code.

    Attributes:
        code: Pipeline code.
        state: Current lifecycle state.
        draft: The working (editable) definition document.
        published_revision: Revision number currently published, if any.
        last_revision: Highest revision number ever issued; numbers are
            never reused, even after pruning.
        last_validation: Issues from the most recent advisory validation,
            kept for display only.
    """

    code: str
    state: LifecycleState = LifecycleState.DRAFT
    draft: dict[str, Any] = field(default_factory=dict)
    published_revision: int | None = None
    last_revision: int = 0
    last_validation: list[dict[str, Any]] = field(default_factory=list)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "state": self.state.value,
            "draft": copy.deepcopy(self.draft),
            "published_revision": self.published_revision,
            "last_revision": self.last_revision,
            "last_validation": copy.deepcopy(self.last_validation),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineRecord:
        return cls(
            code=data["code"],
            state=LifecycleState(data.get("state", "DRAFT")),
            draft=copy.deepcopy(data.get("draft") or {}),
            published_revision=data.get("published_revision"),
            last_revision=int(data.get("last_revision") or 0),
            last_validation=copy.deepcopy(data.get("last_validation") or []),
            updated_at=data.get("updated_at", time.time()),
        )


@dataclass
class Checkpoint:
    """Last committed resume cursor for a pipeline.

    Attributes:
        pipeline_code: The pipeline this cursor belongs to.
        run_id: The run that committed it.
        cursor: Per-source-step cursor, e.g. ``{"extract": {"offset": 200}}``
            or ``{"extract": {"watermark": "2024-05-01T00:00:00Z"}}``.
        committed_at: UNIX timestamp of the commit.
    """

    pipeline_code: str
    run_id: str
    cursor: dict[str, dict[str, Any]] = field(default_factory=dict)
    committed_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_code": self.pipeline_code,
            "run_id": self.run_id,
            "cursor": copy.deepcopy(self.cursor),
            "committed_at": self.committed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            pipeline_code=data["pipeline_code"],
            run_id=data.get("run_id", ""),
            cursor=copy.deepcopy(data.get("cursor") or {}),
            committed_at=data.get("committed_at", time.time()),
        )
