"""Built-in adapters registered by :func:`create_default_registry`.

These cover the plumbing needed to run pipelines end to end without
external connectors: seed and inline extraction, JSON-lines files, field
mapping, defaults, required-field validation, in-process sinks and an
HTTP loader.
"""

from __future__ import annotations

import copy
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any

import httpx

from relayflow.errors import FatalConfigError, TransientAdapterError
from relayflow.pipeline.conditions import resolve_path
from relayflow.pipeline.models import Step, StepType
from relayflow.runtime.adapters import (
    AdapterCapability,
    AdapterRegistry,
    ConfigField,
    ExecutionContext,
    RecordFailure,
    StepOutput,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class SeedExtractAdapter:
    """Emits the records supplied by the trigger (webhook body, queue batch)."""

    capability = AdapterCapability(
        code="seed-extract", type=StepType.EXTRACT, pure=True, seeded=True
    )

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        return StepOutput(records=copy.deepcopy(context.seed_records))


class MemoryExtractAdapter:
    """Emits the inline ``records`` list from the step config."""

    capability = AdapterCapability(
        code="memory-extract",
        type=StepType.EXTRACT,
        pure=True,
        config_schema=(ConfigField("records", "array", required=True),),
    )

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        return StepOutput(records=copy.deepcopy(list(step.config.get("records", []))))


class JsonLinesExtractAdapter:
    """Reads one JSON object per line from ``config.path``."""

    capability = AdapterCapability(
        code="jsonl-extract",
        type=StepType.EXTRACT,
        pure=True,
        is_async=False,
        config_schema=(ConfigField("path", "string", required=True),),
    )

    def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        path = Path(step.config["path"])
        if not path.exists():
            raise FatalConfigError(f"Source file not found: {path}")
        out: list[dict[str, Any]] = []
        with path.open(encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    out.append(json.loads(line))
        return StepOutput(records=out)


class FieldMapAdapter:
    """Projects records through ``config.mapping`` (target -> source path).

    When ``config.keepUnmapped`` is true, fields not named by the mapping
    are carried over unchanged.
    """

    capability = AdapterCapability(
        code="field-map",
        type=StepType.TRANSFORM,
        pure=True,
        config_schema=(
            ConfigField("mapping", "object", required=True),
            ConfigField("keepUnmapped", "boolean"),
        ),
    )

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        mapping: dict[str, str] = step.config.get("mapping", {})
        keep = bool(step.config.get("keepUnmapped", False))
        out = []
        for record in records:
            mapped = dict(record) if keep else {}
            for target, source in mapping.items():
                mapped[target] = resolve_path(record, source)
            out.append(mapped)
        return StepOutput(records=out)


class SetDefaultsAdapter:
    """Fills missing fields from ``config.defaults``."""

    capability = AdapterCapability(
        code="set-defaults",
        type=StepType.ENRICH,
        pure=True,
        config_schema=(ConfigField("defaults", "object", required=True),),
    )

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        defaults: dict[str, Any] = step.config.get("defaults", {})
        out = []
        for record in records:
            enriched = dict(record)
            for key, value in defaults.items():
                if enriched.get(key) is None:
                    enriched[key] = copy.deepcopy(value)
            out.append(enriched)
        return StepOutput(records=out)


class RequiredFieldsAdapter:
    """Rejects records missing any of ``config.fields``."""

    capability = AdapterCapability(
        code="required-fields",
        type=StepType.VALIDATE,
        pure=True,
        config_schema=(ConfigField("fields", "array", required=True),),
    )

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        fields: list[str] = list(step.config.get("fields", []))
        output = StepOutput()
        for record in records:
            missing = [f for f in fields if resolve_path(record, f) in (None, "")]
            if missing:
                output.failures.append(
                    RecordFailure(record, f"Missing required field(s): {', '.join(missing)}")
                )
            else:
                output.records.append(record)
        return output


class MemorySink:
    """Named in-process record buckets used by :class:`MemoryLoadAdapter`."""

    def __init__(self) -> None:
        self._buckets: dict[str, list[dict[str, Any]]] = defaultdict(list)

    def write(self, name: str, records: list[dict[str, Any]]) -> None:
        self._buckets[name].extend(copy.deepcopy(records))

    def read(self, name: str) -> list[dict[str, Any]]:
        return list(self._buckets.get(name, []))

    def clear(self) -> None:
        self._buckets.clear()


class MemoryLoadAdapter:
    """Appends records to a :class:`MemorySink` bucket (``config.target``)."""

    capability = AdapterCapability(
        code="memory-load",
        type=StepType.LOAD,
        config_schema=(ConfigField("target", "string", required=True),),
    )

    def __init__(self, sink: MemorySink | None = None) -> None:
        self.sink = sink or MemorySink()

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        self.sink.write(step.config["target"], records)
        return StepOutput(records=records)


class JsonLinesExportAdapter:
    """Appends records to the file at ``config.path``, one JSON object per line."""

    capability = AdapterCapability(
        code="jsonl-export",
        type=StepType.EXPORT,
        is_async=False,
        config_schema=(ConfigField("path", "string", required=True),),
    )

    def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        path = Path(step.config["path"])
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            for record in records:
                fh.write(json.dumps(record, default=str) + "\n")
        return StepOutput(records=records)


class LogSinkAdapter:
    """Logs the number of records reaching it."""

    capability = AdapterCapability(code="log-sink", type=StepType.SINK)

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        logger.info(
            "Run %s step '%s' received %d record(s)",
            context.run_id,
            step.key,
            len(records),
        )
        return StepOutput(records=records)


class HttpPostAdapter:
    """POSTs each batch as ``{"records": [...]}`` to a connection endpoint.

    The step's ``connectionCode`` must resolve to settings with a
    ``baseUrl`` and optional ``headers``; ``config.path`` is appended.
    Statuses in :data:`RETRYABLE_STATUS_CODES` and transport failures
    raise :class:`TransientAdapterError`; other non-2xx responses raise
    a non-retryable one.
    """

    capability = AdapterCapability(
        code="http-post",
        type=StepType.LOAD,
        required_connections=("connectionCode",),
        config_schema=(
            ConfigField("path", "string"),
            ConfigField("timeoutSeconds", "number"),
        ),
    )

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        base_url = context.connection.get("baseUrl")
        if not base_url:
            raise FatalConfigError(
                f"Connection for step '{step.key}' has no baseUrl"
            )
        kwargs: dict[str, Any] = {
            "base_url": base_url,
            "timeout": float(step.config.get("timeoutSeconds", 30.0)),
            "headers": dict(context.connection.get("headers") or {}),
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport

        async with httpx.AsyncClient(**kwargs) as client:
            try:
                response = await client.post(
                    step.config.get("path", "/"), json={"records": records}
                )
            except httpx.TransportError as exc:
                raise TransientAdapterError(
                    f"HTTP transport error: {exc}", adapter_code=self.capability.code
                ) from exc

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientAdapterError(
                f"HTTP {response.status_code} from {base_url}",
                adapter_code=self.capability.code,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise TransientAdapterError(
                f"HTTP {response.status_code} from {base_url}: {response.text[:200]}",
                adapter_code=self.capability.code,
                status_code=response.status_code,
                retryable=False,
            )
        return StepOutput(records=records)


def create_default_registry(sink: MemorySink | None = None) -> AdapterRegistry:
    """Create an :class:`AdapterRegistry` with all built-in adapters.

    Args:
        sink: Shared sink for the ``memory-load`` adapter; a fresh one is
            created when omitted.
    """
    registry = AdapterRegistry()
    for adapter in (
        SeedExtractAdapter(),
        MemoryExtractAdapter(),
        JsonLinesExtractAdapter(),
        FieldMapAdapter(),
        SetDefaultsAdapter(),
        RequiredFieldsAdapter(),
        MemoryLoadAdapter(sink),
        JsonLinesExportAdapter(),
        LogSinkAdapter(),
        HttpPostAdapter(),
    ):
        registry.register(adapter)
    return registry
