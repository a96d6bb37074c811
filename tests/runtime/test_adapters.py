"""Tests for the adapter registry and built-in adapters."""

import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from relayflow.errors import FatalConfigError, TransientAdapterError
from relayflow.pipeline.models import Step, StepType
from relayflow.runtime.adapters import (
    AdapterCapability,
    AdapterRegistry,
    ConfigField,
    ExecutionContext,
    StaticConnectionResolver,
    StepOutput,
    check_config,
    invoke_adapter,
)
from relayflow.runtime.builtin import (
    HttpPostAdapter,
    MemorySink,
    create_default_registry,
)


def _context(**overrides: Any) -> ExecutionContext:
    return ExecutionContext(run_id="run-1", pipeline_code="orders", step_key="s", **overrides)


def _step(step_type: StepType, adapter: str, **config: Any) -> Step:
    return Step(key="s", type=step_type, adapter_code=adapter, config=config)


class UpperSync:
    capability = AdapterCapability(code="upper", type=StepType.TRANSFORM, is_async=False)

    def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> list[dict[str, Any]]:
        return [{k: str(v).upper() for k, v in r.items()} for r in records]


class TestCheckConfig:
    CAPABILITY = AdapterCapability(
        code="x",
        type=StepType.LOAD,
        required_connections=("connectionCode",),
        config_schema=(
            ConfigField("path", "string", required=True),
            ConfigField("retries", "integer"),
            ConfigField("mode", "string", choices=("append", "replace")),
        ),
    )

    def test_conforming_config(self) -> None:
        config = {"path": "/out", "retries": 2, "mode": "append", "connectionCode": "crm"}
        assert check_config(self.CAPABILITY, config) == []

    def test_missing_required_and_connection(self) -> None:
        problems = dict(check_config(self.CAPABILITY, {}))
        assert set(problems) == {"path", "connectionCode"}

    def test_type_and_choice_problems(self) -> None:
        problems = dict(
            check_config(
                self.CAPABILITY,
                {"path": "/out", "retries": True, "mode": "merge", "connectionCode": "crm"},
            )
        )
        assert "integer" in problems["retries"]
        assert "append, replace" in problems["mode"]


class TestRegistry:
    def test_default_registry_codes(self) -> None:
        registry = create_default_registry()
        for code in ("seed-extract", "memory-extract", "field-map", "memory-load", "http-post"):
            assert registry.has(code)
        assert registry.capability("memory-load").type == StepType.LOAD
        assert registry.capability("missing") is None

    def test_reregistering_replaces(self) -> None:
        registry = AdapterRegistry()
        first, second = UpperSync(), UpperSync()
        registry.register(first)
        registry.register(second)
        assert registry.get("upper") is second
        assert registry.codes == ["upper"]


class TestInvokeAdapter:
    async def test_sync_adapter_list_result_is_wrapped(self) -> None:
        output = await invoke_adapter(
            UpperSync(), _step(StepType.TRANSFORM, "upper"), [{"a": "x"}], _context()
        )
        assert isinstance(output, StepOutput)
        assert output.records == [{"a": "X"}]

    async def test_seed_extract_returns_copies(self) -> None:
        registry = create_default_registry()
        seeds = [{"id": 1}]
        output = await invoke_adapter(
            registry.get("seed-extract"),
            _step(StepType.EXTRACT, "seed-extract"),
            [],
            _context(seed_records=seeds),
        )
        output.records[0]["id"] = 2
        assert seeds == [{"id": 1}]


class TestBuiltinAdapters:
    async def test_field_map(self) -> None:
        registry = create_default_registry()
        step = _step(
            StepType.TRANSFORM,
            "field-map",
            mapping={"customer": "buyer.name"},
            keepUnmapped=True,
        )
        output = await invoke_adapter(
            registry.get("field-map"), step, [{"id": 1, "buyer": {"name": "Ada"}}], _context()
        )
        assert output.records == [{"id": 1, "buyer": {"name": "Ada"}, "customer": "Ada"}]

    async def test_set_defaults_only_fills_missing(self) -> None:
        registry = create_default_registry()
        step = _step(StepType.ENRICH, "set-defaults", defaults={"currency": "EUR"})
        output = await invoke_adapter(
            registry.get("set-defaults"),
            step,
            [{"currency": "USD"}, {"currency": None}, {}],
            _context(),
        )
        assert [r["currency"] for r in output.records] == ["USD", "EUR", "EUR"]

    async def test_required_fields_splits_failures(self) -> None:
        registry = create_default_registry()
        step = _step(StepType.VALIDATE, "required-fields", fields=["id", "email"])
        output = await invoke_adapter(
            registry.get("required-fields"),
            step,
            [{"id": 1, "email": "a@b"}, {"id": 2, "email": ""}],
            _context(),
        )
        assert output.records == [{"id": 1, "email": "a@b"}]
        assert output.failures[0].message == "Missing required field(s): email"

    async def test_memory_load_writes_to_shared_sink(self) -> None:
        sink = MemorySink()
        registry = create_default_registry(sink)
        step = _step(StepType.LOAD, "memory-load", target="orders")
        await invoke_adapter(registry.get("memory-load"), step, [{"id": 1}], _context())
        assert sink.read("orders") == [{"id": 1}]
        sink.clear()
        assert sink.read("orders") == []

    async def test_jsonl_export_then_extract(self, tmp_path: Path) -> None:
        registry = create_default_registry()
        path = str(tmp_path / "out" / "orders.jsonl")
        await invoke_adapter(
            registry.get("jsonl-export"),
            _step(StepType.EXPORT, "jsonl-export", path=path),
            [{"id": 1}, {"id": 2}],
            _context(),
        )
        output = await invoke_adapter(
            registry.get("jsonl-extract"),
            _step(StepType.EXTRACT, "jsonl-extract", path=path),
            [],
            _context(),
        )
        assert output.records == [{"id": 1}, {"id": 2}]

    async def test_jsonl_extract_missing_file(self, tmp_path: Path) -> None:
        registry = create_default_registry()
        with pytest.raises(FatalConfigError, match="not found"):
            await invoke_adapter(
                registry.get("jsonl-extract"),
                _step(StepType.EXTRACT, "jsonl-extract", path=str(tmp_path / "nope.jsonl")),
                [],
                _context(),
            )


class TestHttpPostAdapter:
    CONNECTION = {"baseUrl": "https://crm.example.com", "headers": {"x-token": "t"}}

    async def test_posts_batch(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        adapter = HttpPostAdapter(transport=httpx.MockTransport(handler))
        step = _step(StepType.LOAD, "http-post", path="/ingest", connectionCode="crm")
        output = await adapter.execute(step, [{"id": 1}], _context(connection=self.CONNECTION))

        assert output.records == [{"id": 1}]
        assert str(seen[0].url) == "https://crm.example.com/ingest"
        assert seen[0].headers["x-token"] == "t"
        assert json.loads(seen[0].content) == {"records": [{"id": 1}]}

    async def test_503_is_retryable(self) -> None:
        adapter = HttpPostAdapter(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
        step = _step(StepType.LOAD, "http-post", connectionCode="crm")
        with pytest.raises(TransientAdapterError) as excinfo:
            await adapter.execute(step, [{"id": 1}], _context(connection=self.CONNECTION))
        assert excinfo.value.is_retryable
        assert excinfo.value.status_code == 503

    async def test_400_is_not_retryable(self) -> None:
        adapter = HttpPostAdapter(
            transport=httpx.MockTransport(lambda request: httpx.Response(400, text="bad field"))
        )
        step = _step(StepType.LOAD, "http-post", connectionCode="crm")
        with pytest.raises(TransientAdapterError, match="bad field") as excinfo:
            await adapter.execute(step, [{"id": 1}], _context(connection=self.CONNECTION))
        assert not excinfo.value.is_retryable

    async def test_missing_base_url(self) -> None:
        adapter = HttpPostAdapter()
        step = _step(StepType.LOAD, "http-post", connectionCode="crm")
        with pytest.raises(FatalConfigError, match="baseUrl"):
            await adapter.execute(step, [], _context())


class TestStaticConnectionResolver:
    def test_resolve_returns_copy(self) -> None:
        resolver = StaticConnectionResolver({"crm": {"baseUrl": "https://a"}})
        resolver.resolve("crm")["baseUrl"] = "https://b"
        assert resolver.resolve("crm") == {"baseUrl": "https://a"}

    def test_unknown_connection_is_fatal(self) -> None:
        resolver = StaticConnectionResolver()
        resolver.add("crm", {})
        with pytest.raises(FatalConfigError, match="warehouse"):
            resolver.resolve("warehouse")
