"""Engine wiring.

:class:`Engine` builds every component from one :class:`EngineConfig` and
owns their background tasks. It is what the CLI and the control server
talk to::

    engine = Engine.from_config(EngineConfig.from_env())
    await engine.deploy(load_definition("orders.json"))
    run = await engine.coordinator.start("orders")
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from typing import Any

from relayflow.config import ConfigHolder, EngineConfig
from relayflow.errors import CompilationError
from relayflow.pipeline.events import EventEmitter, LoggingEventSink
from relayflow.pipeline.lifecycle import LifecycleManager
from relayflow.pipeline.models import LifecycleState, PipelineDefinition, PipelineRecord
from relayflow.pipeline.validator import ValidationLevel, validate_definition
from relayflow.runtime.adapters import AdapterRegistry, StaticConnectionResolver
from relayflow.runtime.builtin import create_default_registry
from relayflow.runtime.checkpoint import CheckpointManager
from relayflow.runtime.circuit import CircuitBreaker
from relayflow.runtime.coordinator import RunCoordinator
from relayflow.runtime.dead_letter import DeadLetterHandler
from relayflow.runtime.executor import DagExecutor
from relayflow.runtime.locks import CoordinationStore, DistributedLockService
from relayflow.runtime.store import JsonFileStateStore, MemoryStateStore, StateStore
from relayflow.triggers.manager import TriggerManager
from relayflow.triggers.secrets import SecretResolver

logger = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL_S = 5.0


class Engine:
    """All engine components, wired together.

    Use :meth:`from_config` rather than calling the constructor.
    """

    def __init__(
        self,
        *,
        config: EngineConfig,
        store: StateStore,
        registry: AdapterRegistry,
        emitter: EventEmitter,
        connections: StaticConnectionResolver,
        secrets: SecretResolver,
        circuit_breaker: CircuitBreaker,
        locks: DistributedLockService,
        checkpoints: CheckpointManager,
        dead_letters: DeadLetterHandler,
        executor: DagExecutor,
        lifecycle: LifecycleManager,
        coordinator: RunCoordinator,
        triggers: TriggerManager,
    ) -> None:
        self._config = ConfigHolder(config)
        self.store = store
        self.registry = registry
        self.emitter = emitter
        self.connections = connections
        self.secrets = secrets
        self.circuit_breaker = circuit_breaker
        self.locks = locks
        self.checkpoints = checkpoints
        self.dead_letters = dead_letters
        self.executor = executor
        self.lifecycle = lifecycle
        self.coordinator = coordinator
        self.triggers = triggers
        self._housekeeping: asyncio.Task[None] | None = None

    @property
    def config(self) -> EngineConfig:
        return self._config.current

    def reload_config(self, env: Mapping[str, str] | None = None) -> EngineConfig:
        """Re-read ``RELAYFLOW_*`` settings and push them to live components.

        Each component applies the new section from its next read of it.
        The state store and ``state_dir`` are fixed for the life of the
        engine.

        Args:
            env: Mapping to read instead of the process environment.

        Returns:
            The new configuration, one version above the previous one.
        """
        config = self._config.reload(env)
        self.circuit_breaker.settings = config.circuit
        self.locks.settings = config.locks
        self.executor.settings = config.executor
        self.lifecycle.settings = config.lifecycle
        self.coordinator.config = config
        self.triggers.config = config
        return config

    @classmethod
    def from_config(
        cls,
        config: EngineConfig | None = None,
        store: StateStore | None = None,
        registry: AdapterRegistry | None = None,
        *,
        coordination: CoordinationStore | None = None,
        connections: dict[str, dict[str, Any]] | None = None,
        secrets: dict[str, str] | None = None,
        log_events: bool = True,
    ) -> Engine:
        """Build an engine.

        Args:
            config: Engine configuration; defaults are used when omitted.
            store: State store. Defaults to a JSON file store under
                ``config.state_dir``, or memory when that is unset.
            registry: Adapter registry; defaults to the built-in adapters.
            coordination: Lock backend shared by engine instances.
            connections: Connection settings keyed by connection code.
            secrets: Secrets keyed by reference, ahead of the environment.
            log_events: Attach a :class:`LoggingEventSink`.
        """
        config = config or EngineConfig()
        if store is None:
            store = JsonFileStateStore(config.state_dir) if config.state_dir else MemoryStateStore()
        registry = registry or create_default_registry()

        emitter = EventEmitter()
        if log_events:
            LoggingEventSink().attach(emitter)

        connection_resolver = StaticConnectionResolver(connections)
        secret_resolver = SecretResolver(secrets)
        breaker = CircuitBreaker(config.circuit)
        locks = DistributedLockService(coordination, config.locks)
        checkpoints = CheckpointManager(store)
        dead_letters = DeadLetterHandler(store, emitter)
        executor = DagExecutor(
            registry,
            store=store,
            circuit_breaker=breaker,
            checkpoints=checkpoints,
            dead_letters=dead_letters,
            connections=connection_resolver,
            emitter=emitter,
            settings=config.executor,
        )
        lifecycle = LifecycleManager(store, registry, config.lifecycle, emitter)
        coordinator = RunCoordinator(
            store=store,
            lifecycle=lifecycle,
            registry=registry,
            executor=executor,
            locks=locks,
            dead_letters=dead_letters,
            emitter=emitter,
            config=config,
        )
        triggers = TriggerManager(
            coordinator,
            store,
            locks,
            emitter=emitter,
            config=config,
            connections=connection_resolver,
            secrets=secret_resolver,
        )
        lifecycle.on_publish(triggers.enable_pipeline)
        lifecycle.on_archive(triggers.disable_pipeline)

        return cls(
            config=config,
            store=store,
            registry=registry,
            emitter=emitter,
            connections=connection_resolver,
            secrets=secret_resolver,
            circuit_breaker=breaker,
            locks=locks,
            checkpoints=checkpoints,
            dead_letters=dead_letters,
            executor=executor,
            lifecycle=lifecycle,
            coordinator=coordinator,
            triggers=triggers,
        )

    async def deploy(
        self, definition: PipelineDefinition, message: str = ""
    ) -> PipelineRecord:
        """Create or update a pipeline and take it through to PUBLISHED.

        An existing pipeline is validated at FULL level first; only a
        definition that would publish moves it back to DRAFT (archiving a
        published one), replaces its draft, then submits and approves.

        Raises:
            CompilationError: If the definition fails validation. A
                published pipeline stays published.
        """
        code = definition.code
        lifecycle = self.lifecycle
        if not lifecycle.exists(code):
            await lifecycle.create(definition, message or "deployed")
        else:
            issues = validate_definition(definition, self.registry, ValidationLevel.FULL)
            if issues:
                logger.info(
                    "Deploy of '%s' rejected with %d issue(s); state unchanged",
                    code,
                    len(issues),
                )
                raise CompilationError(issues)
            record = lifecycle.get(code)
            if record.state == LifecycleState.PUBLISHED:
                await lifecycle.archive(code)
            if record.state == LifecycleState.REVIEW:
                await lifecycle.reject(code, "superseded by deploy")
            if lifecycle.get(code).state == LifecycleState.ARCHIVED:
                await lifecycle.reactivate(code)
            await lifecycle.save_draft(code, definition, message or "deployed")

        if self.config.lifecycle.require_review:
            await lifecycle.submit_for_review(code, message)
            await lifecycle.approve(code, message)
        else:
            await lifecycle.publish(code, message)
        return lifecycle.get(code)

    async def restore_triggers(self) -> int:
        """Enable the triggers of every PUBLISHED pipeline in the store."""
        enabled = 0
        for record in self.lifecycle.list_pipelines():
            if record.state != LifecycleState.PUBLISHED:
                continue
            await self.triggers.enable_pipeline(
                record.code, self.lifecycle.published_definition(record.code)
            )
            enabled += 1
        return enabled

    async def housekeeping(self) -> None:
        """One pass of periodic maintenance."""
        resumed = await self.coordinator.expire_gates()
        if resumed:
            logger.info("Auto-approved timed-out gates of %d run(s)", len(resumed))
        self.triggers.webhooks.sweep()
        self.circuit_breaker.evict_idle()
        self.locks.cleanup()

    async def start(self) -> None:
        """Restore triggers and start every background loop."""
        restored = await self.restore_triggers()
        self.locks.start_sweeper()
        self.triggers.start()

        async def _loop() -> None:
            while True:
                await asyncio.sleep(HOUSEKEEPING_INTERVAL_S)
                try:
                    await self.housekeeping()
                except Exception:
                    logger.exception("Housekeeping pass failed")

        self._housekeeping = asyncio.create_task(_loop(), name="engine-housekeeping")
        logger.info("Engine started (%d pipeline(s) with triggers)", restored)

    async def stop(self) -> None:
        if self._housekeeping is not None:
            self._housekeeping.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._housekeeping
            self._housekeeping = None
        await self.triggers.stop()
        await self.coordinator.shutdown()
        await self.locks.stop()
        logger.info("Engine stopped")
