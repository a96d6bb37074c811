"""Trigger registry.

:class:`TriggerManager` enables the triggers of a pipeline when it is
published and disables them when it is archived. It fans definitions out
to the scheduler, webhook gateway, message consumers and file watcher,
and keeps the event-trigger subscriptions itself.
"""

from __future__ import annotations

import logging
from typing import Any

from relayflow.config import EngineConfig
from relayflow.errors import LifecycleGuardError, LockContentionError
from relayflow.pipeline.events import EngineEvent, EventEmitter, EventType
from relayflow.pipeline.models import (
    EventTrigger,
    FileTrigger,
    MessageTrigger,
    PipelineDefinition,
    Run,
    ScheduleTrigger,
    WebhookTrigger,
)
from relayflow.runtime.adapters import ConnectionResolver, StaticConnectionResolver
from relayflow.runtime.locks import DistributedLockService
from relayflow.triggers.consumer import ConsumerManager, QueueAdapter
from relayflow.triggers.files import FileWatcher
from relayflow.triggers.scheduler import TriggerScheduler
from relayflow.triggers.secrets import SecretResolver
from relayflow.triggers.webhook import PipelineStates, RunStarter, WebhookGateway

logger = logging.getLogger(__name__)


class TriggerManager:
    """Owns every trigger source and routes fires to the coordinator.

    Args:
        starter: Starts runs (the run coordinator).
        pipelines: Pipeline records, used by the webhook gateway.
        locks: Lock service shared with the coordinator.
        emitter: Receives trigger events.
        config: Engine configuration.
        connections: Resolves file-trigger connections.
        secrets: Resolves webhook secrets.
        queue_adapters: Queue transports keyed by ``queueType``.
    """

    def __init__(
        self,
        starter: RunStarter,
        pipelines: PipelineStates,
        locks: DistributedLockService,
        emitter: EventEmitter | None = None,
        config: EngineConfig | None = None,
        connections: ConnectionResolver | None = None,
        secrets: SecretResolver | None = None,
        queue_adapters: dict[str, QueueAdapter] | None = None,
    ) -> None:
        self._starter = starter
        self._emitter = emitter or EventEmitter()
        self._config = config or EngineConfig()
        self.scheduler = TriggerScheduler(
            self.fire, locks, self._config.scheduler, self._config.locks
        )
        self.webhooks = WebhookGateway(pipelines, starter, secrets, self._config.webhook)
        self.consumers = ConsumerManager(
            starter,
            locks,
            queue_adapters,
            emitter=self._emitter,
            settings=self._config.consumer,
            lock_settings=self._config.locks,
        )
        self.files = FileWatcher(self.fire, connections or StaticConnectionResolver())
        self._subscriptions: dict[str, list[tuple[str, str]]] = {}
        self._enabled: set[str] = set()

    @property
    def enabled_pipelines(self) -> list[str]:
        return sorted(self._enabled)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @config.setter
    def config(self, config: EngineConfig) -> None:
        """Push trigger settings; schedules use them once re-enabled."""
        self._config = config
        self.webhooks.settings = config.webhook
        self.scheduler.settings = config.scheduler

    async def enable_pipeline(self, pipeline_code: str, definition: PipelineDefinition) -> None:
        """Register every enabled trigger of a newly published definition."""
        await self.disable_pipeline(pipeline_code)
        for trigger in definition.triggers:
            if not trigger.enabled:
                continue
            if isinstance(trigger, ScheduleTrigger):
                self.scheduler.add(pipeline_code, trigger)
            elif isinstance(trigger, WebhookTrigger):
                self.webhooks.register(pipeline_code, trigger)
            elif isinstance(trigger, MessageTrigger):
                self.consumers.add(pipeline_code, trigger)
            elif isinstance(trigger, FileTrigger):
                self.files.add(pipeline_code, trigger)
            elif isinstance(trigger, EventTrigger):
                self._subscriptions.setdefault(trigger.event_type, []).append(
                    (pipeline_code, trigger.key)
                )
        self._enabled.add(pipeline_code)
        logger.info("Triggers enabled for '%s'", pipeline_code)

    async def disable_pipeline(self, pipeline_code: str) -> None:
        self.scheduler.remove(pipeline_code)
        self.webhooks.unregister(pipeline_code)
        await self.consumers.remove(pipeline_code)
        self.files.remove(pipeline_code)
        for event_type, subscribers in list(self._subscriptions.items()):
            kept = [s for s in subscribers if s[0] != pipeline_code]
            if kept:
                self._subscriptions[event_type] = kept
            else:
                del self._subscriptions[event_type]
        if pipeline_code in self._enabled:
            self._enabled.discard(pipeline_code)
            logger.info("Triggers disabled for '%s'", pipeline_code)

    async def emit_event(self, event_type: str, payload: dict[str, Any] | None = None) -> list[Run]:
        """Start every pipeline subscribed to *event_type*.

        Returns:
            The runs that were started.
        """
        runs = []
        for pipeline_code, trigger_key in list(self._subscriptions.get(event_type, [])):
            seed = [{**(payload or {}), "_eventType": event_type}]
            run = await self.fire(pipeline_code, trigger_key, seed)
            if run is not None:
                runs.append(run)
        return runs

    async def fire(
        self,
        pipeline_code: str,
        trigger_key: str,
        seed_records: list[dict[str, Any]] | None = None,
    ) -> Run | None:
        """Start a run on behalf of a trigger.

        Contention and guard failures are logged and reported with a
        TRIGGER_SKIPPED event rather than raised.
        """
        await self._emitter.emit(
            EngineEvent(
                type=EventType.TRIGGER_FIRED,
                pipeline_code=pipeline_code,
                data={"trigger": trigger_key},
            )
        )
        try:
            return await self._starter.start(
                pipeline_code,
                trigger=trigger_key,
                seed_records=seed_records,
                wait=False,
            )
        except (LockContentionError, LifecycleGuardError) as exc:
            logger.info("Trigger '%s/%s' skipped: %s", pipeline_code, trigger_key, exc)
            await self._emitter.emit(
                EngineEvent(
                    type=EventType.TRIGGER_SKIPPED,
                    pipeline_code=pipeline_code,
                    data={"trigger": trigger_key, "reason": str(exc)},
                )
            )
            return None

    def start(self) -> None:
        self.scheduler.start()
        self.consumers.start()
        self.files.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.consumers.stop()
        await self.files.stop()
