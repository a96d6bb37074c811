"""Message queue consumers.

One :class:`MessageConsumer` runs per (pipeline, message trigger). It only
polls while it holds the ``message-consumer:{code}:{trigger}`` lease, which
a heartbeat renews every ``consumer_refresh_ms``. Polling and dispatch are
decoupled by a bounded :class:`asyncio.Queue`, so a slow pipeline applies
back-pressure to the poll loop instead of piling up unacknowledged
messages.

Each message becomes one run whose single seed record is the message body
plus ``_messageId``, ``_queue``, ``_receivedAt`` and ``_headers``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from relayflow.config import ConsumerSettings, LockSettings
from relayflow.pipeline.events import EngineEvent, EventEmitter, EventType
from relayflow.pipeline.models import AckMode, MessageTrigger, Run, new_id
from relayflow.runtime.locks import DistributedLockService, consumer_lock_key
from relayflow.triggers.webhook import RunStarter

logger = logging.getLogger(__name__)


@dataclass
class QueueMessage:
    id: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    received_at: float = field(default_factory=time.time)


class QueueAdapter(Protocol):
    """Transport contract implemented by broker clients."""

    async def receive(self, queue: str, count: int) -> list[QueueMessage]: ...

    async def ack(self, queue: str, message_id: str) -> None: ...

    async def nack(self, queue: str, message_id: str, requeue: bool = True) -> None: ...

    async def publish(
        self, queue: str, body: dict[str, Any], headers: dict[str, str] | None = None
    ) -> str: ...


class MemoryQueueAdapter:
    """In-process queues for local runs and tests.

    Received messages stay in flight until acked or nacked; a requeued
    message goes to the back of its queue.
    """

    def __init__(self) -> None:
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._in_flight: dict[tuple[str, str], QueueMessage] = {}

    async def receive(self, queue: str, count: int) -> list[QueueMessage]:
        pending = self._queues.setdefault(queue, deque())
        batch = []
        while pending and len(batch) < count:
            message = pending.popleft()
            message.attempts += 1
            message.received_at = time.time()
            self._in_flight[(queue, message.id)] = message
            batch.append(message)
        return batch

    async def ack(self, queue: str, message_id: str) -> None:
        self._in_flight.pop((queue, message_id), None)

    async def nack(self, queue: str, message_id: str, requeue: bool = True) -> None:
        message = self._in_flight.pop((queue, message_id), None)
        if message is not None and requeue:
            self._queues.setdefault(queue, deque()).append(message)

    async def publish(
        self, queue: str, body: dict[str, Any], headers: dict[str, str] | None = None
    ) -> str:
        message = QueueMessage(id=new_id("msg"), body=dict(body), headers=dict(headers or {}))
        self._queues.setdefault(queue, deque()).append(message)
        return message.id

    def depth(self, queue: str) -> int:
        return len(self._queues.get(queue, ()))

    def in_flight(self, queue: str) -> int:
        return sum(1 for q, _ in self._in_flight if q == queue)

    def messages(self, queue: str) -> list[QueueMessage]:
        return list(self._queues.get(queue, ()))


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


class MessageConsumer:
    """Consumes one queue on behalf of one pipeline trigger.

    Args:
        pipeline_code: Pipeline started for each message.
        trigger: The message trigger definition.
        adapter: Queue transport.
        starter: Starts runs (the run coordinator).
        locks: Lock service for the consumer lease.
        emitter: Receives trigger and dead-letter events.
        settings: Poll interval, channel capacity and retry backoff.
        lock_settings: Consumer lease TTL and refresh interval.
        sleep: Awaitable sleep used between retries.
    """

    def __init__(
        self,
        pipeline_code: str,
        trigger: MessageTrigger,
        adapter: QueueAdapter,
        starter: RunStarter,
        locks: DistributedLockService,
        emitter: EventEmitter | None = None,
        settings: ConsumerSettings | None = None,
        lock_settings: LockSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.pipeline_code = pipeline_code
        self.trigger = trigger
        self._adapter = adapter
        self._starter = starter
        self._locks = locks
        self._emitter = emitter or EventEmitter()
        self._settings = settings or ConsumerSettings()
        self._lock_settings = lock_settings or LockSettings()
        self._sleep = sleep
        self._channel: asyncio.Queue[list[QueueMessage]] = asyncio.Queue(
            maxsize=self._settings.channel_capacity
        )
        self._token: str | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self.processed = 0
        self.failed = 0

    @property
    def lock_key(self) -> str:
        return consumer_lock_key(self.pipeline_code, self.trigger.key)

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def holds_lease(self) -> bool:
        return (
            self._token is not None
            and self._heartbeat is not None
            and not self._heartbeat.done()
        )

    async def ensure_lease(self) -> bool:
        """Take (or confirm) the consumer lease. Returns whether it is held."""
        if self.holds_lease:
            return True
        lease = await self._locks.acquire(self.lock_key, self._lock_settings.consumer_ttl_ms)
        if not lease.acquired or lease.token is None:
            logger.debug("Consumer '%s' is owned by %s", self.lock_key, lease.current_owner)
            return False
        self._token = lease.token
        self._heartbeat = self._locks.heartbeat(
            self.lock_key,
            lease.token,
            self._lock_settings.consumer_ttl_ms,
            self._lock_settings.consumer_refresh_ms,
        )
        logger.info("Consumer '%s' acquired its lease", self.lock_key)
        return True

    async def poll_once(self) -> int:
        """Receive one batch and hand it to the dispatcher.

        Blocks while the dispatch channel is full.

        Returns:
            Number of messages received.
        """
        messages = await self._adapter.receive(self.trigger.queue_name, self.trigger.batch_size)
        if not messages:
            return 0
        if self.trigger.ack_mode == AckMode.AUTO:
            for message in messages:
                await self._adapter.ack(self.trigger.queue_name, message.id)
        logger.debug(
            "Received %d message(s) from '%s' for '%s'",
            len(messages),
            self.trigger.queue_name,
            self.pipeline_code,
        )
        await self._channel.put(messages)
        return len(messages)

    async def drain(self) -> int:
        """Dispatch every batch currently waiting in the channel."""
        handled = 0
        while not self._channel.empty():
            batch = self._channel.get_nowait()
            try:
                for message in batch:
                    await self.dispatch(message)
                    handled += 1
            finally:
                self._channel.task_done()
        return handled

    async def dispatch(self, message: QueueMessage) -> Run | None:
        """Start a run for *message*, retrying with backoff.

        Returns:
            The run, or ``None`` if every attempt failed.
        """
        seed = {
            **message.body,
            "_messageId": message.id,
            "_queue": self.trigger.queue_name,
            "_receivedAt": _iso(message.received_at),
            "_headers": dict(message.headers),
        }
        attempts = self.trigger.max_retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                await self._emit(
                    EventType.TRIGGER_FIRED,
                    {"trigger": self.trigger.key, "message_id": message.id, "attempt": attempt},
                )
                run = await self._starter.start(
                    self.pipeline_code,
                    trigger=f"message:{self.trigger.key}",
                    seed_records=[seed],
                    wait=True,
                )
            except Exception as exc:
                last_error = exc
                if attempt < attempts:
                    delay = self.retry_delay_ms(attempt)
                    logger.warning(
                        "Message %s for '%s' failed (attempt %d/%d): %s; retrying in %dms",
                        message.id,
                        self.pipeline_code,
                        attempt,
                        attempts,
                        exc,
                        delay,
                    )
                    await self._sleep(delay / 1000.0)
                continue
            if self.trigger.ack_mode == AckMode.MANUAL:
                await self._adapter.ack(self.trigger.queue_name, message.id)
            self.processed += 1
            return run

        self.failed += 1
        await self._give_up(message, last_error)
        return None

    def retry_delay_ms(self, attempt: int) -> int:
        base = self._settings.retry_delay_ms * (2 ** (attempt - 1))
        return min(base, self._settings.max_retry_delay_ms)

    async def _give_up(self, message: QueueMessage, error: Exception | None) -> None:
        reason = str(error) if error is not None else "unknown error"
        queue = self.trigger.queue_name
        dlq = self.trigger.dead_letter_queue
        if not dlq:
            logger.error(
                "Message %s for '%s' failed permanently and no dead-letter queue is set: %s",
                message.id,
                self.pipeline_code,
                reason,
            )
            if self.trigger.ack_mode == AckMode.MANUAL:
                await self._adapter.nack(queue, message.id, requeue=False)
            return

        await self._emit(
            EventType.MESSAGE_DEAD_LETTERED,
            {"message_id": message.id, "queue": queue, "dead_letter_queue": dlq, "error": reason},
        )
        await self._adapter.publish(
            dlq,
            {
                **message.body,
                "_originalQueue": queue,
                "_error": reason,
                "_failedAt": _iso(time.time()),
            },
            {**message.headers, "x-original-queue": queue, "x-error": reason},
        )
        if self.trigger.ack_mode == AckMode.MANUAL:
            await self._adapter.ack(queue, message.id)
        logger.info("Message %s routed to dead-letter queue '%s'", message.id, dlq)

    def start(self) -> None:
        if self.running:
            return

        async def _poll_loop() -> None:
            interval = self._settings.poll_interval_ms / 1000.0
            while True:
                try:
                    if await self.ensure_lease():
                        await self.poll_once()
                except Exception:
                    logger.exception("Poll of '%s' failed", self.trigger.queue_name)
                await asyncio.sleep(interval)

        async def _dispatch_loop() -> None:
            while True:
                batch = await self._channel.get()
                try:
                    for message in batch:
                        await self.dispatch(message)
                except Exception:
                    logger.exception("Dispatch for '%s' failed", self.pipeline_code)
                finally:
                    self._channel.task_done()

        self._tasks = [
            asyncio.create_task(_poll_loop(), name=f"consumer-poll:{self.lock_key}"),
            asyncio.create_task(_dispatch_loop(), name=f"consumer-dispatch:{self.lock_key}"),
        ]
        logger.info(
            "Consumer for '%s' on queue '%s' started", self.pipeline_code, self.trigger.queue_name
        )

    async def stop(self) -> None:
        for task in [*self._tasks, self._heartbeat]:
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        self._heartbeat = None
        if self._token is not None:
            await self._locks.release(self.lock_key, self._token)
            self._token = None

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._emitter.emit(
            EngineEvent(type=event_type, pipeline_code=self.pipeline_code, data=data)
        )


class ConsumerManager:
    """Owns the consumers of every enabled message trigger.

    Args:
        starter: Starts runs (the run coordinator).
        locks: Lock service for consumer leases.
        adapters: Queue transports keyed by ``queueType``.
        emitter: Receives trigger events.
        settings: Consumer defaults.
        lock_settings: Consumer lease settings.
    """

    def __init__(
        self,
        starter: RunStarter,
        locks: DistributedLockService,
        adapters: dict[str, QueueAdapter] | None = None,
        emitter: EventEmitter | None = None,
        settings: ConsumerSettings | None = None,
        lock_settings: LockSettings | None = None,
    ) -> None:
        self._starter = starter
        self._locks = locks
        self._adapters: dict[str, QueueAdapter] = (
            adapters if adapters is not None else {"memory": MemoryQueueAdapter()}
        )
        self._emitter = emitter
        self._settings = settings
        self._lock_settings = lock_settings
        self._consumers: dict[tuple[str, str], MessageConsumer] = {}
        self._running = False

    def register_adapter(self, queue_type: str, adapter: QueueAdapter) -> None:
        self._adapters[queue_type] = adapter

    def adapter(self, queue_type: str) -> QueueAdapter | None:
        return self._adapters.get(queue_type)

    def add(self, pipeline_code: str, trigger: MessageTrigger) -> MessageConsumer | None:
        adapter = self._adapters.get(trigger.queue_type)
        if adapter is None:
            logger.error(
                "No queue adapter for type '%s' (pipeline '%s')",
                trigger.queue_type,
                pipeline_code,
            )
            return None
        consumer = MessageConsumer(
            pipeline_code,
            trigger,
            adapter,
            self._starter,
            self._locks,
            emitter=self._emitter,
            settings=self._settings,
            lock_settings=self._lock_settings,
        )
        self._consumers[(pipeline_code, trigger.key)] = consumer
        if self._running:
            consumer.start()
        return consumer

    async def remove(self, pipeline_code: str) -> int:
        doomed = [k for k in self._consumers if k[0] == pipeline_code]
        for key in doomed:
            await self._consumers.pop(key).stop()
        return len(doomed)

    def get(self, pipeline_code: str, trigger_key: str) -> MessageConsumer | None:
        return self._consumers.get((pipeline_code, trigger_key))

    def consumers(self) -> list[MessageConsumer]:
        return list(self._consumers.values())

    def start(self) -> None:
        self._running = True
        for consumer in self._consumers.values():
            consumer.start()

    async def stop(self) -> None:
        self._running = False
        for consumer in self._consumers.values():
            await consumer.stop()
