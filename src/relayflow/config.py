"""Versioned engine configuration.

All tunables live in one frozen :class:`EngineConfig` tree that is handed
to component constructors. :class:`ConfigHolder` is the single reload
point: it re-reads the environment and bumps :attr:`EngineConfig.version`.

Values are read from ``RELAYFLOW_*`` environment variables, after an
optional ``.env`` file has been loaded with python-dotenv::

    RELAYFLOW_STATE_DIR=.relayflow/state
    RELAYFLOW_LOCKS_PIPELINE_TTL_MS=300000
    RELAYFLOW_CIRCUIT_FAILURE_THRESHOLD=5
"""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "RELAYFLOW_"


@dataclass(frozen=True)
class CircuitBreakerSettings:
    """Thresholds for the per-adapter circuit breaker."""

    failure_threshold: int = 5
    success_threshold: int = 3
    reset_timeout_ms: int = 30_000
    failure_window_ms: int = 60_000
    idle_timeout_ms: int = 30 * 60_000
    cleanup_interval_ms: int = 5 * 60_000
    max_circuits: int = 1000


@dataclass(frozen=True)
class LockSettings:
    """Lease durations and polling cadence for the distributed lock."""

    default_ttl_ms: int = 30_000
    wait_timeout_ms: int = 10_000
    retry_interval_ms: int = 100
    pipeline_ttl_ms: int = 300_000
    scheduler_ttl_ms: int = 30_000
    consumer_ttl_ms: int = 300_000
    consumer_refresh_ms: int = 240_000
    cleanup_interval_ms: int = 30_000
    max_memory_locks: int = 1000
    wait_for_lock: bool = False


@dataclass(frozen=True)
class WebhookSettings:
    """Webhook ingress defaults."""

    signature_header: str = "x-relayflow-signature"
    api_key_header: str = "x-api-key"
    idempotency_header: str = "x-idempotency-key"
    idempotency_retention_ms: int = 24 * 60 * 60_000
    rate_limit_per_minute: int = 100


@dataclass(frozen=True)
class ConsumerSettings:
    """Message consumer defaults."""

    poll_interval_ms: int = 1000
    channel_capacity: int = 10
    retry_delay_ms: int = 1000
    max_retry_delay_ms: int = 30_000


@dataclass(frozen=True)
class SchedulerSettings:
    """Cron scheduler defaults.

    Attributes:
        misfire_grace_s: How late a slot may still fire; later slots are
            dropped. Missed slots within the window coalesce into one fire.
        default_timezone: Timezone for triggers that do not name one.
    """

    misfire_grace_s: int = 60
    default_timezone: str = "UTC"


@dataclass(frozen=True)
class LifecycleSettings:
    """Publishing workflow options."""

    require_review: bool = True


@dataclass(frozen=True)
class ExecutorSettings:
    """Defaults applied when a definition does not set its own."""

    step_timeout_ms: int = 60_000
    batch_size: int = 1000


@dataclass(frozen=True)
class EngineConfig:
    """Root configuration object.

    Attributes:
        version: Monotonic configuration version; bumped on every reload.
        state_dir: Directory for the JSON file state store. ``None`` keeps
            state in memory.
    """

    version: int = 1
    state_dir: str | None = None
    circuit: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    locks: LockSettings = field(default_factory=LockSettings)
    webhook: WebhookSettings = field(default_factory=WebhookSettings)
    consumer: ConsumerSettings = field(default_factory=ConsumerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        *,
        env_file: str | Path | None = None,
        version: int = 1,
    ) -> EngineConfig:
        """Build a config from ``RELAYFLOW_*`` variables.

        Args:
            env: Mapping to read instead of ``os.environ``.
            env_file: Optional dotenv file loaded before reading. Existing
                environment variables win over file values.
            version: Version number stamped on the result.

        Returns:
            A new frozen configuration.

        Raises:
            ValueError: If a variable cannot be coerced to its field type.
        """
        if env is None:
            load_dotenv(env_file or find_dotenv(usecwd=True), override=False)
            env = os.environ

        sections: dict[str, object] = {}
        for f in dataclasses.fields(cls):
            if f.name in ("version", "state_dir"):
                continue
            section_default = f.default_factory()  # type: ignore[misc]
            sections[f.name] = _section_from_env(
                section_default, f"{ENV_PREFIX}{f.name.upper()}_", env
            )
        state_dir = env.get(f"{ENV_PREFIX}STATE_DIR") or None
        return cls(version=version, state_dir=state_dir, **sections)  # type: ignore[arg-type]


def _section_from_env(section: object, prefix: str, env: Mapping[str, str]) -> object:
    overrides: dict[str, object] = {}
    for f in dataclasses.fields(section):  # type: ignore[arg-type]
        raw = env.get(prefix + f.name.upper())
        if raw is None:
            continue
        current = getattr(section, f.name)
        overrides[f.name] = _coerce(raw, current, prefix + f.name.upper())
    if not overrides:
        return section
    return dataclasses.replace(section, **overrides)  # type: ignore[type-var]


def _coerce(raw: str, current: object, name: str) -> object:
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"{name} must be a boolean, got {raw!r}")
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    return raw


class ConfigHolder:
    """Owns the current :class:`EngineConfig` and the only way to replace it."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        env_file: str | Path | None = None,
    ) -> None:
        self._env_file = env_file
        self._config = config or EngineConfig.from_env(env_file=env_file)

    @property
    def current(self) -> EngineConfig:
        return self._config

    def reload(self, env: Mapping[str, str] | None = None) -> EngineConfig:
        """Re-read the environment and publish a new config version."""
        new = EngineConfig.from_env(
            env, env_file=self._env_file, version=self._config.version + 1
        )
        logger.info(
            "Configuration reloaded (version %d -> %d)",
            self._config.version,
            new.version,
        )
        self._config = new
        return new
