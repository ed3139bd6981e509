"""Environment-driven settings and engine assembly.

All knobs are read from ``TASKWIRE_*`` environment variables.  There is
no default dispatch timeout: every dispatch names its own.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from taskwire.core.engine import CorrelationEngine, EngineConfig
from taskwire.core.reaper import ReaperConfig

if TYPE_CHECKING:
    from taskwire.core.events import EventBus
    from taskwire.storage.base import MessageHistory
    from taskwire.transport.base import InboundChannel, OutboundChannel

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = _get_optional_int(env, name)
    return default if value is None else value


def _get_optional_int(env: Mapping[str, str], name: str) -> int | None:
    raw = env.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _get_choice(env: Mapping[str, str], name: str, default: str, choices: set[str]) -> str:
    value = env.get(name) or default
    value = value.strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {sorted(choices)}, got {value!r}")
    return value


@dataclass
class Settings:
    """Runtime configuration for a taskwire process."""

    log_level: str = "INFO"
    log_json: bool = True
    transport: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    request_stream: str = "taskwire:requests"
    reply_stream: str = "taskwire:replies"
    reap_interval_seconds: float = 0.5
    max_in_flight: int | None = None
    shards: int = 16
    max_concurrency: int = 32
    history: str = "memory"

    def __post_init__(self) -> None:
        if self.reap_interval_seconds <= 0:
            raise ValueError("TASKWIRE_REAP_INTERVAL must be positive")
        if self.shards < 1:
            raise ValueError("TASKWIRE_SHARDS must be >= 1")
        if self.max_concurrency < 1:
            raise ValueError("TASKWIRE_MAX_CONCURRENCY must be >= 1")
        if self.max_in_flight is not None and self.max_in_flight < 1:
            raise ValueError("TASKWIRE_MAX_IN_FLIGHT must be >= 1")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """Read settings from *env* (defaults to ``os.environ``)."""
        env = os.environ if env is None else env
        return cls(
            log_level=(env.get("TASKWIRE_LOG_LEVEL") or "INFO").upper(),
            log_json=_get_bool(env, "TASKWIRE_LOG_JSON", True),
            transport=_get_choice(env, "TASKWIRE_TRANSPORT", "memory", {"memory", "redis"}),
            redis_url=env.get("TASKWIRE_REDIS_URL") or "redis://localhost:6379/0",
            request_stream=env.get("TASKWIRE_REQUEST_STREAM") or "taskwire:requests",
            reply_stream=env.get("TASKWIRE_REPLY_STREAM") or "taskwire:replies",
            reap_interval_seconds=_get_float(env, "TASKWIRE_REAP_INTERVAL", 0.5),
            max_in_flight=_get_optional_int(env, "TASKWIRE_MAX_IN_FLIGHT"),
            shards=_get_int(env, "TASKWIRE_SHARDS", 16),
            max_concurrency=_get_int(env, "TASKWIRE_MAX_CONCURRENCY", 32),
            history=_get_choice(env, "TASKWIRE_HISTORY", "memory", {"memory", "redis", "none"}),
        )

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            shards=self.shards,
            max_in_flight=self.max_in_flight,
            max_concurrency=self.max_concurrency,
            reaper=ReaperConfig(interval_seconds=self.reap_interval_seconds),
        )


def build_channels(settings: Settings) -> tuple[OutboundChannel, InboundChannel]:
    """Create the request and reply channels named by *settings*."""
    if settings.transport == "redis":
        from taskwire.transport.redis import RedisStreamChannel

        return (
            RedisStreamChannel(settings.request_stream, settings.redis_url),
            RedisStreamChannel(settings.reply_stream, settings.redis_url),
        )

    from taskwire.transport.memory import InMemoryChannel

    return InMemoryChannel(), InMemoryChannel()


def build_history(settings: Settings) -> MessageHistory | None:
    if settings.history == "none":
        return None
    if settings.history == "redis":
        from taskwire.storage.redis import RedisMessageHistory

        return RedisMessageHistory(settings.redis_url)

    from taskwire.storage.memory import InMemoryMessageHistory

    return InMemoryMessageHistory()


def build_engine(
    settings: Settings | None = None, event_bus: EventBus | None = None
) -> CorrelationEngine:
    """Assemble a :class:`CorrelationEngine` from *settings*."""
    settings = settings or Settings.from_env()
    outbound, inbound = build_channels(settings)
    return CorrelationEngine(
        outbound=outbound,
        inbound=inbound,
        config=settings.engine_config(),
        event_bus=event_bus,
        history=build_history(settings),
    )
