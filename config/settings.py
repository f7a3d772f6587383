"""
Configuration loader for the journey engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from job_queue.message_queue import Queues


def _default_concurrency() -> dict[str, int]:
    return {name: 1 for name in Queues.STEP_QUEUES} | {Queues.WEBHOOK_DISPATCH: 1}


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "journey-workers"
    concurrency: dict[str, int] = field(default_factory=_default_concurrency)
    stalled_interval_ms: int = 600000   # re-deliver jobs unacknowledged this long
    remove_on_complete: int = 0         # completed job ids kept per queue
    retry_backoff_base: int = 60        # base seconds for exponential retry backoff
    max_attempts: int = 3
    delayed_promote_interval: int = 5   # seconds between delayed-queue scans

    def concurrency_for(self, queue: str) -> int:
        return max(int(self.concurrency.get(queue, 1)), 0)


@dataclass
class LockConfig:
    backend: str = "memory"             # "memory" | "sql"
    max_hold_seconds: int = 600
    reaper_interval: int = 60


@dataclass
class RateLimitConfig:
    backend: str = "memory"             # "memory" | "redis"
    redis_url: str = "redis://localhost:6379"


@dataclass
class MockSendConfig:
    enabled: bool = False
    ping_url: str = ""


@dataclass
class CacheConfig:
    ttl_seconds: float = 60.0
    max_size: int = 5000


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./journeys.db"  # postgresql:// | mysql:// | sqlite://
    echo: bool = False


@dataclass
class Settings:
    app_name: str = "JourneyEngine"
    debug: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    locks: LockConfig = field(default_factory=LockConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    mock_send: MockSendConfig = field(default_factory=MockSendConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "JOURNEY_ENGINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))

        if "queue" in raw:
            q = raw["queue"]
            defaults = QueueConfig()
            settings.queue = QueueConfig(
                backend=q.get("backend", defaults.backend),
                redis_url=q.get("redis_url", defaults.redis_url),
                consumer_group=q.get("consumer_group", defaults.consumer_group),
                concurrency={**defaults.concurrency, **(q.get("concurrency") or {})},
                stalled_interval_ms=int(q.get("stalled_interval_ms", defaults.stalled_interval_ms)),
                remove_on_complete=int(q.get("remove_on_complete", defaults.remove_on_complete)),
                retry_backoff_base=int(q.get("retry_backoff_base", defaults.retry_backoff_base)),
                max_attempts=int(q.get("max_attempts", defaults.max_attempts)),
                delayed_promote_interval=int(q.get("delayed_promote_interval", defaults.delayed_promote_interval)),
            )

        if "locks" in raw:
            lk = raw["locks"]
            settings.locks = LockConfig(
                backend=lk.get("backend", "memory"),
                max_hold_seconds=int(lk.get("max_hold_seconds", 600)),
                reaper_interval=int(lk.get("reaper_interval", 60)),
            )

        if "rate_limits" in raw:
            rl = raw["rate_limits"]
            settings.rate_limits = RateLimitConfig(
                backend=rl.get("backend", "memory"),
                redis_url=rl.get("redis_url", "redis://localhost:6379"),
            )

        if "mock_send" in raw:
            ms = raw["mock_send"]
            settings.mock_send = MockSendConfig(
                enabled=_as_bool(ms.get("enabled", False)),
                ping_url=ms.get("ping_url", "") or "",
            )

        if "cache" in raw:
            c = raw["cache"]
            settings.cache = CacheConfig(
                ttl_seconds=float(c.get("ttl_seconds", 60.0)),
                max_size=int(c.get("max_size", 5000)),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                echo=_as_bool(db.get("echo", False)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
