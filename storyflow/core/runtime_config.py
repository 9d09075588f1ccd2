# core/runtime_config.py
"""
Hot-reloadable runtime configuration.

Values live in the Redis hash `{prefix}:runtime_config` so an operator can
change them without a redeploy (HSET storyflow:runtime_config
approval_timeout_minutes 30). Reads go through a process-local cache with an
explicit TTL; missing keys fall back to the environment defaults in Settings.
"""

import threading
import time
from typing import Any, Callable, Dict, Optional

import redis

from storyflow.core.config import settings
from storyflow.core.logger import logger

APPROVAL_TIMEOUT_MINUTES = "approval_timeout_minutes"
APPROVAL_REQUIRED = "approval_required"
INTER_ITEM_DELAY_SECS = "inter_item_delay_secs"
MAX_ITEMS_PER_RUN = "max_items_per_run"
SCHEDULED_BATCH_SIZE = "scheduled_batch_size"


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# key -> (parser, default from Settings)
_SCHEMA: Dict[str, tuple] = {
    APPROVAL_TIMEOUT_MINUTES: (float, lambda: settings.APPROVAL_TIMEOUT_MINUTES),
    APPROVAL_REQUIRED: (_parse_bool, lambda: settings.APPROVAL_REQUIRED),
    INTER_ITEM_DELAY_SECS: (float, lambda: settings.INTER_ITEM_DELAY_SECS),
    MAX_ITEMS_PER_RUN: (int, lambda: settings.MAX_ITEMS_PER_RUN),
    SCHEDULED_BATCH_SIZE: (int, lambda: settings.SCHEDULED_BATCH_SIZE),
}


class RuntimeConfigProvider:
    """
    `get(key) -> value` over the Redis hash, cached for `ttl_seconds`.

    A Redis outage never breaks a caller: the last cached snapshot (or the
    environment defaults) is served and the failure is logged.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        *,
        ttl_seconds: Optional[float] = None,
        key_prefix: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.redis = redis_client
        self.ttl_seconds = settings.RUNTIME_CONFIG_TTL_SECS if ttl_seconds is None else ttl_seconds
        self.hash_key = f"{key_prefix or settings.REDIS_KEY_PREFIX}:runtime_config"
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, str]] = None
        self._loaded_at = 0.0

    def get(self, key: str) -> Any:
        if key not in _SCHEMA:
            raise KeyError(f"Unknown runtime config key: {key}")

        parser, default = _SCHEMA[key]
        raw = self._snapshot().get(key)
        if raw is None:
            return default()

        try:
            return parser(raw)
        except (TypeError, ValueError):
            logger.warning(f"Invalid runtime config value for {key}: {raw!r}, using default")
            return default()

    def set(self, key: str, value: Any) -> None:
        """Persist an override and drop the local cache."""
        if key not in _SCHEMA:
            raise KeyError(f"Unknown runtime config key: {key}")
        self.redis.hset(self.hash_key, key, str(value).lower() if isinstance(value, bool) else str(value))
        self.invalidate()

    def as_dict(self) -> Dict[str, Any]:
        return {key: self.get(key) for key in _SCHEMA}

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None

    def _snapshot(self) -> Dict[str, str]:
        with self._lock:
            now = self._clock()
            if self._cache is not None and now - self._loaded_at < self.ttl_seconds:
                return self._cache

            try:
                self._cache = self.redis.hgetall(self.hash_key) or {}
                self._loaded_at = now
            except redis.RedisError as e:
                logger.error(f"Failed to load runtime config, serving cached values: {e}")
                if self._cache is None:
                    return {}
            return self._cache
