import pytest
import redis

from storyflow.core.config import settings
from storyflow.core.runtime_config import (
    APPROVAL_REQUIRED,
    APPROVAL_TIMEOUT_MINUTES,
    MAX_ITEMS_PER_RUN,
    RuntimeConfigProvider,
)


class Ticker:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_defaults_come_from_settings(runtime_config):
    assert runtime_config.get(APPROVAL_TIMEOUT_MINUTES) == settings.APPROVAL_TIMEOUT_MINUTES
    assert runtime_config.get(APPROVAL_REQUIRED) is settings.APPROVAL_REQUIRED


def test_overrides_are_parsed(runtime_config):
    runtime_config.set(APPROVAL_TIMEOUT_MINUTES, 30)
    runtime_config.set(APPROVAL_REQUIRED, False)
    runtime_config.set(MAX_ITEMS_PER_RUN, "3")

    assert runtime_config.get(APPROVAL_TIMEOUT_MINUTES) == 30.0
    assert runtime_config.get(APPROVAL_REQUIRED) is False
    assert runtime_config.get(MAX_ITEMS_PER_RUN) == 3


def test_unknown_key(runtime_config):
    with pytest.raises(KeyError):
        runtime_config.get("colour_scheme")
    with pytest.raises(KeyError):
        runtime_config.set("colour_scheme", "blue")


def test_invalid_value_falls_back_to_default(runtime_config, redis_client):
    redis_client.hset("test:runtime_config", MAX_ITEMS_PER_RUN, "lots")
    assert runtime_config.get(MAX_ITEMS_PER_RUN) == settings.MAX_ITEMS_PER_RUN


def test_cache_respects_ttl(redis_client):
    ticker = Ticker()
    provider = RuntimeConfigProvider(redis_client, ttl_seconds=60, key_prefix="test", clock=ticker)
    assert provider.get(APPROVAL_TIMEOUT_MINUTES) == settings.APPROVAL_TIMEOUT_MINUTES

    redis_client.hset("test:runtime_config", APPROVAL_TIMEOUT_MINUTES, "45")
    ticker.now = 59
    assert provider.get(APPROVAL_TIMEOUT_MINUTES) == settings.APPROVAL_TIMEOUT_MINUTES

    ticker.now = 60
    assert provider.get(APPROVAL_TIMEOUT_MINUTES) == 45.0


def test_redis_outage_serves_last_snapshot(redis_client, monkeypatch):
    provider = RuntimeConfigProvider(redis_client, ttl_seconds=0, key_prefix="test")
    provider.set(APPROVAL_TIMEOUT_MINUTES, 20)
    assert provider.get(APPROVAL_TIMEOUT_MINUTES) == 20.0

    def broken(*args, **kwargs):
        raise redis.ConnectionError("down")

    monkeypatch.setattr(redis_client, "hgetall", broken)
    assert provider.get(APPROVAL_TIMEOUT_MINUTES) == 20.0
    assert provider.as_dict()[APPROVAL_TIMEOUT_MINUTES] == 20.0
