import itertools
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, create_autospec

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import fakeredis
import pytest

from storyflow.core.runtime_config import RuntimeConfigProvider
from storyflow.integrations.gemini_client import TransformResult
from storyflow.integrations.publishing_gateway import PublishedStory, PublishingGateway
from storyflow.integrations.telegram_client import TelegramClient
from storyflow.schemas.queue_models import AIModel, QueueItem
from storyflow.services.approval_gateway import ApprovalGateway
from storyflow.services.enhancement_service import EnhancementService
from storyflow.services.pipeline_orchestrator import PipelineOrchestrator
from storyflow.services.queue_store import QueueStore
from storyflow.services.scheduled_publisher import ScheduledPublisher
from storyflow.services.timeout_reaper import TimeoutReaper

CHAT_ID = "12345"
ORIGINAL_URL = "https://img.test/original.jpg"


class MutableClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeEnhancer:
    """ImageEnhancer double; `on_transform` runs mid-call to simulate races."""

    def __init__(self):
        self.calls = 0
        self.error = None
        self.on_transform = None

    def transform(self, image_bytes, mime_type, options):
        self.calls += 1
        if self.on_transform is not None:
            self.on_transform()
        if self.error is not None:
            raise self.error
        return TransformResult(
            image_bytes=b"enhanced-bytes",
            mime_type="image/png",
            model="fake-image-model",
            cost=0.01,
        )


def make_item(**overrides) -> QueueItem:
    fields = {
        "original_url": ORIGINAL_URL,
        "product_name": "Butter croissant",
        "product_category": "viennoiserie",
    }
    fields.update(overrides)
    return QueueItem(**fields)


def put_awaiting(store: QueueStore, message_id: int = 500, **overrides) -> QueueItem:
    """Enqueue an item and walk it to awaiting_approval."""
    item = store.enqueue(make_item(**overrides))
    assert store.mark_processing(item.id)
    assert store.mark_awaiting_approval(item.id, message_id)
    return store.get(item.id)


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def clock():
    return MutableClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(redis_client, clock):
    return QueueStore(redis_client, key_prefix="test", clock=clock)


@pytest.fixture
def runtime_config(redis_client):
    return RuntimeConfigProvider(redis_client, ttl_seconds=0, key_prefix="test")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def telegram():
    client = create_autospec(TelegramClient, instance=True)
    client.chat_id = CHAT_ID
    message_ids = itertools.count(1000)
    client.send_approval_request.side_effect = lambda *args, **kwargs: next(message_ids)
    return client


@pytest.fixture
def publisher():
    gateway = create_autospec(PublishingGateway, instance=True)
    story_ids = itertools.count(1)
    gateway.create_story.side_effect = lambda image_url, caption="": PublishedStory(
        id=f"story-{next(story_ids)}",
        container_id="container-1",
        image_url=image_url,
        caption=caption,
    )
    return gateway


@pytest.fixture
def enhancer():
    return FakeEnhancer()


@pytest.fixture
def image_storage():
    storage = MagicMock()
    storage.upload.side_effect = lambda item_id, data, mime_type: f"https://cdn.test/enhanced/{item_id}.png"
    return storage


@pytest.fixture
def download_session():
    session = MagicMock()
    response = MagicMock()
    response.content = b"original-bytes"
    response.headers = {"Content-Type": "image/jpeg"}
    response.raise_for_status.return_value = None
    session.get.return_value = response
    return session


@pytest.fixture
def enhancement(enhancer, image_storage, download_session, sleeps):
    return EnhancementService(
        {AIModel.GEMINI_FLASH: enhancer, AIModel.GEMINI_PRO: enhancer},
        image_storage,
        sleep=sleeps.append,
        session=download_session,
    )


@pytest.fixture
def gateway(store, telegram, publisher, enhancement, runtime_config):
    return ApprovalGateway(
        store, telegram, publisher, enhancement, runtime_config, brand_name="Test Bakery"
    )


@pytest.fixture
def orchestrator(store, enhancement, gateway, publisher, telegram, runtime_config, sleeps):
    return PipelineOrchestrator(
        store,
        enhancement,
        gateway,
        publisher,
        telegram,
        runtime_config,
        brand_name="Test Bakery",
        sleep=sleeps.append,
    )


@pytest.fixture
def reaper(store, telegram, runtime_config):
    return TimeoutReaper(store, telegram, runtime_config)


@pytest.fixture
def scheduled_publisher(store, publisher, telegram, runtime_config):
    return ScheduledPublisher(store, publisher, telegram, runtime_config, brand_name="Test Bakery")


@pytest.fixture
def awaiting(store):
    return put_awaiting(store)

