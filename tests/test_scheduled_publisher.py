from datetime import timedelta

from conftest import make_item
from storyflow.core.exceptions import PublishingError
from storyflow.core.runtime_config import SCHEDULED_BATCH_SIZE
from storyflow.schemas.queue_models import QueueStatus

FINAL_URL = "https://cdn.test/final.png"


def schedule(store, when):
    item = store.enqueue(make_item())
    store.mark_processing(item.id)
    store.mark_scheduled(item.id, when, from_status=QueueStatus.PROCESSING, final_url=FINAL_URL)
    return item


def test_publishes_due_items(scheduled_publisher, store, clock, publisher, telegram):
    item = schedule(store, clock() + timedelta(hours=1))
    clock.advance(hours=1)

    summary = scheduled_publisher.publish_due()

    assert summary == {"checked": 1, "published": 1, "failed": 0, "skipped": 0}
    stored = store.get(item.id)
    assert stored.status == QueueStatus.COMPLETED
    assert stored.published_id == "story-1"
    publisher.create_story.assert_called_once_with(FINAL_URL, "Butter croissant")
    telegram.send_confirmation.assert_called_once_with(True, item.id, "story-1")


def test_future_items_wait(scheduled_publisher, store, clock, publisher):
    item = schedule(store, clock() + timedelta(hours=1))

    assert scheduled_publisher.publish_due()["checked"] == 0
    assert store.get(item.id).status == QueueStatus.SCHEDULED
    publisher.create_story.assert_not_called()


def test_publish_failure(scheduled_publisher, store, clock, publisher, telegram):
    item = schedule(store, clock())
    publisher.create_story.side_effect = PublishingError("Failed to publish story", 500)

    summary = scheduled_publisher.publish_due()

    assert summary["failed"] == 1
    stored = store.get(item.id)
    assert stored.status == QueueStatus.FAILED
    assert stored.error == "Failed to publish story"
    telegram.send_error.assert_called_once_with(
        "Scheduled publish failed: Failed to publish story", item.id
    )


def test_item_claimed_elsewhere_is_skipped(scheduled_publisher, store, clock, publisher, monkeypatch):
    item = schedule(store, clock())
    stale = store.get_due_scheduled()
    assert store.mark_publishing(item.id)
    monkeypatch.setattr(store, "get_due_scheduled", lambda now, limit: stale)

    summary = scheduled_publisher.publish_due()

    assert summary == {"checked": 1, "published": 0, "failed": 0, "skipped": 1}
    publisher.create_story.assert_not_called()


def test_batch_size_from_runtime_config(scheduled_publisher, store, clock, runtime_config):
    runtime_config.set(SCHEDULED_BATCH_SIZE, 1)
    schedule(store, clock() - timedelta(minutes=2))
    schedule(store, clock() - timedelta(minutes=1))

    assert scheduled_publisher.publish_due()["published"] == 1
    assert store.stats()["scheduled"] == 1
