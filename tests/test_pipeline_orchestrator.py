from datetime import datetime, timedelta, timezone

from conftest import ORIGINAL_URL, make_item
from storyflow.core.exceptions import ContentPolicyError, PublishingAuthError
from storyflow.core.runtime_config import (
    APPROVAL_REQUIRED,
    INTER_ITEM_DELAY_SECS,
    MAX_ITEMS_PER_RUN,
)
from storyflow.schemas.queue_models import AIModel, QueueStatus, SchedulingMode
from storyflow.schemas.request_models import ProcessOptions
from storyflow.services.pipeline_orchestrator import NO_PENDING_ITEMS


def enhanced_url(item_id):
    return f"https://cdn.test/enhanced/{item_id}.png"


def test_empty_queue_is_skipped(orchestrator):
    result = orchestrator.process_next_item()

    assert result.success
    assert result.skipped
    assert result.skip_reason == NO_PENDING_ITEMS


def test_publishes_directly_without_approval(orchestrator, store, runtime_config, publisher, telegram):
    runtime_config.set(APPROVAL_REQUIRED, False)
    item = store.enqueue(make_item())

    result = orchestrator.process_next_item()

    assert result.success
    assert result.status == QueueStatus.COMPLETED
    assert result.published_id == "story-1"
    assert result.enhanced_url == enhanced_url(item.id)
    stored = store.get(item.id)
    assert stored.status == QueueStatus.COMPLETED
    assert stored.final_url == enhanced_url(item.id)
    assert stored.is_enhanced
    publisher.create_story.assert_called_once_with(enhanced_url(item.id), "Butter croissant")
    telegram.send_confirmation.assert_called_once_with(True, item.id, "story-1")
    telegram.send_approval_request.assert_not_called()


def test_requests_approval_and_stops(orchestrator, store, publisher, telegram):
    item = store.enqueue(make_item())

    result = orchestrator.process_next_item()

    assert result.status == QueueStatus.AWAITING_APPROVAL
    assert result.message_id == 1000
    stored = store.get(item.id)
    assert stored.status == QueueStatus.AWAITING_APPROVAL
    assert stored.telegram_message_id == 1000
    assert stored.enhanced_url == enhanced_url(item.id)
    publisher.create_story.assert_not_called()


def test_item_level_skip_approval_wins(orchestrator, store):
    item = store.enqueue(make_item(skip_approval=True))

    result = orchestrator.process_next_item(ProcessOptions(require_approval=True))

    assert result.status == QueueStatus.COMPLETED
    assert store.get(item.id).status == QueueStatus.COMPLETED


def test_option_overrides_runtime_flag(orchestrator, store):
    store.enqueue(make_item())

    result = orchestrator.process_next_item(ProcessOptions(require_approval=False))

    assert result.status == QueueStatus.COMPLETED


def test_enhancement_failure_falls_back_to_original(orchestrator, store, enhancer, telegram):
    enhancer.error = ContentPolicyError("Content blocked by safety filter")
    item = store.enqueue(make_item())

    result = orchestrator.process_next_item()

    assert result.success
    assert result.status == QueueStatus.AWAITING_APPROVAL
    assert result.enhanced_url is None
    stored = store.get(item.id)
    assert "safety filter" in stored.enhancement_error
    assert telegram.send_approval_request.call_args.args[1] == ORIGINAL_URL


def test_enhancer_crash_publishes_original(orchestrator, store, enhancer, runtime_config, publisher):
    runtime_config.set(APPROVAL_REQUIRED, False)
    enhancer.error = RuntimeError("model backend exploded")
    item = store.enqueue(make_item())

    result = orchestrator.process_next_item()

    assert result.success
    assert result.status == QueueStatus.COMPLETED
    stored = store.get(item.id)
    assert stored.status == QueueStatus.COMPLETED
    assert stored.final_url == ORIGINAL_URL
    assert not stored.is_enhanced
    assert "model backend exploded" in stored.enhancement_error
    publisher.create_story.assert_called_once_with(ORIGINAL_URL, "Butter croissant")


def test_skip_enhancement_and_model_none(orchestrator, store, enhancer, runtime_config):
    runtime_config.set(APPROVAL_REQUIRED, False)
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    store.enqueue(make_item(ai_model=AIModel.NONE, created_at=base))
    store.enqueue(make_item(created_at=base + timedelta(seconds=1)))

    first = orchestrator.process_next_item()
    second = orchestrator.process_next_item(ProcessOptions(skip_enhancement=True))

    assert first.status == second.status == QueueStatus.COMPLETED
    assert first.enhanced_url is None
    assert second.enhanced_url is None
    assert enhancer.calls == 0


def test_publish_failure_marks_item_failed(orchestrator, store, runtime_config, publisher, telegram):
    runtime_config.set(APPROVAL_REQUIRED, False)
    publisher.create_story.side_effect = PublishingAuthError("Access token expired", 400, "190")
    item = store.enqueue(make_item())

    result = orchestrator.process_next_item()

    assert not result.success
    assert result.status == QueueStatus.FAILED
    assert result.error == "Access token expired"
    stored = store.get(item.id)
    assert stored.status == QueueStatus.FAILED
    assert stored.error == "Access token expired"
    telegram.send_error.assert_called_once_with("Access token expired", item.id)


def test_future_schedule_defers_publishing(orchestrator, store, clock, runtime_config, publisher, telegram):
    runtime_config.set(APPROVAL_REQUIRED, False)
    when = clock() + timedelta(hours=2)
    item = store.enqueue(make_item(scheduling_mode=SchedulingMode.SCHEDULED, scheduled_for=when))

    result = orchestrator.process_next_item()

    assert result.status == QueueStatus.SCHEDULED
    stored = store.get(item.id)
    assert stored.status == QueueStatus.SCHEDULED
    assert stored.final_url == enhanced_url(item.id)
    publisher.create_story.assert_not_called()
    telegram.send_scheduled_confirmation.assert_called_once_with(item.id, when)


def test_past_schedule_publishes_now(orchestrator, store, clock, runtime_config):
    runtime_config.set(APPROVAL_REQUIRED, False)
    store.enqueue(make_item(
        scheduling_mode=SchedulingMode.SCHEDULED,
        scheduled_for=clock() - timedelta(minutes=1),
    ))

    assert orchestrator.process_next_item().status == QueueStatus.COMPLETED


class TestExplicitItem:

    def test_processes_the_named_item(self, orchestrator, store):
        store.enqueue(make_item())
        target = store.enqueue(make_item(product_name="Pain au chocolat"))

        result = orchestrator.process_next_item(ProcessOptions(item_id=target.id))

        assert result.item_id == target.id
        assert store.get(target.id).status == QueueStatus.AWAITING_APPROVAL

    def test_not_pending(self, orchestrator, store, awaiting):
        result = orchestrator.process_next_item(ProcessOptions(item_id=awaiting.id))

        assert not result.success
        assert result.skipped
        assert result.status == QueueStatus.AWAITING_APPROVAL
        assert "awaiting_approval" in result.skip_reason

    def test_not_found(self, orchestrator):
        result = orchestrator.process_next_item(ProcessOptions(item_id="ghost"))

        assert not result.success
        assert result.error == "Item not found: ghost"


class TestProcessAll:

    def test_caps_items_and_pauses_between_them(self, orchestrator, store, runtime_config, sleeps):
        runtime_config.set(APPROVAL_REQUIRED, False)
        runtime_config.set(MAX_ITEMS_PER_RUN, 2)
        runtime_config.set(INTER_ITEM_DELAY_SECS, 1.5)
        for _ in range(3):
            store.enqueue(make_item())

        batch = orchestrator.process_all_pending()

        assert batch.processed == 2
        assert batch.failed == 0
        assert len(batch.results) == 2
        assert sleeps == [1.5]
        assert store.stats()["pending"] == 1

    def test_counts_failures(self, orchestrator, store, runtime_config, publisher):
        runtime_config.set(APPROVAL_REQUIRED, False)
        runtime_config.set(INTER_ITEM_DELAY_SECS, 0)
        publisher.create_story.side_effect = PublishingAuthError("Access token expired", 400, "190")
        store.enqueue(make_item())
        store.enqueue(make_item())

        batch = orchestrator.process_all_pending()

        assert batch.processed == 0
        assert batch.failed == 2
        assert store.stats()["failed"] == 2

    def test_empty_queue(self, orchestrator, sleeps):
        batch = orchestrator.process_all_pending()

        assert batch.processed == 0
        assert batch.results == []
        assert sleeps == []
