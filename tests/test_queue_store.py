import threading
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from conftest import make_item, put_awaiting
from storyflow.core.exceptions import IllegalTransitionError, QueueStoreError
from storyflow.schemas.queue_models import QueueStatus
from storyflow.services.queue_store import QueueStore


def raw_record(redis_client, item_id):
    return redis_client.get(f"test:item:{item_id}")


class TestEnqueue:

    def test_forces_pending_and_defaults(self, store):
        item = store.enqueue(make_item(status=QueueStatus.COMPLETED))

        stored = store.get(item.id)
        assert stored.status == QueueStatus.PENDING
        assert stored.ai_model.value == "gemini-flash"
        assert stored.faithfulness == 0.7
        assert stored.style_variant == "lifestyle-moments"
        assert store.stats()["pending"] == 1

    def test_rejects_duplicate_id(self, store):
        item = store.enqueue(make_item())
        with pytest.raises(QueueStoreError):
            store.enqueue(make_item(id=item.id))


class TestTransition:

    def test_mismatch_leaves_record_untouched(self, store, redis_client):
        item = store.enqueue(make_item())
        before = raw_record(redis_client, item.id)

        assert store.transition(
            item.id, QueueStatus.AWAITING_APPROVAL, QueueStatus.APPROVED, {"error": "x"}
        ) is False

        assert raw_record(redis_client, item.id) == before
        assert store.stats()["pending"] == 1

    def test_missing_record_returns_false(self, store):
        assert store.transition("missing", QueueStatus.PENDING, QueueStatus.PROCESSING) is False

    def test_illegal_edge_raises(self, store):
        item = store.enqueue(make_item())
        with pytest.raises(IllegalTransitionError):
            store.transition(item.id, QueueStatus.PENDING, QueueStatus.COMPLETED)

    def test_success_moves_status_index(self, store):
        item = store.enqueue(make_item())
        assert store.mark_processing(item.id)

        stats = store.stats()
        assert stats["pending"] == 0
        assert stats["processing"] == 1
        assert stats["total"] == 1
        assert store.get(item.id).processing_started_at is not None

    def test_terminal_status_is_immutable(self, store, awaiting):
        assert store.mark_rejected(awaiting.id)

        assert store.mark_approved(awaiting.id) is False
        assert store.mark_as_timeout(awaiting.id) is False
        assert store.get(awaiting.id).status == QueueStatus.REJECTED

    def test_update_fields_guarded_by_status(self, store):
        item = store.enqueue(make_item())
        assert store.update_fields(item.id, QueueStatus.PROCESSING, {"enhancement_error": "x"}) is False
        assert store.update_fields(item.id, QueueStatus.PENDING, {"enhancement_error": "x"}) is True
        assert store.get(item.id).enhancement_error == "x"
        assert store.get(item.id).status == QueueStatus.PENDING


class TestNextPending:

    def test_returns_oldest_already_claimed(self, store):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        newer = store.enqueue(make_item(created_at=base + timedelta(minutes=5)))
        older = store.enqueue(make_item(created_at=base))

        claimed = store.next_pending()

        assert claimed.id == older.id
        assert claimed.status == QueueStatus.PROCESSING
        assert store.get(newer.id).status == QueueStatus.PENDING

    def test_never_returns_the_same_item_twice(self, store):
        ids = {store.enqueue(make_item()).id for _ in range(3)}

        claimed = [store.next_pending() for _ in range(4)]

        assert {c.id for c in claimed[:3]} == ids
        assert claimed[3] is None

    def test_empty_queue(self, store):
        assert store.next_pending() is None

    def test_concurrent_claims_hand_out_distinct_items(self, clock):
        server = fakeredis.FakeServer()
        seed = QueueStore(fakeredis.FakeRedis(server=server, decode_responses=True), key_prefix="test", clock=clock)
        ids = {seed.enqueue(make_item()).id for _ in range(5)}

        claimed = []
        lock = threading.Lock()
        barrier = threading.Barrier(5)

        def worker():
            worker_store = QueueStore(
                fakeredis.FakeRedis(server=server, decode_responses=True), key_prefix="test", clock=clock
            )
            barrier.wait()
            item = worker_store.next_pending()
            with lock:
                claimed.append(item.id if item else None)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        got = [c for c in claimed if c is not None]
        assert len(got) == len(set(got))
        assert set(got) <= ids
        assert all(seed.get(i).status == QueueStatus.PROCESSING for i in got)


class TestRegenerationLock:

    def test_only_first_caller_acquires(self, store, awaiting):
        assert store.try_mark_for_regeneration(awaiting.id) is True
        assert store.try_mark_for_regeneration(awaiting.id) is False

        item = store.get(awaiting.id)
        assert item.status == QueueStatus.REGENERATING
        assert item.regeneration_count == 1
        assert item.enhanced_url is None

    def test_concurrent_callers_exactly_one_wins(self, clock):
        server = fakeredis.FakeServer()
        seed = QueueStore(fakeredis.FakeRedis(server=server, decode_responses=True), key_prefix="test", clock=clock)
        item = put_awaiting(seed)

        results = []
        barrier = threading.Barrier(8)

        def worker():
            worker_store = QueueStore(
                fakeredis.FakeRedis(server=server, decode_responses=True), key_prefix="test", clock=clock
            )
            barrier.wait()
            results.append(worker_store.try_mark_for_regeneration(item.id))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert seed.get(item.id).regeneration_count == 1


class TestTimedOutItems:

    def test_threshold_is_inclusive(self, store, clock):
        item = put_awaiting(store)

        clock.advance(minutes=15, seconds=-1)
        assert store.get_timed_out_items(15) == []

        clock.advance(seconds=1)
        assert [i.id for i in store.get_timed_out_items(15)] == [item.id]

    def test_answered_items_leave_the_index(self, store, clock):
        item = put_awaiting(store)
        assert store.mark_approved(item.id)

        clock.advance(hours=1)
        assert store.get_timed_out_items(15) == []


class TestScheduling:

    def test_due_scheduled_only(self, store, clock):
        due = store.enqueue(make_item())
        later = store.enqueue(make_item())
        for item, offset in ((due, -5), (later, 60)):
            store.mark_processing(item.id)
            store.mark_scheduled(item.id, clock() + timedelta(minutes=offset), from_status=QueueStatus.PROCESSING)

        assert [i.id for i in store.get_due_scheduled()] == [due.id]

        assert store.mark_publishing(due.id)
        assert store.get_due_scheduled() == []


class TestDelete:

    def test_delete_pending(self, store):
        item = store.enqueue(make_item())
        assert store.delete(item.id) is True
        assert store.get(item.id) is None
        assert store.stats()["total"] == 0

    def test_in_flight_items_cannot_be_deleted(self, store):
        item = store.enqueue(make_item())
        store.mark_processing(item.id)
        with pytest.raises(QueueStoreError):
            store.delete(item.id)

    def test_unknown_item(self, store):
        assert store.delete("nope") is False


def test_list_by_status(store):
    first = store.enqueue(make_item(created_at=datetime(2026, 1, 1, tzinfo=timezone.utc)))
    store.enqueue(make_item(created_at=datetime(2026, 1, 2, tzinfo=timezone.utc)))

    listed = store.list_by_status(QueueStatus.PENDING, limit=1)
    assert [i.id for i in listed] == [first.id]
