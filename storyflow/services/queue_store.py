# services/queue_store.py
"""
Redis-backed queue store: the single source of truth for item status.

Storage layout (all keys under settings.REDIS_KEY_PREFIX):
- {prefix}:item:{id}        → QueueItem JSON
- {prefix}:status:{status}  → sorted set of ids, score = created_at
- {prefix}:approvals        → sorted set of ids awaiting approval, score = approval_requested_at
- {prefix}:schedule         → sorted set of scheduled ids, score = scheduled_for

Every status change is a compare-and-set: the item key is WATCHed, its
persisted status compared with the expected one, and the document plus all
index entries are rewritten in one MULTI/EXEC. A lost race surfaces as
WatchError, the status is re-read, and the mismatch is reported as False.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

import redis
from redis.exceptions import WatchError

from storyflow.core.config import settings
from storyflow.core.exceptions import QueueStoreError
from storyflow.core.logger import logger
from storyflow.schemas.queue_models import (
    QueueItem,
    QueueStatus,
    ensure_transition_allowed,
    utc_now,
)

FieldBuilder = Callable[[QueueItem], Mapping[str, Any]]

_PROTECTED_FIELDS = {"id", "status", "created_at"}


class QueueStore:
    """
    CRUD and state transitions over queue items.

    Thread-safe and multi-process safe: no in-process locks, all
    coordination happens through Redis optimistic transactions.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        *,
        key_prefix: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
        max_cas_retries: int = 16,
        max_claim_attempts: int = 10
    ):
        self.redis = redis_client
        self.prefix = key_prefix or settings.REDIS_KEY_PREFIX
        self.clock = clock
        self.max_cas_retries = max_cas_retries
        self.max_claim_attempts = max_claim_attempts

    # ========================================================================
    # KEYS
    # ========================================================================

    def _item_key(self, item_id: str) -> str:
        return f"{self.prefix}:item:{item_id}"

    def _status_key(self, status: QueueStatus) -> str:
        return f"{self.prefix}:status:{status.value}"

    @property
    def _approvals_key(self) -> str:
        return f"{self.prefix}:approvals"

    @property
    def _schedule_key(self) -> str:
        return f"{self.prefix}:schedule"

    # ========================================================================
    # CRUD
    # ========================================================================

    def enqueue(self, item: QueueItem) -> QueueItem:
        """
        Store a new item in `pending`.

        Defaults for enhancement parameters come from the model; the status
        is always forced to pending regardless of what the caller passed.
        """
        stored = QueueItem.model_validate({
            **item.model_dump(),
            "status": QueueStatus.PENDING,
            "updated_at": self.clock(),
        })
        key = self._item_key(stored.id)

        with self.redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.exists(key):
                    raise QueueStoreError(f"Queue item already exists: {stored.id}")
                pipe.multi()
                pipe.set(key, stored.model_dump_json())
                pipe.zadd(
                    self._status_key(QueueStatus.PENDING),
                    {stored.id: stored.created_at.timestamp()}
                )
                pipe.execute()
            except WatchError:
                raise QueueStoreError(f"Concurrent write while enqueueing {stored.id}")

        logger.info(
            f"Queue item enqueued: {stored.id}",
            extra={"item_id": stored.id, "category": stored.product_category}
        )
        return stored

    def get(self, item_id: str) -> Optional[QueueItem]:
        raw = self.redis.get(self._item_key(item_id))
        if raw is None:
            return None
        return QueueItem.model_validate_json(raw)

    def list_by_status(self, status: QueueStatus, limit: int = 50) -> List[QueueItem]:
        """Oldest first."""
        ids = self.redis.zrange(self._status_key(status), 0, max(limit, 1) - 1)
        return self._load_many(ids)

    def delete(self, item_id: str) -> bool:
        """
        Remove an item that is not in flight.
        Items being processed, regenerated or published cannot be deleted.
        """
        key = self._item_key(item_id)
        in_flight = {QueueStatus.PROCESSING, QueueStatus.REGENERATING, QueueStatus.PUBLISHING}

        with self.redis.pipeline() as pipe:
            for _ in range(self.max_cas_retries):
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        pipe.unwatch()
                        return False
                    current = QueueItem.model_validate_json(raw)
                    if current.status in in_flight:
                        pipe.unwatch()
                        raise QueueStoreError(
                            f"Item {item_id} cannot be deleted while {current.status.value}"
                        )
                    pipe.multi()
                    pipe.delete(key)
                    pipe.zrem(self._status_key(current.status), item_id)
                    pipe.zrem(self._approvals_key, item_id)
                    pipe.zrem(self._schedule_key, item_id)
                    pipe.execute()
                    logger.info(f"Queue item deleted: {item_id}")
                    return True
                except WatchError:
                    continue
        return False

    # ========================================================================
    # CONDITIONAL TRANSITIONS
    # ========================================================================

    def transition(
        self,
        item_id: str,
        from_expected: QueueStatus,
        to_status: QueueStatus,
        fields: Optional[Mapping[str, Any]] = None
    ) -> bool:
        """
        Move `item_id` from `from_expected` to `to_status`, writing `fields` with it.

        Returns False (never raises) when the record is missing or its persisted
        status differs from `from_expected`; the record is then left untouched.
        Raises IllegalTransitionError for edges outside the lifecycle graph.
        """
        ensure_transition_allowed(from_expected, to_status)
        payload = dict(fields or {})
        updated = self._compare_and_set(item_id, from_expected, to_status, lambda _: payload)
        return updated is not None

    def update_fields(
        self,
        item_id: str,
        expected_status: QueueStatus,
        fields: Mapping[str, Any]
    ) -> bool:
        """Write bookkeeping fields without changing status, guarded by the current status."""
        payload = dict(fields)
        updated = self._compare_and_set(item_id, expected_status, expected_status, lambda _: payload)
        return updated is not None

    def mark_processing(self, item_id: str) -> bool:
        return self.transition(
            item_id,
            QueueStatus.PENDING,
            QueueStatus.PROCESSING,
            {"processing_started_at": self.clock()}
        )

    def mark_awaiting_approval(
        self,
        item_id: str,
        message_id: int,
        enhanced_url: Optional[str] = None,
        from_status: QueueStatus = QueueStatus.PROCESSING
    ) -> bool:
        fields: Dict[str, Any] = {
            "approval_requested_at": self.clock(),
            "approval_responded_at": None,
            "telegram_message_id": message_id,
        }
        if enhanced_url:
            fields["enhanced_url"] = enhanced_url
        return self.transition(item_id, from_status, QueueStatus.AWAITING_APPROVAL, fields)

    def mark_approved(self, item_id: str) -> bool:
        return self.transition(
            item_id,
            QueueStatus.AWAITING_APPROVAL,
            QueueStatus.APPROVED,
            {"approval_responded_at": self.clock()}
        )

    def mark_rejected(self, item_id: str, reason: Optional[str] = None) -> bool:
        now = self.clock()
        fields: Dict[str, Any] = {"approval_responded_at": now, "rejected_at": now}
        if reason:
            fields["error"] = reason
        return self.transition(item_id, QueueStatus.AWAITING_APPROVAL, QueueStatus.REJECTED, fields)

    def mark_scheduled(
        self,
        item_id: str,
        when: datetime,
        from_status: QueueStatus = QueueStatus.APPROVED,
        final_url: Optional[str] = None
    ) -> bool:
        fields: Dict[str, Any] = {"scheduled_for": when, "scheduled_at": self.clock()}
        if final_url:
            fields["final_url"] = final_url
        return self.transition(item_id, from_status, QueueStatus.SCHEDULED, fields)

    def mark_publishing(self, item_id: str) -> bool:
        """Claim a due scheduled item for publishing."""
        return self.transition(item_id, QueueStatus.SCHEDULED, QueueStatus.PUBLISHING)

    def mark_completed(
        self,
        item_id: str,
        final_url: str,
        published_id: str,
        from_status: QueueStatus = QueueStatus.PROCESSING
    ) -> bool:
        return self.transition(
            item_id,
            from_status,
            QueueStatus.COMPLETED,
            {
                "final_url": final_url,
                "published_id": published_id,
                "completed_at": self.clock(),
                "error": None,
            }
        )

    def mark_failed(
        self,
        item_id: str,
        error: str,
        from_status: QueueStatus = QueueStatus.PROCESSING
    ) -> bool:
        return self.transition(
            item_id,
            from_status,
            QueueStatus.FAILED,
            {"error": error, "failed_at": self.clock()}
        )

    def mark_as_timeout(self, item_id: str) -> bool:
        return self.transition(
            item_id,
            QueueStatus.AWAITING_APPROVAL,
            QueueStatus.TIMEOUT,
            {"timed_out_at": self.clock(), "error": "Approval timed out"}
        )

    def try_mark_for_regeneration(self, item_id: str) -> bool:
        """
        Regeneration lock: atomic awaiting_approval -> regenerating.

        Exactly one of several near-simultaneous "regenerate" callbacks gets
        True; the rest see the new status and get False.
        """
        ensure_transition_allowed(QueueStatus.AWAITING_APPROVAL, QueueStatus.REGENERATING)
        now = self.clock()

        def build(current: QueueItem) -> Dict[str, Any]:
            return {
                "approval_responded_at": now,
                "regeneration_count": current.regeneration_count + 1,
                "enhanced_url": None,
                "is_enhanced": False,
                "enhancement_error": None,
            }

        updated = self._compare_and_set(
            item_id, QueueStatus.AWAITING_APPROVAL, QueueStatus.REGENERATING, build
        )
        return updated is not None

    # ========================================================================
    # QUERIES
    # ========================================================================

    def next_pending(self) -> Optional[QueueItem]:
        """
        Claim and return the oldest pending item, or None.

        The item is already `processing` when returned. Losing the claim to a
        concurrent caller is not an error: the pending index is re-queried.
        """
        pending_key = self._status_key(QueueStatus.PENDING)

        for _ in range(self.max_claim_attempts):
            ids = self.redis.zrange(pending_key, 0, 0)
            if not ids:
                return None

            item_id = ids[0]
            if self.mark_processing(item_id):
                return self.get(item_id)

            if self.get(item_id) is None:
                # Index entry without a record
                self.redis.zrem(pending_key, item_id)
            logger.debug(f"Lost claim on {item_id}, re-querying pending items")

        logger.warning("Gave up claiming a pending item after repeated conflicts")
        return None

    def get_timed_out_items(self, threshold_minutes: float) -> List[QueueItem]:
        """
        Items in awaiting_approval whose approval request is at least
        `threshold_minutes` old (now - requested_at >= threshold).
        """
        cutoff = self.clock() - timedelta(minutes=threshold_minutes)
        ids = self.redis.zrangebyscore(self._approvals_key, "-inf", cutoff.timestamp())

        timed_out = []
        for item in self._load_many(ids):
            if item.status != QueueStatus.AWAITING_APPROVAL or item.approval_requested_at is None:
                continue
            if item.approval_requested_at <= cutoff:
                timed_out.append(item)
        return timed_out

    def get_due_scheduled(self, now: Optional[datetime] = None, limit: int = 10) -> List[QueueItem]:
        """Scheduled items whose target time has passed, earliest first."""
        now = now or self.clock()
        ids = self.redis.zrangebyscore(
            self._schedule_key, "-inf", now.timestamp(), start=0, num=limit
        )
        return [item for item in self._load_many(ids) if item.status == QueueStatus.SCHEDULED]

    def stats(self) -> Dict[str, int]:
        """Count of items per status, plus total."""
        statuses = list(QueueStatus)
        with self.redis.pipeline(transaction=False) as pipe:
            for status in statuses:
                pipe.zcard(self._status_key(status))
            counts = pipe.execute()

        stats = {status.value: int(count) for status, count in zip(statuses, counts)}
        stats["total"] = sum(stats.values())
        return stats

    # ========================================================================
    # INTERNAL HELPERS
    # ========================================================================

    def _compare_and_set(
        self,
        item_id: str,
        expected: QueueStatus,
        to_status: QueueStatus,
        build_fields: FieldBuilder
    ) -> Optional[QueueItem]:
        key = self._item_key(item_id)

        with self.redis.pipeline() as pipe:
            for _ in range(self.max_cas_retries):
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        pipe.unwatch()
                        return None

                    current = QueueItem.model_validate_json(raw)
                    if current.status != expected:
                        pipe.unwatch()
                        logger.info(
                            f"Conditional update skipped for {item_id}: "
                            f"expected {expected.value}, found {current.status.value}"
                        )
                        return None

                    updates = {
                        k: v for k, v in build_fields(current).items()
                        if k not in _PROTECTED_FIELDS
                    }
                    updated = QueueItem.model_validate({
                        **current.model_dump(),
                        **updates,
                        "status": to_status,
                        "updated_at": self.clock(),
                    })

                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    self._reindex(pipe, current, updated)
                    pipe.execute()

                    if expected != to_status:
                        logger.info(
                            f"Queue item {item_id}: {expected.value} -> {to_status.value}"
                        )
                    return updated
                except WatchError:
                    logger.debug(f"Write conflict on {item_id}, re-reading")
                    continue

        logger.warning(f"Conditional update on {item_id} abandoned after repeated conflicts")
        return None

    def _reindex(self, pipe, old: QueueItem, new: QueueItem) -> None:
        item_id = new.id

        if old.status != new.status:
            pipe.zrem(self._status_key(old.status), item_id)
            pipe.zadd(self._status_key(new.status), {item_id: new.created_at.timestamp()})

        if new.status == QueueStatus.AWAITING_APPROVAL and new.approval_requested_at:
            pipe.zadd(self._approvals_key, {item_id: new.approval_requested_at.timestamp()})
        elif old.status == QueueStatus.AWAITING_APPROVAL:
            pipe.zrem(self._approvals_key, item_id)

        if new.status == QueueStatus.SCHEDULED and new.scheduled_for:
            pipe.zadd(self._schedule_key, {item_id: new.scheduled_for.timestamp()})
        elif old.status == QueueStatus.SCHEDULED:
            pipe.zrem(self._schedule_key, item_id)

    def _load_many(self, ids: List[str]) -> List[QueueItem]:
        if not ids:
            return []
        raws = self.redis.mget([self._item_key(item_id) for item_id in ids])
        return [QueueItem.model_validate_json(raw) for raw in raws if raw is not None]


__all__ = ["QueueStore"]
