# schemas/queue_models.py
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from storyflow.core.exceptions import IllegalTransitionError


class QueueStatus(str, Enum):
    """Lifecycle states for a queue item."""
    PENDING = "pending"
    PROCESSING = "processing"
    AWAITING_APPROVAL = "awaiting_approval"
    REGENERATING = "regenerating"
    APPROVED = "approved"
    SCHEDULED = "scheduled"
    PUBLISHING = "publishing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"
    TIMEOUT = "timeout"


class AIModel(str, Enum):
    """Image enhancement models"""
    GEMINI_FLASH = "gemini-flash"
    GEMINI_PRO = "gemini-pro"
    NONE = "none"


class SchedulingMode(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    OPTIMAL = "optimal"


class AspectRatio(str, Enum):
    SQUARE = "1:1"
    PORTRAIT = "3:4"
    STORY = "9:16"
    LANDSCAPE = "16:9"
    CLASSIC = "4:3"


TERMINAL_STATUSES: FrozenSet[QueueStatus] = frozenset({
    QueueStatus.COMPLETED,
    QueueStatus.REJECTED,
    QueueStatus.FAILED,
    QueueStatus.TIMEOUT,
})

"""
Legal edges of the lifecycle graph. Every status write goes through
QueueStore.transition, which checks this table before touching Redis.
"""
ALLOWED_TRANSITIONS: Dict[QueueStatus, FrozenSet[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.PROCESSING}),
    QueueStatus.PROCESSING: frozenset({
        QueueStatus.AWAITING_APPROVAL,
        QueueStatus.SCHEDULED,
        QueueStatus.COMPLETED,
        QueueStatus.FAILED,
    }),
    QueueStatus.AWAITING_APPROVAL: frozenset({
        QueueStatus.APPROVED,
        QueueStatus.REJECTED,
        QueueStatus.REGENERATING,
        QueueStatus.TIMEOUT,
    }),
    QueueStatus.REGENERATING: frozenset({
        QueueStatus.AWAITING_APPROVAL,
        QueueStatus.FAILED,
    }),
    QueueStatus.APPROVED: frozenset({
        QueueStatus.SCHEDULED,
        QueueStatus.COMPLETED,
        QueueStatus.FAILED,
    }),
    QueueStatus.SCHEDULED: frozenset({QueueStatus.PUBLISHING}),
    QueueStatus.PUBLISHING: frozenset({QueueStatus.COMPLETED, QueueStatus.FAILED}),
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.REJECTED: frozenset(),
    QueueStatus.FAILED: frozenset(),
    QueueStatus.TIMEOUT: frozenset(),
}


def is_terminal(status: QueueStatus) -> bool:
    return status in TERMINAL_STATUSES


def ensure_transition_allowed(from_status: QueueStatus, to_status: QueueStatus) -> None:
    """Raise IllegalTransitionError unless `from_status -> to_status` is an edge of the graph."""
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise IllegalTransitionError(from_status.value, to_status.value)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QueueItem(BaseModel):
    """
    One unit of content moving through intake -> enhancement -> approval -> publish.

    Category/product descriptors are opaque to the pipeline; they are only
    forwarded to the prompt builder and shown to the reviewer.
    """

    model_config = ConfigDict(use_enum_values=False, validate_assignment=True)

    # Identity
    id: str = Field(default_factory=lambda: uuid4().hex)
    created_at: datetime = Field(default_factory=utc_now)

    # Content
    filename: str = ""
    original_url: str
    enhanced_url: Optional[str] = None
    caption: str = ""
    product_category: Optional[str] = None
    product_name: Optional[str] = None

    # Enhancement parameters
    ai_model: AIModel = AIModel.GEMINI_FLASH
    style_variant: str = "lifestyle-moments"
    faithfulness: float = Field(default=0.7, ge=0.0, le=1.0)
    aspect_ratio: AspectRatio = AspectRatio.STORY
    custom_prompt: Optional[str] = None
    custom_negative_prompt: Optional[str] = None
    is_enhanced: bool = False
    enhancement_error: Optional[str] = None
    regeneration_count: int = Field(default=0, ge=0)

    # Scheduling
    scheduling_mode: SchedulingMode = SchedulingMode.IMMEDIATE
    scheduled_for: Optional[datetime] = None
    skip_approval: bool = False

    # Status
    status: QueueStatus = QueueStatus.PENDING

    # Correlation
    telegram_message_id: Optional[int] = None
    slot_id: Optional[str] = None
    published_id: Optional[str] = None
    final_url: Optional[str] = None

    # Failure context + transition timestamps
    error: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    approval_requested_at: Optional[datetime] = None
    approval_responded_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    timed_out_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("*", mode="after")
    @classmethod
    def _assume_utc(cls, value):
        # Naive datetimes are treated as UTC so index scores stay comparable
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def display_url(self) -> str:
        """Image that will actually be published."""
        return self.enhanced_url or self.original_url

    @property
    def wants_deferred_publish(self) -> bool:
        return (
            self.scheduling_mode in (SchedulingMode.SCHEDULED, SchedulingMode.OPTIMAL)
            and self.scheduled_for is not None
        )

    def publish_caption(self, fallback: str) -> str:
        return self.caption or self.product_name or fallback


__all__ = [
    "ALLOWED_TRANSITIONS",
    "AIModel",
    "AspectRatio",
    "QueueItem",
    "QueueStatus",
    "SchedulingMode",
    "TERMINAL_STATUSES",
    "ensure_transition_allowed",
    "is_terminal",
    "utc_now",
]
