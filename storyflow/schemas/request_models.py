# schemas/request_models.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from storyflow.schemas.queue_models import (
    AIModel,
    AspectRatio,
    QueueStatus,
    SchedulingMode,
)


# ============================================================================
# PIPELINE
# ============================================================================

class ProcessOptions(BaseModel):
    """Options for a single orchestrator run"""
    item_id: Optional[str] = Field(None, description="Process this item instead of the oldest pending one")
    skip_enhancement: bool = False
    require_approval: Optional[bool] = Field(
        None,
        description="Override the runtime `approval_required` flag; items with skip_approval always bypass it"
    )


class ProcessResult(BaseModel):
    success: bool
    item_id: Optional[str] = None
    status: Optional[QueueStatus] = None
    published_id: Optional[str] = None
    enhanced_url: Optional[str] = Field(None, description="Only set when it differs from the original image")
    message_id: Optional[int] = None
    error: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[str] = None


class BatchResult(BaseModel):
    processed: int = 0
    failed: int = 0
    results: List[ProcessResult] = Field(default_factory=list)


class ReaperSummary(BaseModel):
    checked: int
    timed_out: int
    errors: int


class PublishSummary(BaseModel):
    checked: int
    published: int
    failed: int
    skipped: int


# ============================================================================
# QUEUE INTAKE / INSPECTION
# ============================================================================

class EnqueueRequest(BaseModel):
    """
    New queue item. Enhancement parameters are optional and fall back to the
    pipeline defaults.
    """
    original_url: str = Field(..., min_length=1, description="Publicly reachable image URL")
    filename: str = ""
    caption: str = ""
    product_category: Optional[str] = None
    product_name: Optional[str] = None
    ai_model: Optional[AIModel] = None
    style_variant: Optional[str] = None
    faithfulness: Optional[float] = Field(None, ge=0.0, le=1.0)
    aspect_ratio: Optional[AspectRatio] = None
    custom_prompt: Optional[str] = None
    custom_negative_prompt: Optional[str] = None
    scheduling_mode: SchedulingMode = SchedulingMode.IMMEDIATE
    scheduled_for: Optional[datetime] = None
    skip_approval: bool = False
    slot_id: Optional[str] = None

    def to_item_fields(self) -> Dict[str, Any]:
        """Only explicitly provided values, so model defaults apply to the rest."""
        return self.model_dump(exclude_none=True)


class QueueStatsResponse(BaseModel):
    stats: Dict[str, int]


class RuntimeConfigUpdate(BaseModel):
    approval_timeout_minutes: Optional[float] = Field(None, gt=0)
    approval_required: Optional[bool] = None
    inter_item_delay_secs: Optional[float] = Field(None, ge=0)
    max_items_per_run: Optional[int] = Field(None, gt=0)
    scheduled_batch_size: Optional[int] = Field(None, gt=0)


# ============================================================================
# TELEGRAM WEBHOOK
# ============================================================================

class TelegramChat(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: int


class TelegramMessage(BaseModel):
    model_config = ConfigDict(extra="allow")
    message_id: Optional[int] = None
    chat: Optional[TelegramChat] = None


class TelegramCallbackQuery(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: str
    data: Optional[str] = None
    message: Optional[TelegramMessage] = None

    @property
    def chat_id(self) -> Optional[int]:
        if self.message and self.message.chat:
            return self.message.chat.id
        return None


class TelegramUpdate(BaseModel):
    """Only callback queries matter; every other update type is ignored."""
    model_config = ConfigDict(extra="allow")
    update_id: Optional[int] = None
    callback_query: Optional[TelegramCallbackQuery] = None


class WebhookResponse(BaseModel):
    ok: bool = True
    action: Optional[str] = None
    message: Optional[str] = None


# ============================================================================
# HEALTH
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Service status")
    message: str = Field(..., description="Status message")
    redis_status: Optional[str] = None
    telegram_status: Optional[str] = None
    instagram_status: Optional[str] = None
    queue: Optional[Dict[str, int]] = None
