# services/approval_gateway.py
"""
Human-in-the-loop approval through the Telegram bot.

Outbound: an approval prompt (image + approve/reject/regenerate buttons)
whose message id is stored on the item.

Inbound: callback tokens `action_itemId` from the reviewer chat. The webhook
only resumes a workflow persisted in Redis, so every branch starts with a
conditional transition and a lost race is a quiet no-op. Callbacks for items
that are no longer awaiting approval are acknowledged and ignored.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests

from storyflow.core.exceptions import (
    ItemNotFoundError,
    MalformedCallbackError,
    MessagingError,
    StoryflowError,
    UnauthorizedCallbackError,
)
from storyflow.core.logger import logger
from storyflow.core.runtime_config import APPROVAL_TIMEOUT_MINUTES, RuntimeConfigProvider
from storyflow.integrations.publishing_gateway import PublishingGateway
from storyflow.integrations.telegram_client import TelegramClient
from storyflow.schemas.queue_models import QueueItem, QueueStatus
from storyflow.services.enhancement_service import EnhancementService
from storyflow.services.queue_store import QueueStore
from storyflow.utils.log_response import log_event


class CallbackAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REGENERATE = "regenerate"


class CallbackOutcome(str, Enum):
    PUBLISHED = "published"
    SCHEDULED = "scheduled"
    PUBLISH_FAILED = "publish_failed"
    REJECTED = "rejected"
    REGENERATED = "regenerated"
    REGENERATION_FAILED = "regeneration_failed"
    DUPLICATE = "duplicate"
    ALREADY_PROCESSED = "already_processed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ParsedCallback:
    action: CallbackAction
    item_id: str


@dataclass
class CallbackResult:
    outcome: CallbackOutcome
    item_id: str
    action: Optional[CallbackAction] = None
    published_id: Optional[str] = None
    error: Optional[str] = None


_ACK_TEXT = {
    CallbackOutcome.PUBLISHED: "✅ Approved and published!",
    CallbackOutcome.SCHEDULED: "📅 Approved, scheduled",
    CallbackOutcome.PUBLISH_FAILED: "⚠️ Approved, but publishing failed",
    CallbackOutcome.REJECTED: "❌ Rejected",
    CallbackOutcome.REGENERATED: "🔄 Regenerating...",
    CallbackOutcome.REGENERATION_FAILED: "⚠️ Regeneration failed",
    CallbackOutcome.DUPLICATE: "Already being handled",
    CallbackOutcome.ALREADY_PROCESSED: "Already processed",
    CallbackOutcome.NOT_FOUND: "Item not found",
}


def parse_callback(raw_token: Optional[str]) -> ParsedCallback:
    """
    Split `action_itemId` on the first underscore; item ids may contain more.
    Raises MalformedCallbackError for anything else.
    """
    if not raw_token or "_" not in raw_token:
        raise MalformedCallbackError(f"Invalid callback data: {raw_token!r}")

    action, item_id = raw_token.split("_", 1)
    if not item_id:
        raise MalformedCallbackError(f"Invalid callback data: {raw_token!r}")

    try:
        return ParsedCallback(action=CallbackAction(action), item_id=item_id)
    except ValueError:
        raise MalformedCallbackError(f"Unknown callback action: {action!r}")


class ApprovalGateway:
    """
    Bridge between the reviewer and the queue state machine.
    """

    def __init__(
        self,
        store: QueueStore,
        telegram: TelegramClient,
        publisher: PublishingGateway,
        enhancement: EnhancementService,
        runtime_config: RuntimeConfigProvider,
        *,
        brand_name: str = "Storyflow"
    ) -> None:
        self.store = store
        self.telegram = telegram
        self.publisher = publisher
        self.enhancement = enhancement
        self.runtime_config = runtime_config
        self.brand_name = brand_name

    # ========================================================================
    # OUTBOUND
    # ========================================================================

    def request_approval(
        self,
        item: QueueItem,
        image_url: str,
        from_status: QueueStatus = QueueStatus.PROCESSING
    ) -> int:
        """
        Send the approval prompt and move the item to awaiting_approval.

        Raises MessagingError when the prompt cannot be sent; the item is then
        left in `from_status` for the caller to fail.
        """
        timeout_minutes = self.runtime_config.get(APPROVAL_TIMEOUT_MINUTES)
        message_id = self.telegram.send_approval_request(item, image_url, timeout_minutes)

        enhanced_url = image_url if image_url != item.original_url else None
        if not self.store.mark_awaiting_approval(item.id, message_id, enhanced_url, from_status):
            logger.warning(
                f"Item {item.id} left {from_status.value} before the approval prompt was stored"
            )
            self.telegram.update_approval_message(message_id, "cancelled")
        else:
            log_event("approval_requested", item.id, QueueStatus.AWAITING_APPROVAL.value,
                      message_id=message_id)
        return message_id

    # ========================================================================
    # INBOUND
    # ========================================================================

    def authorize(self, source_chat_id) -> None:
        if source_chat_id is None or str(source_chat_id) != self.telegram.chat_id:
            logger.warning(f"Unauthorized callback from chat {source_chat_id}")
            raise UnauthorizedCallbackError(f"Unauthorized chat: {source_chat_id}")

    def prepare_callback(
        self,
        raw_token: Optional[str],
        source_chat_id,
        callback_id: Optional[str] = None
    ) -> ParsedCallback:
        """
        Synchronous part of the webhook: authorize, parse, check the item exists.

        Raises UnauthorizedCallbackError, MalformedCallbackError or
        ItemNotFoundError without touching any item.
        """
        self.authorize(source_chat_id)
        parsed = parse_callback(raw_token)

        if self.store.get(parsed.item_id) is None:
            logger.error(f"Callback for unknown item: {parsed.item_id}")
            self.telegram.send_error("Item not found", parsed.item_id)
            self.telegram.answer_callback(callback_id, _ACK_TEXT[CallbackOutcome.NOT_FOUND])
            raise ItemNotFoundError(parsed.item_id)

        return parsed

    def handle_callback(
        self,
        raw_token: Optional[str],
        source_chat_id,
        callback_id: Optional[str] = None
    ) -> CallbackResult:
        try:
            parsed = self.prepare_callback(raw_token, source_chat_id, callback_id)
        except ItemNotFoundError as e:
            return CallbackResult(CallbackOutcome.NOT_FOUND, str(e))
        return self.process_callback(parsed, callback_id)

    def process_callback(self, parsed: ParsedCallback, callback_id: Optional[str] = None) -> CallbackResult:
        """
        Apply a validated callback. The transport is acknowledged on every
        path, including when processing raises.
        """
        result: Optional[CallbackResult] = None
        try:
            result = self._dispatch(parsed)
            return result
        finally:
            ack = _ACK_TEXT[result.outcome] if result else "⚠️ Something went wrong"
            self.telegram.answer_callback(callback_id, ack)
            if result:
                log_event(
                    "approval_callback",
                    result.item_id,
                    result.outcome.value,
                    error=result.error,
                    action=parsed.action.value,
                    published_id=result.published_id,
                )

    def _dispatch(self, parsed: ParsedCallback) -> CallbackResult:
        item = self.store.get(parsed.item_id)
        if item is None:
            self.telegram.send_error("Item not found", parsed.item_id)
            return CallbackResult(CallbackOutcome.NOT_FOUND, parsed.item_id, parsed.action)

        if item.status != QueueStatus.AWAITING_APPROVAL:
            logger.info(f"Callback for {item.id} ignored, item is {item.status.value}")
            return CallbackResult(CallbackOutcome.ALREADY_PROCESSED, item.id, parsed.action)

        if parsed.action == CallbackAction.APPROVE:
            return self._approve(item)
        if parsed.action == CallbackAction.REJECT:
            return self._reject(item)
        return self._regenerate(item)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _approve(self, item: QueueItem) -> CallbackResult:
        if not self.store.mark_approved(item.id):
            return CallbackResult(CallbackOutcome.DUPLICATE, item.id, CallbackAction.APPROVE)

        if item.wants_deferred_publish:
            self.store.mark_scheduled(
                item.id,
                item.scheduled_for,
                from_status=QueueStatus.APPROVED,
                final_url=item.display_url,
            )
            self.telegram.send_scheduled_confirmation(item.id, item.scheduled_for)
            self.telegram.update_approval_message(item.telegram_message_id, "scheduled")
            return CallbackResult(CallbackOutcome.SCHEDULED, item.id, CallbackAction.APPROVE)

        image_url = item.display_url
        try:
            story = self.publisher.create_story(image_url, item.publish_caption(self.brand_name))
        except (StoryflowError, requests.RequestException) as e:
            error = str(e)
            logger.error(f"Publishing failed after approval of {item.id}: {error}")
            self.store.mark_failed(item.id, error, from_status=QueueStatus.APPROVED)
            self.telegram.send_error(error, item.id)
            self.telegram.update_approval_message(item.telegram_message_id, "failed")
            return CallbackResult(
                CallbackOutcome.PUBLISH_FAILED, item.id, CallbackAction.APPROVE, error=error
            )

        self.store.mark_completed(item.id, image_url, story.id, from_status=QueueStatus.APPROVED)
        self.telegram.send_confirmation(True, item.id, story.id)
        self.telegram.update_approval_message(item.telegram_message_id, "approved")
        return CallbackResult(
            CallbackOutcome.PUBLISHED, item.id, CallbackAction.APPROVE, published_id=story.id
        )

    def _reject(self, item: QueueItem) -> CallbackResult:
        if not self.store.mark_rejected(item.id):
            return CallbackResult(CallbackOutcome.DUPLICATE, item.id, CallbackAction.REJECT)

        self.telegram.send_confirmation(False, item.id)
        self.telegram.update_approval_message(item.telegram_message_id, "rejected")
        return CallbackResult(CallbackOutcome.REJECTED, item.id, CallbackAction.REJECT)

    def _regenerate(self, item: QueueItem) -> CallbackResult:
        # Regeneration lock: only one callback may start a new enhancement cycle
        if not self.store.try_mark_for_regeneration(item.id):
            logger.info(f"Duplicate regenerate callback for {item.id} ignored")
            return CallbackResult(CallbackOutcome.DUPLICATE, item.id, CallbackAction.REGENERATE)

        # The item is now regenerating; every exit below must move it on
        try:
            self.telegram.update_approval_message(item.telegram_message_id, "regenerate")
            self.telegram.send_regeneration_notice(item.id)

            locked = self.store.get(item.id) or item
            image_url, enhancement_error = self.enhancement.enhance_or_fallback(
                locked, self.store, QueueStatus.REGENERATING
            )
            if enhancement_error:
                self.telegram.send_error(
                    f"Regeneration failed, sending the original image: {enhancement_error}", item.id
                )

            refreshed = self.store.get(item.id) or locked
            self.request_approval(refreshed, image_url, from_status=QueueStatus.REGENERATING)
        except MessagingError as e:
            return self._fail_regeneration(item, f"Could not send new approval request: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error while regenerating {item.id}")
            return self._fail_regeneration(item, f"Regeneration failed: {str(e) or e.__class__.__name__}")

        return CallbackResult(
            CallbackOutcome.REGENERATED, item.id, CallbackAction.REGENERATE, error=enhancement_error
        )

    def _fail_regeneration(self, item: QueueItem, error: str) -> CallbackResult:
        logger.error(f"Regeneration of {item.id} failed: {error}")
        self.store.mark_failed(item.id, error, from_status=QueueStatus.REGENERATING)
        self.telegram.send_error(error, item.id)
        return CallbackResult(
            CallbackOutcome.REGENERATION_FAILED, item.id, CallbackAction.REGENERATE, error=error
        )
