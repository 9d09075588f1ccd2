# integrations/telegram_client.py
"""
Telegram Bot API client for the human-in-the-loop approval flow.

Every call is a JSON POST to {api_base}/bot{token}/{method}. Only sending
an approval prompt raises; notifications, caption edits and callback
acknowledgements are best-effort and log their failures.
"""

import html
from datetime import datetime
from typing import Any, Dict, Optional

import requests

from storyflow.core.exceptions import MessagingError
from storyflow.core.logger import logger
from storyflow.schemas.queue_models import QueueItem

# Caption banners written over an approval prompt once it is resolved
STATUS_BANNERS = {
    "approved": "✅ <b>APPROVED</b>",
    "rejected": "❌ <b>REJECTED</b>",
    "regenerate": "🔄 <b>REGENERATING</b>",
    "timeout": "⏰ <b>TIMED OUT</b>",
    "scheduled": "📅 <b>APPROVED · SCHEDULED</b>",
    "failed": "⚠️ <b>APPROVED · PUBLISH FAILED</b>",
    "cancelled": "⚠️ <b>CANCELLED</b>",
}

CATEGORY_LABELS = {
    "viennoiserie": "🥐 Viennoiserie",
    "coffee": "☕ Coffee",
    "chocolate": "🍫 Chocolate",
    "small-desserts": "🧁 Small desserts",
    "slice-cakes": "🍰 Slice cakes",
    "big-cakes": "🎂 Cakes",
    "profiterole": "🍩 Profiterole",
    "special-orders": "✨ Special orders",
}

STYLE_LABELS = {
    "pure-minimal": "Pure & minimal",
    "lifestyle-moments": "Lifestyle",
    "rustic-warmth": "Rustic warmth",
    "french-elegance": "French elegance",
}


def build_callback_token(action: str, item_id: str) -> str:
    return f"{action}_{item_id}"


class TelegramClient:
    """
    Thin wrapper around the Bot API, scoped to one reviewer chat.
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        api_base: str = "https://api.telegram.org",
        timeout: float = 15,
        session: Optional[requests.Session] = None
    ) -> None:
        if not bot_token or not chat_id:
            raise ValueError("Telegram bot token and chat id are required")

        self.chat_id = str(chat_id)
        self.timeout = timeout
        self._base_url = f"{api_base.rstrip('/')}/bot{bot_token}"
        self._session = session or requests.Session()

    # ------------------------------------------------------------------
    # Raw API
    # ------------------------------------------------------------------

    def _call(self, method: str, params: Dict[str, Any]) -> Any:
        try:
            resp = self._session.post(
                f"{self._base_url}/{method}",
                json=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise MessagingError(f"Telegram {method} request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            raise MessagingError(
                f"Telegram {method} returned a non-JSON response",
                status_code=resp.status_code,
            )

        if not data.get("ok"):
            raise MessagingError(
                f"Telegram API error: {data.get('description') or 'Unknown error'}",
                status_code=resp.status_code,
                error_code=str(data.get("error_code")) if data.get("error_code") else None,
            )
        return data.get("result")

    def send_photo(
        self,
        photo_url: str,
        caption: str,
        reply_markup: Optional[Dict[str, Any]] = None
    ) -> int:
        """Send a photo to the reviewer chat. Raises MessagingError."""
        params: Dict[str, Any] = {
            "chat_id": self.chat_id,
            "photo": photo_url,
            "caption": caption,
            "parse_mode": "HTML",
        }
        if reply_markup:
            params["reply_markup"] = reply_markup
        result = self._call("sendPhoto", params)
        return int(result["message_id"])

    def send_message(self, text: str) -> Optional[int]:
        try:
            result = self._call("sendMessage", {
                "chat_id": self.chat_id,
                "text": text,
                "parse_mode": "HTML",
            })
            return int(result["message_id"])
        except MessagingError as e:
            logger.error(f"Failed to send Telegram message: {e}")
            return None

    def edit_message_caption(self, message_id: int, caption: str) -> bool:
        """Replace a caption; also drops the inline keyboard."""
        try:
            self._call("editMessageCaption", {
                "chat_id": self.chat_id,
                "message_id": message_id,
                "caption": caption,
                "parse_mode": "HTML",
            })
            return True
        except MessagingError as e:
            # Usually "message is not modified" on a duplicate edit
            logger.info(f"Could not edit Telegram message {message_id}: {e}")
            return False

    def answer_callback(self, callback_id: Optional[str], text: str) -> bool:
        if not callback_id:
            return False
        try:
            self._call("answerCallbackQuery", {
                "callback_query_id": callback_id,
                "text": text,
            })
            return True
        except MessagingError as e:
            logger.info(f"Could not answer Telegram callback {callback_id}: {e}")
            return False

    def get_me(self) -> Dict[str, Any]:
        """Bot identity, used by the health check."""
        return self._call("getMe", {})

    # ------------------------------------------------------------------
    # Approval flow messages
    # ------------------------------------------------------------------

    def send_approval_request(
        self,
        item: QueueItem,
        image_url: str,
        timeout_minutes: float
    ) -> int:
        keyboard = {
            "inline_keyboard": [
                [
                    {"text": "✅ Approve", "callback_data": build_callback_token("approve", item.id)},
                    {"text": "❌ Reject", "callback_data": build_callback_token("reject", item.id)},
                ],
                [
                    {"text": "🔄 Regenerate", "callback_data": build_callback_token("regenerate", item.id)},
                ],
            ]
        }
        message_id = self.send_photo(
            image_url,
            self._approval_caption(item, timeout_minutes),
            reply_markup=keyboard,
        )
        logger.info(f"Approval request sent for {item.id}, message_id={message_id}")
        return message_id

    def update_approval_message(self, message_id: Optional[int], banner: str) -> bool:
        if not message_id:
            return False
        return self.edit_message_caption(message_id, STATUS_BANNERS.get(banner, banner))

    def send_confirmation(self, approved: bool, item_id: str, published_id: Optional[str] = None) -> None:
        if approved:
            text = f"✅ <b>Story approved</b>\n\n📋 ID: <code>{item_id}</code>\n"
            if published_id:
                text += f"📱 Story ID: <code>{published_id}</code>\n\n<i>Story published to Instagram.</i>"
        else:
            text = (
                f"❌ <b>Story rejected</b>\n\n📋 ID: <code>{item_id}</code>\n\n"
                "<i>The image will not be published.</i>"
            )
        self.send_message(text)

    def send_scheduled_confirmation(self, item_id: str, scheduled_for: datetime) -> None:
        self.send_message(
            "📅 <b>SCHEDULED</b>\n\n"
            f"📋 ID: <code>{item_id}</code>\n"
            f"🕐 Publish time: <b>{scheduled_for.strftime('%A %d %B, %H:%M %Z').strip()}</b>\n\n"
            "<i>The image will be published automatically at that time.</i>"
        )

    def send_regeneration_notice(self, item_id: str) -> None:
        self.send_message(
            "🔄 <b>Regenerating</b>\n\n"
            f"📋 ID: <code>{item_id}</code>\n\n"
            "<i>A new version will be sent for approval shortly.</i>"
        )

    def send_timeout_notification(self, item_id: str, timeout_minutes: float) -> None:
        self.send_message(
            "⏰ <b>Approval timed out</b>\n\n"
            f"📋 ID: <code>{item_id}</code>\n\n"
            f"<i>No answer within {timeout_minutes:g} minutes, the item was cancelled.</i>"
        )

    def send_error(self, error_message: str, item_id: Optional[str] = None) -> None:
        text = "⚠️ <b>Error</b>\n\n"
        if item_id:
            text += f"📋 ID: <code>{item_id}</code>\n"
        text += f"❌ <b>Error:</b> {html.escape(error_message)}"
        self.send_message(text)

    def _approval_caption(self, item: QueueItem, timeout_minutes: float) -> str:
        category = item.product_category or ""
        lines = [
            "📸 <b>New story ready!</b>",
            "",
            f"🏷️ <b>Product:</b> {html.escape(item.product_name or 'Not specified')}",
            f"📁 <b>Category:</b> {CATEGORY_LABELS.get(category, html.escape(category) or '-')}",
        ]
        if item.caption:
            lines += ["", "📝 <b>Caption:</b>", f"<code>{html.escape(item.caption)}</code>"]

        lines += [
            "",
            f"🎨 <b>Style:</b> {STYLE_LABELS.get(item.style_variant, item.style_variant)}",
            f"🤖 <b>Model:</b> {item.ai_model.value}",
            f"🎯 <b>Faithfulness:</b> {round(item.faithfulness * 100)}%",
        ]
        if item.enhancement_error:
            lines.append(f"⚠️ <b>Enhancement failed, showing original:</b> {html.escape(item.enhancement_error[:200])}")
        if item.regeneration_count:
            lines.append(f"🔁 <b>Regeneration:</b> #{item.regeneration_count}")

        lines += [
            "",
            f"⏰ <b>Timeout:</b> {timeout_minutes:g} minutes",
        ]
        return "\n".join(lines)
