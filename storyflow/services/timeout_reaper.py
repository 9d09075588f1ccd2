# services/timeout_reaper.py
from typing import Dict

from storyflow.core.logger import logger
from storyflow.core.runtime_config import APPROVAL_TIMEOUT_MINUTES, RuntimeConfigProvider
from storyflow.integrations.telegram_client import TelegramClient
from storyflow.schemas.queue_models import QueueStatus
from storyflow.services.queue_store import QueueStore
from storyflow.utils.log_response import log_event


class TimeoutReaper:
    """
    Resolves approvals nobody answered in time.

    Invoked by cron every few minutes. The threshold is read from runtime
    config on every run so operators can change it without a redeploy.
    """

    def __init__(
        self,
        store: QueueStore,
        telegram: TelegramClient,
        runtime_config: RuntimeConfigProvider
    ) -> None:
        self.store = store
        self.telegram = telegram
        self.runtime_config = runtime_config

    def run(self) -> Dict[str, int]:
        threshold = self.runtime_config.get(APPROVAL_TIMEOUT_MINUTES)
        items = self.store.get_timed_out_items(threshold)
        summary = {"checked": len(items), "timed_out": 0, "errors": 0}

        for item in items:
            try:
                # A reviewer may have answered since the query; then this is a no-op
                if not self.store.mark_as_timeout(item.id):
                    continue

                summary["timed_out"] += 1
                self.telegram.send_timeout_notification(item.id, threshold)
                self.telegram.update_approval_message(item.telegram_message_id, "timeout")
                log_event("approval_timeout", item.id, QueueStatus.TIMEOUT.value,
                          threshold_minutes=threshold)
            except Exception as e:
                summary["errors"] += 1
                logger.exception(f"Timeout handling failed for {item.id}: {e}")

        logger.info(f"Timeout reaper finished: {summary}")
        return summary
