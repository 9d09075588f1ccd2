# services/scheduled_publisher.py
from datetime import datetime
from typing import Dict, Optional

import requests

from storyflow.core.exceptions import StoryflowError
from storyflow.core.logger import logger
from storyflow.core.runtime_config import SCHEDULED_BATCH_SIZE, RuntimeConfigProvider
from storyflow.integrations.publishing_gateway import PublishingGateway
from storyflow.integrations.telegram_client import TelegramClient
from storyflow.schemas.queue_models import QueueItem, QueueStatus
from storyflow.services.queue_store import QueueStore
from storyflow.utils.log_response import log_event


class ScheduledPublisher:
    """
    Publishes `scheduled` items whose target time has passed.

    Each item is claimed with scheduled -> publishing first, so overlapping
    cron runs never publish the same item twice.
    """

    def __init__(
        self,
        store: QueueStore,
        publisher: PublishingGateway,
        telegram: TelegramClient,
        runtime_config: RuntimeConfigProvider,
        *,
        brand_name: str = "Storyflow"
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.telegram = telegram
        self.runtime_config = runtime_config
        self.brand_name = brand_name

    def publish_due(self, now: Optional[datetime] = None) -> Dict[str, int]:
        limit = self.runtime_config.get(SCHEDULED_BATCH_SIZE)
        due = self.store.get_due_scheduled(now or self.store.clock(), limit)
        summary = {"checked": len(due), "published": 0, "failed": 0, "skipped": 0}

        for item in due:
            if not self.store.mark_publishing(item.id):
                summary["skipped"] += 1
                continue

            try:
                if self._publish(item):
                    summary["published"] += 1
                else:
                    summary["failed"] += 1
            except Exception as e:
                summary["failed"] += 1
                logger.exception(f"Scheduled publish crashed for {item.id}: {e}")
                self.store.mark_failed(item.id, str(e), from_status=QueueStatus.PUBLISHING)

        logger.info(f"Scheduled publisher finished: {summary}")
        return summary

    def _publish(self, item: QueueItem) -> bool:
        image_url = item.final_url or item.display_url
        try:
            story = self.publisher.create_story(image_url, item.publish_caption(self.brand_name))
        except (StoryflowError, requests.RequestException) as e:
            error = str(e)
            logger.error(f"Scheduled publish failed for {item.id}: {error}")
            self.store.mark_failed(item.id, error, from_status=QueueStatus.PUBLISHING)
            self.telegram.send_error(f"Scheduled publish failed: {error}", item.id)
            log_event("scheduled_publish", item.id, QueueStatus.FAILED.value, error=error)
            return False

        self.store.mark_completed(item.id, image_url, story.id, from_status=QueueStatus.PUBLISHING)
        self.telegram.send_confirmation(True, item.id, story.id)
        log_event("scheduled_publish", item.id, QueueStatus.COMPLETED.value, published_id=story.id)
        return True
