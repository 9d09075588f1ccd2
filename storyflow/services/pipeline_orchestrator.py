# services/pipeline_orchestrator.py
"""
Pipeline orchestrator: claim -> (enhance) -> approve or publish.

Invoked by cron or an operator; never waits for a human. When approval is
required the run ends after the prompt is sent and the webhook resumes the
workflow later.
"""

import time
from typing import Callable, Optional

from storyflow.core.logger import logger
from storyflow.core.runtime_config import (
    APPROVAL_REQUIRED,
    INTER_ITEM_DELAY_SECS,
    MAX_ITEMS_PER_RUN,
    RuntimeConfigProvider,
)
from storyflow.integrations.publishing_gateway import PublishingGateway
from storyflow.integrations.telegram_client import TelegramClient
from storyflow.schemas.queue_models import QueueItem, QueueStatus
from storyflow.schemas.request_models import BatchResult, ProcessOptions, ProcessResult
from storyflow.services.approval_gateway import ApprovalGateway
from storyflow.services.enhancement_service import EnhancementService
from storyflow.services.queue_store import QueueStore
from storyflow.utils.log_response import log_event

NO_PENDING_ITEMS = "No pending items in queue"


class PipelineOrchestrator:

    def __init__(
        self,
        store: QueueStore,
        enhancement: EnhancementService,
        approval: ApprovalGateway,
        publisher: PublishingGateway,
        telegram: TelegramClient,
        runtime_config: RuntimeConfigProvider,
        *,
        brand_name: str = "Storyflow",
        sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self.store = store
        self.enhancement = enhancement
        self.approval = approval
        self.publisher = publisher
        self.telegram = telegram
        self.runtime_config = runtime_config
        self.brand_name = brand_name
        self._sleep = sleep

    def process_next_item(self, options: Optional[ProcessOptions] = None) -> ProcessResult:
        """
        Process one item. Always returns a result; failures after the claim
        mark the item failed and notify the reviewer.
        """
        options = options or ProcessOptions()

        item, early_result = self._claim(options)
        if early_result is not None:
            return early_result

        logger.info(
            f"Processing item {item.id}",
            extra={"category": item.product_category, "product": item.product_name}
        )

        try:
            return self._run(item, options)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.exception(f"Processing failed for {item.id}: {error}")
            self.store.mark_failed(item.id, error, from_status=QueueStatus.PROCESSING)
            self.telegram.send_error(error, item.id)
            log_event("item_processed", item.id, QueueStatus.FAILED.value, error=error)
            return ProcessResult(
                success=False,
                item_id=item.id,
                status=QueueStatus.FAILED,
                error=error,
            )

    def process_all_pending(self, options: Optional[ProcessOptions] = None) -> BatchResult:
        """
        Drain the pending queue one item at a time, pausing between items.
        Stops when the queue is empty or after `max_items_per_run` items.
        """
        options = (options or ProcessOptions()).model_copy(update={"item_id": None})
        max_items = self.runtime_config.get(MAX_ITEMS_PER_RUN)
        delay = self.runtime_config.get(INTER_ITEM_DELAY_SECS)
        batch = BatchResult()

        while len(batch.results) < max_items:
            if batch.results and delay > 0:
                self._sleep(delay)

            result = self.process_next_item(options)
            if result.skipped and result.skip_reason == NO_PENDING_ITEMS:
                break

            batch.results.append(result)
            if result.success and not result.skipped:
                batch.processed += 1
            elif not result.success:
                batch.failed += 1

        logger.info(f"Batch complete: {batch.processed} processed, {batch.failed} failed")
        return batch

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _claim(self, options: ProcessOptions):
        if not options.item_id:
            item = self.store.next_pending()
            if item is None:
                logger.info(NO_PENDING_ITEMS)
                return None, ProcessResult(success=True, skipped=True, skip_reason=NO_PENDING_ITEMS)
            return item, None

        item = self.store.get(options.item_id)
        if item is None:
            return None, ProcessResult(
                success=False,
                item_id=options.item_id,
                error=f"Item not found: {options.item_id}",
            )
        if item.status != QueueStatus.PENDING:
            return None, ProcessResult(
                success=False,
                item_id=item.id,
                status=item.status,
                skipped=True,
                skip_reason=f"Item status is {item.status.value}, not pending",
            )
        if not self.store.mark_processing(item.id):
            return None, ProcessResult(
                success=False,
                item_id=item.id,
                skipped=True,
                skip_reason="Item was claimed by another run",
            )
        return self.store.get(item.id), None

    def _run(self, item: QueueItem, options: ProcessOptions) -> ProcessResult:
        image_url = item.original_url
        if not options.skip_enhancement:
            image_url, enhancement_error = self.enhancement.enhance_or_fallback(
                item, self.store, QueueStatus.PROCESSING
            )
            if enhancement_error:
                logger.warning(f"Enhancement failed for {item.id}, using original image")

        enhanced_url = image_url if image_url != item.original_url else None
        current = self.store.get(item.id) or item

        if self._needs_approval(current, options):
            message_id = self.approval.request_approval(current, image_url)
            return ProcessResult(
                success=True,
                item_id=item.id,
                status=QueueStatus.AWAITING_APPROVAL,
                enhanced_url=enhanced_url,
                message_id=message_id,
            )

        if current.wants_deferred_publish and current.scheduled_for > self.store.clock():
            self.store.mark_scheduled(
                item.id,
                current.scheduled_for,
                from_status=QueueStatus.PROCESSING,
                final_url=image_url,
            )
            self.telegram.send_scheduled_confirmation(item.id, current.scheduled_for)
            log_event("item_processed", item.id, QueueStatus.SCHEDULED.value,
                      scheduled_for=current.scheduled_for.isoformat())
            return ProcessResult(
                success=True,
                item_id=item.id,
                status=QueueStatus.SCHEDULED,
                enhanced_url=enhanced_url,
            )

        story = self.publisher.create_story(image_url, current.publish_caption(self.brand_name))
        self.store.mark_completed(item.id, image_url, story.id, from_status=QueueStatus.PROCESSING)
        self.telegram.send_confirmation(True, item.id, story.id)
        log_event("item_processed", item.id, QueueStatus.COMPLETED.value, published_id=story.id)

        return ProcessResult(
            success=True,
            item_id=item.id,
            status=QueueStatus.COMPLETED,
            published_id=story.id,
            enhanced_url=enhanced_url,
        )

    def _needs_approval(self, item: QueueItem, options: ProcessOptions) -> bool:
        if item.skip_approval:
            return False
        if options.require_approval is not None:
            return options.require_approval
        return bool(self.runtime_config.get(APPROVAL_REQUIRED))
