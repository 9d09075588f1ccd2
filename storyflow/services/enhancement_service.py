# services/enhancement_service.py
"""
Enhancement step: download -> transform -> upload.

Any failure surfaces as EnhancementError; the orchestrator and the
regeneration flow catch it and fall back to the original image.
"""

import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Tuple

import requests

from storyflow.core.exceptions import EnhancementError
from storyflow.core.logger import logger
from storyflow.integrations.gemini_client import ImageEnhancer, TransformOptions
from storyflow.integrations.image_storage import S3ImageStorage
from storyflow.schemas.queue_models import AIModel, QueueItem, QueueStatus
from storyflow.services.queue_store import QueueStore
from storyflow.utils.retry import API_POLICY, RetryPolicy, execute

STYLE_DIRECTIONS = {
    "pure-minimal": "clean minimal composition, soft neutral background, gentle diffused daylight",
    "lifestyle-moments": "warm lifestyle scene in a cozy patisserie, natural window light, shallow depth of field",
    "rustic-warmth": "rustic wooden surface, warm golden tones, artisanal atmosphere",
    "french-elegance": "elegant Parisian setting, marble surface, refined pastel palette",
}


@dataclass(frozen=True)
class EnhancementOutcome:
    url: str
    cost: float
    model: str


def build_prompt(item: QueueItem) -> str:
    """Minimal product-photo prompt; a custom prompt replaces it entirely."""
    if item.custom_prompt:
        return item.custom_prompt

    subject = item.product_name or item.product_category or "the product"
    direction = STYLE_DIRECTIONS.get(item.style_variant, item.style_variant.replace("-", " "))
    return (
        f"Enhance this photo of {subject} into a professional Instagram story image. "
        f"Style: {direction}. Keep the product appetizing and in sharp focus."
    )


class EnhancementService:

    def __init__(
        self,
        enhancers: Mapping[AIModel, ImageEnhancer],
        storage: S3ImageStorage,
        *,
        download_timeout: float = 30,
        download_policy: RetryPolicy = API_POLICY,
        sleep: Callable[[float], None] = time.sleep,
        session: Optional[requests.Session] = None
    ) -> None:
        self._enhancers = dict(enhancers)
        self._storage = storage
        self.download_timeout = download_timeout
        self.download_policy = download_policy
        self._sleep = sleep
        self._session = session or requests.Session()

    def enhance(self, item: QueueItem) -> EnhancementOutcome:
        enhancer = self._enhancers.get(item.ai_model)
        if enhancer is None:
            raise EnhancementError(f"No enhancer configured for model {item.ai_model.value}")

        try:
            image_bytes, mime_type = execute(
                lambda: self._download(item.original_url),
                self.download_policy,
                sleep=self._sleep,
                label="Image download",
            )

            result = enhancer.transform(
                image_bytes,
                mime_type,
                TransformOptions(
                    prompt=build_prompt(item),
                    negative_prompt=item.custom_negative_prompt,
                    faithfulness=item.faithfulness,
                    aspect_ratio=item.aspect_ratio.value,
                ),
            )

            url = self._storage.upload(item.id, result.image_bytes, result.mime_type)
        except Exception as e:
            # Any failure here falls back to the original image
            logger.error(f"Enhancement failed for {item.id}: {e}")
            raise EnhancementError(str(e) or e.__class__.__name__) from e

        logger.info(
            f"Enhancement completed for {item.id}",
            extra={"model": result.model, "cost": result.cost}
        )
        return EnhancementOutcome(url=url, cost=result.cost, model=result.model)

    def _download(self, url: str):
        resp = self._session.get(url, timeout=self.download_timeout)
        resp.raise_for_status()
        mime_type = resp.headers.get("Content-Type", "image/jpeg").split(";")[0].strip()
        return resp.content, mime_type

    def enhance_or_fallback(
        self,
        item: QueueItem,
        store: QueueStore,
        expected_status: QueueStatus
    ) -> Tuple[str, Optional[str]]:
        """
        Enhance `item` and record the outcome on it without changing status.

        Returns (image_url, error). On failure the original image is returned
        with the error text, which is also stored as `enhancement_error`.
        """
        if item.ai_model == AIModel.NONE:
            return item.original_url, None

        try:
            outcome = self.enhance(item)
        except EnhancementError as e:
            store.update_fields(item.id, expected_status, {
                "enhancement_error": str(e),
                "is_enhanced": False,
            })
            return item.original_url, str(e)

        store.update_fields(item.id, expected_status, {
            "enhanced_url": outcome.url,
            "is_enhanced": True,
            "enhancement_error": None,
        })
        return outcome.url, None
