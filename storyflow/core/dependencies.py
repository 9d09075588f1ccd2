# core/dependencies.py
"""
Service container.

Each heavy client is built on first use and cached for the life of the
process. Routers receive services through FastAPI `Depends`, so tests swap
any of them via `app.dependency_overrides`.
"""

import time
from functools import lru_cache

import redis
from fastapi import HTTPException, status

from storyflow.core.aws_client import get_s3_client
from storyflow.core.config import settings
from storyflow.core.redis_client import get_redis
from storyflow.core.runtime_config import RuntimeConfigProvider
from storyflow.integrations.gemini_client import GeminiImageEnhancer
from storyflow.integrations.image_storage import S3ImageStorage
from storyflow.integrations.publishing_gateway import PublishingGateway
from storyflow.integrations.telegram_client import TelegramClient
from storyflow.schemas.queue_models import AIModel
from storyflow.services.approval_gateway import ApprovalGateway
from storyflow.services.enhancement_service import EnhancementService
from storyflow.services.pipeline_orchestrator import PipelineOrchestrator
from storyflow.services.queue_store import QueueStore
from storyflow.services.scheduled_publisher import ScheduledPublisher
from storyflow.services.timeout_reaper import TimeoutReaper
from storyflow.utils.retry import PUBLISHING_POLICY


def _not_configured(name: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{name} is not configured"
    )


# ============================================================================
# INFRASTRUCTURE
# ============================================================================

def get_redis_client() -> redis.Redis:
    return get_redis()


@lru_cache(maxsize=1)
def get_runtime_config() -> RuntimeConfigProvider:
    return RuntimeConfigProvider(get_redis_client())


@lru_cache(maxsize=1)
def get_queue_store() -> QueueStore:
    return QueueStore(get_redis_client())


# ============================================================================
# EXTERNAL CLIENTS
# ============================================================================

@lru_cache(maxsize=1)
def get_telegram_client() -> TelegramClient:
    if not settings.telegram_configured:
        raise _not_configured("Telegram")
    return TelegramClient(
        settings.TELEGRAM_BOT_TOKEN,
        settings.TELEGRAM_CHAT_ID,
        api_base=settings.TELEGRAM_API_BASE,
        timeout=settings.TELEGRAM_TIMEOUT_SECS,
    )


@lru_cache(maxsize=1)
def get_publishing_gateway() -> PublishingGateway:
    if not (settings.INSTAGRAM_ACCOUNT_ID and settings.INSTAGRAM_ACCESS_TOKEN):
        raise _not_configured("Instagram")
    return PublishingGateway(
        settings.INSTAGRAM_ACCOUNT_ID,
        settings.INSTAGRAM_ACCESS_TOKEN,
        api_base=settings.INSTAGRAM_API_BASE,
        timeout=settings.INSTAGRAM_TIMEOUT_SECS,
        settle_delay=settings.PUBLISH_SETTLE_DELAY_SECS,
        publish_policy=PUBLISHING_POLICY.with_options(
            max_attempts=settings.PUBLISH_MAX_ATTEMPTS,
            initial_delay=settings.PUBLISH_INITIAL_DELAY_SECS,
            max_delay=settings.PUBLISH_MAX_DELAY_SECS,
        ),
        sleep=time.sleep,
    )


@lru_cache(maxsize=1)
def get_enhancement_service() -> EnhancementService:
    enhancers = {}
    if settings.GEMINI_API_KEY:
        enhancers = {
            AIModel.GEMINI_FLASH: GeminiImageEnhancer(
                settings.GEMINI_API_KEY,
                settings.GEMINI_FLASH_MODEL_ID,
                api_base=settings.GEMINI_API_BASE,
                timeout=settings.GEMINI_TIMEOUT_SECS,
            ),
            AIModel.GEMINI_PRO: GeminiImageEnhancer(
                settings.GEMINI_API_KEY,
                settings.GEMINI_PRO_MODEL_ID,
                api_base=settings.GEMINI_API_BASE,
                timeout=settings.GEMINI_TIMEOUT_SECS,
            ),
        }

    storage = S3ImageStorage(
        get_s3_client(),
        settings.ENHANCED_IMAGES_BUCKET,
        prefix=settings.ENHANCED_IMAGES_PREFIX,
        region=settings.AWS_REGION,
        public_base_url=settings.ENHANCED_IMAGES_PUBLIC_BASE_URL,
    )
    return EnhancementService(
        enhancers,
        storage,
        download_timeout=settings.IMAGE_DOWNLOAD_TIMEOUT_SECS,
    )


# ============================================================================
# PIPELINE SERVICES
# ============================================================================

@lru_cache(maxsize=1)
def get_approval_gateway() -> ApprovalGateway:
    return ApprovalGateway(
        get_queue_store(),
        get_telegram_client(),
        get_publishing_gateway(),
        get_enhancement_service(),
        get_runtime_config(),
        brand_name=settings.BRAND_NAME,
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> PipelineOrchestrator:
    return PipelineOrchestrator(
        get_queue_store(),
        get_enhancement_service(),
        get_approval_gateway(),
        get_publishing_gateway(),
        get_telegram_client(),
        get_runtime_config(),
        brand_name=settings.BRAND_NAME,
    )


@lru_cache(maxsize=1)
def get_timeout_reaper() -> TimeoutReaper:
    return TimeoutReaper(get_queue_store(), get_telegram_client(), get_runtime_config())


@lru_cache(maxsize=1)
def get_scheduled_publisher() -> ScheduledPublisher:
    return ScheduledPublisher(
        get_queue_store(),
        get_publishing_gateway(),
        get_telegram_client(),
        get_runtime_config(),
        brand_name=settings.BRAND_NAME,
    )


def reset_container() -> None:
    """Drop every cached service (used on shutdown and in tests)."""
    for factory in (
        get_runtime_config,
        get_queue_store,
        get_telegram_client,
        get_publishing_gateway,
        get_enhancement_service,
        get_approval_gateway,
        get_orchestrator,
        get_timeout_reaper,
        get_scheduled_publisher,
    ):
        factory.cache_clear()
