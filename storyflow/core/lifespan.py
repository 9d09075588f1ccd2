from contextlib import asynccontextmanager

from fastapi import FastAPI

from storyflow.core.aws_client import validate_aws_credentials
from storyflow.core.config import settings
from storyflow.core.dependencies import reset_container
from storyflow.core.logger import logger
from storyflow.core.redis_client import redis_client_instance


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Clients are created lazily by the service container, so startup only
    reports what is configured. Shutdown releases the Redis pool.
    """
    logger.info(
        "Lifespan startup: Ready to serve requests.",
        extra={
            "telegram_configured": settings.telegram_configured,
            "instagram_configured": bool(settings.INSTAGRAM_ACCOUNT_ID),
            "gemini_configured": bool(settings.GEMINI_API_KEY),
            "aws_credentials": validate_aws_credentials(),
        }
    )
    yield
    reset_container()
    redis_client_instance.close()
    logger.info("Lifespan shutdown.")
