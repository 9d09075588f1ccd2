# core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    """
    Centralized application configuration.
    Static values only; anything an operator tunes at runtime lives in
    the Redis-backed runtime config (see core/runtime_config.py).
    """

    # ------------------------------------------------------------
    # Project / Runtime
    # ------------------------------------------------------------
    PROJECT_NAME: str = "Storyflow Publishing Pipeline"
    DEBUG: bool = False
    ENABLE_CORS: bool = True

    # HTTP / API
    FRONTEND_ENDPOINT: str = ""
    BACKEND_ENDPOINT: str = ""
    RATE_LIMIT_MIN: str = "30"
    RATE_LIMIT_ENABLED: bool = True
    BRAND_NAME: str = Field(
        default="Sade Patisserie",
        description="Fallback caption when an item has neither caption nor product name"
    )

    # ------------------------------------------------------------
    # Redis (queue document store + runtime config + JTI cache)
    # ------------------------------------------------------------
    REDIS_HOST: str = Field(
        default="localhost",
        description="Redis server hostname"
    )
    REDIS_PORT: int = Field(
        default=6379,
        description="Redis server port"
    )
    REDIS_DB: int = Field(
        default=0,
        description="Redis database number (0-15)"
    )
    REDIS_PASSWORD: Optional[str] = Field(
        default=None,
        description="Redis password (optional)"
    )
    REDIS_SSL: bool = Field(
        default=False,
        description="Use TLS/SSL for Redis connection"
    )
    REDIS_SOCKET_TIMEOUT: int = Field(
        default=5,
        description="Socket timeout in seconds"
    )
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(
        default=5,
        description="Socket connect timeout in seconds"
    )
    REDIS_MAX_CONNECTIONS: int = Field(
        default=50,
        description="Maximum connections in the pool"
    )
    REDIS_KEY_PREFIX: str = Field(
        default="storyflow",
        description="Namespace prefix for every key the service writes"
    )

    # ------------------------------------------------------------
    # Telegram (approval gateway)
    # ------------------------------------------------------------
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = Field(
        default=None,
        description="The only chat allowed to approve/reject items"
    )
    TELEGRAM_WEBHOOK_SECRET: Optional[str] = Field(
        default=None,
        description="Compared with the X-Telegram-Bot-Api-Secret-Token header when set"
    )
    TELEGRAM_TIMEOUT_SECS: int = 15

    # ------------------------------------------------------------
    # Instagram Graph API (publishing gateway)
    # ------------------------------------------------------------
    INSTAGRAM_API_BASE: str = "https://graph.facebook.com/v18.0"
    INSTAGRAM_ACCOUNT_ID: Optional[str] = None
    INSTAGRAM_ACCESS_TOKEN: Optional[str] = None
    INSTAGRAM_TIMEOUT_SECS: int = 30
    PUBLISH_SETTLE_DELAY_SECS: float = Field(
        default=3.0,
        description="Wait between container creation and publish"
    )
    PUBLISH_MAX_ATTEMPTS: int = 5
    PUBLISH_INITIAL_DELAY_SECS: float = 3.0
    PUBLISH_MAX_DELAY_SECS: float = 15.0

    # ------------------------------------------------------------
    # Enhancement (Gemini image models)
    # ------------------------------------------------------------
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_FLASH_MODEL_ID: str = "gemini-2.5-flash-image"
    GEMINI_PRO_MODEL_ID: str = "gemini-3-pro-image-preview"
    GEMINI_TIMEOUT_SECS: int = 120
    IMAGE_DOWNLOAD_TIMEOUT_SECS: int = 30

    # ------------------------------------------------------------
    # AWS / S3 (enhanced image hosting)
    # ------------------------------------------------------------
    AWS_REGION: str = "eu-west-1"
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_SESSION_TOKEN: Optional[str] = None
    ENHANCED_IMAGES_BUCKET: str = "storyflow-enhanced-images"
    ENHANCED_IMAGES_PREFIX: str = "enhanced"
    ENHANCED_IMAGES_PUBLIC_BASE_URL: Optional[str] = Field(
        default=None,
        description="CDN/base URL for uploaded images; defaults to the bucket's S3 URL"
    )

    # ------------------------------------------------------------
    # Runtime config defaults (overridable in Redis without redeploy)
    # ------------------------------------------------------------
    RUNTIME_CONFIG_TTL_SECS: int = 300
    APPROVAL_TIMEOUT_MINUTES: int = 15
    APPROVAL_REQUIRED: bool = True
    INTER_ITEM_DELAY_SECS: float = 5.0
    MAX_ITEMS_PER_RUN: int = 20
    SCHEDULED_BATCH_SIZE: int = 10

    # ------------------------------------------------------------
    # Security
    # ------------------------------------------------------------
    JWT_SECRET_KEY: str = Field(..., env="JWT_SECRET_KEY")
    JTI_CACHE_TTL_MINUTES: int = 15
    @property
    def JTI_CACHE_TTL_SECONDS(self) -> int:
        return self.JTI_CACHE_TTL_MINUTES * 60
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str = "storyflow-api"
    JWT_ISSUER: str = "storyflow-scheduler"
    JWT_LEEWAY_SECONDS: int = 30
    JWT_REQUIRE_JTI: bool = True

    @property
    def telegram_configured(self) -> bool:
        return bool(self.TELEGRAM_BOT_TOKEN and self.TELEGRAM_CHAT_ID)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
