# core/exceptions.py
"""
Exception hierarchy shared by the integrations and services.

Business state conflicts (a conditional transition that lost a race) are
NOT exceptions; QueueStore reports them as False. Everything here is either
an external-service failure or a programming/input error.
"""

from typing import Optional


class StoryflowError(Exception):
    """Base class for all service errors."""


# ============================================================================
# EXTERNAL SERVICES
# ============================================================================

class ExternalServiceError(StoryflowError):
    """
    Failure reported by (or while talking to) an external API.

    `retryable` is the class-level default; HTTP 429/5xx make an instance
    retryable regardless of the subclass (see utils.retry.is_retryable_error).
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code


class PublishingError(ExternalServiceError):
    """Instagram Graph API failure."""


class ContainerNotReadyError(PublishingError):
    """Media container exists but cannot be published yet (code 9007)."""

    retryable = True


class PublishingAuthError(PublishingError):
    """Access token expired or invalid (code 190). Never retried."""


class PublishingPermissionError(PublishingError):
    """Account lacks the permission required to publish. Never retried."""


class PublishingRateLimitError(PublishingError):
    """HTTP 429 from the Graph API."""

    retryable = True


class ContentPolicyError(ExternalServiceError):
    """Content rejected by a safety/policy filter. Never retried."""


class MessagingError(ExternalServiceError):
    """Telegram Bot API failure."""


class EnhancementError(StoryflowError):
    """The enhancement step failed; the pipeline falls back to the original image."""


# ============================================================================
# QUEUE STORE
# ============================================================================

class QueueStoreError(StoryflowError):
    """Base exception raised for queue store failures."""


class IllegalTransitionError(QueueStoreError):
    """A transition outside the lifecycle graph was requested."""

    def __init__(self, from_status, to_status):
        super().__init__(f"Illegal transition: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class ItemNotFoundError(QueueStoreError):
    """Raised when a queue item cannot be located."""


# ============================================================================
# WEBHOOK CALLBACKS
# ============================================================================

class CallbackError(StoryflowError):
    """Inbound callback rejected before any state was touched."""

    status_code: int = 400


class UnauthorizedCallbackError(CallbackError):
    status_code = 403


class MalformedCallbackError(CallbackError):
    status_code = 400
