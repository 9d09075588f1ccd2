# integrations/publishing_gateway.py
"""
Instagram Graph API publishing gateway (Stories).

Story posting is a two-phase protocol:
1. Create a story container (POST /{account}/media, media_type=STORIES)
2. Publish the container (POST /{account}/media_publish)

The container is not always ready right after creation, so publishing waits
a settle delay and then retries on error code 9007 only.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from storyflow.core.exceptions import (
    ContainerNotReadyError,
    PublishingAuthError,
    PublishingError,
    PublishingPermissionError,
    PublishingRateLimitError,
)
from storyflow.core.logger import logger
from storyflow.utils.retry import DEFAULT_POLICY, PUBLISHING_POLICY, RetryPolicy, execute

TOKEN_ERROR_CODE = 190
CONTAINER_NOT_READY_CODE = 9007
PERMISSION_ERROR_CODES = {10, 200}


@dataclass(frozen=True)
class PublishedStory:
    id: str
    container_id: str
    image_url: str
    caption: str


def classify_error(status_code: int, payload: Dict[str, Any], default_message: str) -> PublishingError:
    """Map a Graph API error response onto the PublishingError hierarchy."""
    error = payload.get("error") or {}
    message = error.get("message") or default_message
    raw_code = error.get("code")
    try:
        code = int(raw_code) if raw_code is not None else None
    except (TypeError, ValueError):
        code = None
    error_code = str(raw_code) if raw_code is not None else None

    if code == TOKEN_ERROR_CODE:
        return PublishingAuthError(
            "Access token expired or invalid. Please refresh the token.",
            status_code,
            error_code,
        )
    if status_code == 429:
        return PublishingRateLimitError(
            "Rate limit exceeded. Please try again later.",
            status_code,
            "RATE_LIMIT",
        )
    if code == CONTAINER_NOT_READY_CODE:
        return ContainerNotReadyError(
            "Story container is not ready. Please wait and retry.",
            status_code,
            error_code,
        )
    if code in PERMISSION_ERROR_CODES or status_code == 403:
        return PublishingPermissionError(message, status_code, error_code)

    return PublishingError(message, status_code, error_code)


class PublishingGateway:
    """
    Creates and publishes Instagram Stories for one business account.
    """

    def __init__(
        self,
        account_id: str,
        access_token: str,
        *,
        api_base: str = "https://graph.facebook.com/v18.0",
        timeout: float = 30,
        settle_delay: float = 3.0,
        publish_policy: RetryPolicy = PUBLISHING_POLICY,
        container_policy: RetryPolicy = DEFAULT_POLICY,
        sleep: Callable[[float], None] = time.sleep,
        session: Optional[requests.Session] = None
    ) -> None:
        if not account_id or not access_token:
            raise ValueError("Instagram account id and access token are required")

        self.account_id = account_id
        self._access_token = access_token
        self._api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.settle_delay = settle_delay
        self.publish_policy = publish_policy
        self.container_policy = container_policy
        self._sleep = sleep
        self._session = session or requests.Session()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, params: Dict[str, Any], default_error: str) -> Dict[str, Any]:
        try:
            resp = self._session.request(
                method,
                f"{self._api_base}/{path}",
                params={**params, "access_token": self._access_token},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            # Network failures stay as requests errors so the retry predicate sees them
            logger.error(f"Instagram request to {path} failed: {e}")
            raise

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if not resp.ok:
            error = classify_error(resp.status_code, data, default_error)
            logger.error(
                f"Instagram API error on {path}: {error.message}",
                extra={"status_code": resp.status_code, "error_code": error.error_code}
            )
            raise error

        return data

    # ------------------------------------------------------------------
    # Two-phase protocol
    # ------------------------------------------------------------------

    def create_container(self, image_url: str) -> str:
        """Phase 1: returns the container (creation) id."""
        logger.info("Creating story container")
        data = self._request(
            "POST",
            f"{self.account_id}/media",
            {"image_url": image_url, "media_type": "STORIES"},
            "Failed to create container",
        )
        logger.info(f"Story container created: {data['id']}")
        return data["id"]

    def publish(self, container_id: str) -> str:
        """Phase 2: returns the published media id."""
        logger.info(f"Publishing story container {container_id}")
        data = self._request(
            "POST",
            f"{self.account_id}/media_publish",
            {"creation_id": container_id},
            "Failed to publish story",
        )
        logger.info(f"Story published: {data['id']}")
        return data["id"]

    def create_story(self, image_url: str, caption: str = "") -> PublishedStory:
        """
        Create a container, wait for it to settle, then publish with retry.

        The caption is only kept for tracking; Stories have no caption field.
        """
        logger.info(
            "Starting story creation",
            extra={"image_url": image_url, "caption": caption[:50]}
        )

        container_id = execute(
            lambda: self.create_container(image_url),
            self.container_policy,
            sleep=self._sleep,
            label="Instagram container creation",
        )

        self._sleep(self.settle_delay)

        def _log_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(
                f"Publish retry {attempt}",
                extra={"container_id": container_id, "delay": delay, "error": str(error)}
            )

        policy = self.publish_policy
        if policy.on_retry is None:
            policy = policy.with_options(on_retry=_log_retry)

        media_id = execute(
            lambda: self.publish(container_id),
            policy,
            sleep=self._sleep,
            label="Instagram publish",
        )

        return PublishedStory(
            id=media_id,
            container_id=container_id,
            image_url=image_url,
            caption=caption,
        )

    def validate_token(self) -> Dict[str, Any]:
        """Account info when the token is valid; raises PublishingError otherwise."""
        return self._request(
            "GET",
            self.account_id,
            {"fields": "id,name"},
            "Invalid access token",
        )
