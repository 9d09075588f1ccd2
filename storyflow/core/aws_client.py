# core/aws_client.py
"""
Centralized AWS client factory to ensure proper credential handling.
Only S3 is used: enhanced images are hosted there so Telegram and the
Instagram Graph API can fetch them by URL.
"""
import boto3
from botocore.config import Config

from storyflow.core.config import settings
from storyflow.core.logger import logger


def get_s3_client():
    """Get S3 client with proper credentials."""
    try:
        # Explicit keys from settings win; None falls through to the default boto3 chain
        client = boto3.client(
            "s3",
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            aws_session_token=settings.AWS_SESSION_TOKEN,
            config=Config(
                connect_timeout=10,
                read_timeout=60,
                retries={"max_attempts": 3, "mode": "standard"}
            )
        )
        logger.info("S3 client initialized with credentials")
        return client
    except Exception as e:
        logger.error(f"Failed to initialize S3 client: {str(e)}")
        raise


def validate_aws_credentials() -> bool:
    """Validate that AWS credentials are resolvable."""
    if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
        return True

    if boto3.Session(region_name=settings.AWS_REGION).get_credentials() is None:
        logger.warning("No AWS credentials found in settings, environment or profile")
        return False

    return True
