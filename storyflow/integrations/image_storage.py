# integrations/image_storage.py
from datetime import datetime, timezone
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from storyflow.core.exceptions import ExternalServiceError
from storyflow.core.logger import logger

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
}


class S3ImageStorage:
    """
    Uploads enhanced images to S3 and returns a publicly fetchable URL.

    Keys look like `{prefix}/{item_id}_{timestamp}.{ext}`.
    """

    def __init__(
        self,
        s3_client,
        bucket: str,
        *,
        prefix: str = "enhanced",
        region: str = "eu-west-1",
        public_base_url: Optional[str] = None
    ) -> None:
        self._s3 = s3_client
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.public_base_url = (
            public_base_url or f"https://{bucket}.s3.{region}.amazonaws.com"
        ).rstrip("/")

    def build_key(self, item_id: str, mime_type: str) -> str:
        ext = _EXTENSIONS.get(mime_type.lower(), "png")
        ts = int(datetime.now(timezone.utc).timestamp() * 1000)
        return f"{self.prefix}/{item_id}_{ts}.{ext}"

    def upload(self, item_id: str, data: bytes, mime_type: str) -> str:
        key = self.build_key(item_id, mime_type)
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=mime_type,
                CacheControl="public, max-age=31536000",
            )
        except (BotoCoreError, ClientError) as e:
            raise ExternalServiceError(f"S3 upload failed for {key}: {e}") from e

        logger.info(
            "Enhanced image uploaded",
            extra={"bucket": self.bucket, "key": key, "bytes": len(data)}
        )
        return f"{self.public_base_url}/{key}"
