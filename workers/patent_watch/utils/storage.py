"""Storage client for S3 staging of documents handed to OCR."""

import asyncio
import uuid
from typing import Optional

import boto3
import structlog

from .config import Settings

logger = structlog.get_logger(__name__)


class StorageClient:
    """Client for S3 storage operations."""

    def __init__(self, settings: Settings, s3_client=None):
        self.bucket_name = settings.require("s3_bucket")
        self.s3_client = s3_client or boto3.client(
            "s3",
            region_name=settings.aws_region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )

    @staticmethod
    def temp_key(suffix: str = ".pdf") -> str:
        """Unique key for a short-lived staging object."""
        return f"temp-{uuid.uuid4().hex}{suffix}"

    async def put_bytes(self, data: bytes, key: Optional[str] = None,
                        content_type: str = "application/pdf") -> str:
        """Upload bytes and return the object key."""
        key = key or self.temp_key()
        await asyncio.to_thread(
            self.s3_client.put_object,
            Bucket=self.bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        logger.info("Object uploaded to S3", bucket=self.bucket_name, key=key, size=len(data))
        return key

    async def get_bytes(self, key: str) -> bytes:
        response = await asyncio.to_thread(self.s3_client.get_object, Bucket=self.bucket_name, Key=key)
        return await asyncio.to_thread(response["Body"].read)

    def object_url(self, key: str) -> str:
        return f"s3://{self.bucket_name}/{key}"

    async def delete_object(self, key: str) -> bool:
        """Delete an object. Failures are logged, never raised."""
        try:
            await asyncio.to_thread(self.s3_client.delete_object, Bucket=self.bucket_name, Key=key)
            logger.info("Object deleted", key=key)
            return True
        except Exception as e:
            logger.error("Object deletion failed", error=str(e), key=key)
            return False
