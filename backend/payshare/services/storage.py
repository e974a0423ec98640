import asyncio
import hashlib
import logging
import mimetypes
import os
import uuid
from datetime import datetime, timezone
from typing import BinaryIO, Optional
from urllib.parse import quote

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from payshare.config import Settings
from payshare.ledger.errors import StorageUnavailable

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class StorageService:
    """Shared file bytes live in S3/MinIO; the ledger keeps only the object key."""

    def __init__(self, settings: Settings):
        self.endpoint_url = settings.S3_ENDPOINT
        self.bucket = settings.S3_BUCKET
        self.public_endpoint = settings.S3_PUBLIC_ENDPOINT or self.endpoint_url

        self.client = boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
            config=Config(signature_version="s3v4"),
        )

    @staticmethod
    def object_key(owner_id: int, file_name: str, content: bytes) -> str:
        """users/<owner>/files/<date>/<content hash>_<random><ext>"""
        ext = os.path.splitext(file_name)[1].lower()
        day = datetime.now(timezone.utc).strftime("%Y/%m/%d")
        digest = hashlib.sha256(content).hexdigest()[:16]
        return f"users/{owner_id}/files/{day}/{digest}_{uuid.uuid4().hex[:8]}{ext}"

    async def upload_file(
        self,
        user_id: int,
        file_data: BinaryIO,
        original_filename: str,
        content_type: Optional[str] = None,
    ) -> dict:
        content = file_data.read()
        key = self.object_key(user_id, original_filename, content)
        content_type = content_type or mimetypes.guess_type(original_filename)[0] or DEFAULT_CONTENT_TYPE

        try:
            # boto3 is blocking
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
                ContentDisposition=self._attachment(original_filename),
                Metadata={"owner-id": str(user_id)},
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Upload of {key} failed: {e}")
            raise StorageUnavailable("File storage is unavailable") from e

        logger.info(f"Stored {len(content)} bytes at {key}")
        return {
            "key": key,
            "original_filename": original_filename,
            "size_bytes": len(content),
            "content_type": content_type,
        }

    @staticmethod
    def _attachment(filename: str) -> str:
        # RFC 6266: non-ASCII names need the filename* form
        return f"attachment; filename*=UTF-8''{quote(filename)}"

    def get_presigned_url(self, key: str, expires_in: int = 3600, filename: Optional[str] = None) -> str:
        params = {"Bucket": self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = self._attachment(filename)

        url = self.client.generate_presigned_url("get_object", Params=params, ExpiresIn=expires_in)
        if self.public_endpoint != self.endpoint_url:
            url = url.replace(self.endpoint_url, self.public_endpoint, 1)
        return url

    async def delete_file(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            logger.warning(f"Could not delete {key}: {e}")
            return False
        return True
