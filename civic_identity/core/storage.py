import io
import logging
import os
from typing import Optional, Protocol

import boto3

from civic_identity.core.config import settings

logger = logging.getLogger(__name__)


class FileStorage(Protocol):
    def save(self, key: str, data: bytes, content_type: str) -> str:
        """Store the bytes and return the reference recorded on the document."""
        ...

    def read(self, url: str) -> bytes:
        ...

    def delete(self, url: str) -> None:
        ...


class LocalFileStorage:
    """Writes uploads under UPLOAD_DIR. Development only."""

    def __init__(self, root: Optional[str] = None):
        self.root = root or settings.UPLOAD_DIR

    def _path(self, url: str) -> str:
        relative = url.removeprefix("/uploads/").lstrip("/")
        return os.path.join(self.root, relative)

    def save(self, key: str, data: bytes, content_type: str) -> str:
        url = f"/uploads/{key}"
        path = self._path(url)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(data)
        return url

    def read(self, url: str) -> bytes:
        with open(self._path(url), "rb") as fh:
            return fh.read()

    def delete(self, url: str) -> None:
        try:
            os.remove(self._path(url))
        except FileNotFoundError:
            pass


def _s3_client():
    # Local: uses access key from .env
    # Production (EC2): uses IAM role attached to instance
    if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
        return boto3.client(
            "s3",
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        )
    return boto3.client("s3", region_name=settings.AWS_REGION)


class S3FileStorage:
    def __init__(self, client=None, bucket: Optional[str] = None):
        self.client = client or _s3_client()
        self.bucket = bucket or settings.AWS_S3_BUCKET

    def _key(self, url: str) -> str:
        prefix = f"https://{self.bucket}.s3.{settings.AWS_REGION}.amazonaws.com/"
        return url.removeprefix(prefix)

    def save(self, key: str, data: bytes, content_type: str) -> str:
        """
        Uploads the document privately with server-side encryption and
        returns its HTTPS URL.
        """
        try:
            self.client.upload_fileobj(
                Fileobj=io.BytesIO(data),
                Bucket=self.bucket,
                Key=key,
                ExtraArgs={
                    "ContentType": content_type,
                    "ServerSideEncryption": "AES256",
                },
            )
        except Exception as e:
            logger.error("S3 upload error for %s: %s", key, str(e))
            raise

        return f"https://{self.bucket}.s3.{settings.AWS_REGION}.amazonaws.com/{key}"

    def read(self, url: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=self._key(url))
        return response["Body"].read()

    def delete(self, url: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=self._key(url))


def get_storage() -> FileStorage:
    if settings.STORAGE_BACKEND == "s3":
        return S3FileStorage()
    return LocalFileStorage()
