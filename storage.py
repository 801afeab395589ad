"""
Image storage

Car pictures and profile pictures live in an S3 bucket; documents only keep
the public URL.
"""

import logging
import os
import re
from typing import Optional
from urllib.parse import unquote, urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import HTTPException, UploadFile

from config import Config

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")


def sanitize_filename(name: str) -> str:
    name = re.sub(r"[^a-zA-Z0-9.-]", "_", name)
    name = re.sub(r"_{2,}", "_", name)
    return name.strip("_")


def read_image(file: UploadFile, max_bytes: Optional[int] = None) -> bytes:
    limit = Config.MAX_IMAGE_BYTES if max_bytes is None else max_bytes
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Invalid file type. Only JPEG, PNG, WEBP, and GIF are allowed.")
    body = file.file.read(limit + 1)
    if not body:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if len(body) > limit:
        raise HTTPException(status_code=400, detail=f"Image must be {limit // (1024 * 1024)}MB or smaller")
    return body


class ImageStore:
    def __init__(self, bucket: str, region: str, client=None):
        self.bucket = bucket
        self.region = region
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=Config.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=Config.AWS_SECRET_ACCESS_KEY,
        )

    @property
    def host(self) -> str:
        return f"{self.bucket}.s3.{self.region}.amazonaws.com"

    def url_for(self, key: str) -> str:
        return f"https://{self.host}/{key}"

    def key_from_url(self, url: Optional[str]) -> Optional[str]:
        """Object key for a URL this store handed out, else None."""
        if not url:
            return None
        parsed = urlparse(url)
        if parsed.netloc != self.host:
            return None
        key = unquote(parsed.path.lstrip("/"))
        return key or None

    def owns(self, url: Optional[str]) -> bool:
        return self.key_from_url(url) is not None

    def upload(self, key: str, body: bytes, content_type: str) -> str:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                ACL="public-read",
            )
        except (BotoCoreError, ClientError):
            logger.exception(f"Upload of {key} to {self.bucket} failed")
            raise HTTPException(status_code=500, detail="Failed to upload image")
        logger.info(f"Uploaded {key} ({len(body)} bytes)")
        return self.url_for(key)

    def delete(self, key: str):
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError):
            logger.exception(f"Delete of {key} from {self.bucket} failed")
            raise HTTPException(status_code=500, detail="Failed to delete image")
        logger.info(f"Deleted {key}")


def car_image_key(year: int, make: str, model: str, filename: str) -> str:
    ext = os.path.splitext(filename or "")[1]
    return f"images/{sanitize_filename(str(year))}{sanitize_filename(make)}{sanitize_filename(model)}{ext}"


def profile_image_key(username: str, filename: str) -> str:
    base, ext = os.path.splitext(filename or "")
    return f"profileimages/{sanitize_filename(username)}-{sanitize_filename(base)}{ext}"


_store: Optional[ImageStore] = None


def get_image_store() -> ImageStore:
    global _store
    if not Config.S3_BUCKET_NAME:
        raise HTTPException(status_code=500, detail="Image storage not configured")
    if _store is None:
        _store = ImageStore(Config.S3_BUCKET_NAME, Config.AWS_REGION)
    return _store
