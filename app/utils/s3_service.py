import io
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, UnidentifiedImageError

from app.config import Settings
from app.utils.errors import ListingValidationError

logger = logging.getLogger(__name__)

FOLDER = "listings"
MAX_UPLOAD_SIZE_MB = 5
MAX_UPLOAD_BYTES = MAX_UPLOAD_SIZE_MB * 1024 * 1024


def image_key_prefix(owner_id: int) -> str:
    return f"{FOLDER}/{owner_id}/"


def compress_image(data: bytes, max_width=1400, quality=80) -> Tuple[io.BytesIO, str]:
    try:
        img = Image.open(io.BytesIO(data))
        img = img.convert("RGB")
    except (UnidentifiedImageError, OSError):
        raise ListingValidationError("Uploaded file is not a readable image")

    # Resize while keeping aspect ratio
    w, h = img.size
    if w > max_width:
        new_height = int(h * (max_width / w))
        img = img.resize((max_width, new_height), Image.LANCZOS)

    buffer = io.BytesIO()
    try:
        img.save(buffer, format="WEBP", quality=quality, method=6)
        ext = "webp"
    except (OSError, KeyError):
        logger.warning("WebP encoding unavailable, falling back to JPEG")
        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=quality, optimize=True)
        ext = "jpg"

    buffer.seek(0)
    return buffer, ext


class ImageStorage:
    """Listing photos in an S3-compatible bucket (Cloudflare R2 in production)."""

    def __init__(self, settings: Settings, client=None):
        self.bucket = settings.r2_bucket
        self.enabled = settings.storage_enabled
        self._client = client
        self._settings = settings

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                service_name="s3",
                endpoint_url=self._settings.r2_endpoint_url,
                aws_access_key_id=self._settings.aws_access_key_id,
                aws_secret_access_key=self._settings.aws_secret_access_key,
                region_name="auto",
            )
        return self._client

    def upload(self, raw_bytes: bytes, original_name: str, owner_id: int) -> str:
        if len(raw_bytes) > MAX_UPLOAD_BYTES:
            raise ListingValidationError(f"Image exceeds {MAX_UPLOAD_SIZE_MB}MB limit")

        buffer, ext = compress_image(raw_bytes)

        base = os.path.splitext(os.path.basename(original_name or "photo"))[0][:40] or "photo"
        ts = int(datetime.now(timezone.utc).timestamp())
        key = f"{image_key_prefix(owner_id)}{base}-{ts}-{uuid.uuid4().hex[:8]}.{ext}"

        self.client.upload_fileobj(buffer, self.bucket, key)
        return key

    def signed_url(self, key: str, expires_in=3600) -> Optional[str]:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning("Could not sign image URL", extra={"key": key, "error": str(e)})
            return None
