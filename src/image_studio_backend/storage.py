"""
Image storage: local files, thumbnails and an optional S3 mirror.

This module provides functionality for:
- Storing uploaded and generated images under a local storage root
- Reading image dimensions and writing JPEG thumbnails with Pillow
- Holding intermediate results of multi-step processing in a temp directory
- Mirroring result images to S3 and generating presigned download URLs

The S3 bucket is configured via storage.s3_bucket (S3_BUCKET_NAME). When it is
empty, or when no AWS credentials are available, S3 operations are skipped
gracefully and images are served from local storage only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple
from uuid import uuid4

import boto3
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, UnidentifiedImageError

from .errors import PersistenceError
from .utils import ensure_directory, image_extension, mime_type_for, sanitize_label

logger = logging.getLogger(__name__)

# S3 client (lazy initialization)
_s3_client = None


def _get_s3_client(bucket: str):
    """
    Get or create the S3 client.

    Returns:
        boto3 S3 client or None if bucket is not configured
    """
    global _s3_client
    if _s3_client is None:
        if not bucket:
            return None
        try:
            _s3_client = boto3.client("s3")
        except (BotoCoreError, ValueError) as e:
            logger.warning(f"Failed to create S3 client: {e}")
            _s3_client = None
    return _s3_client


def upload_to_s3(path: Path, s3_key: str, bucket: str, content_type: str) -> bool:
    """
    Upload one image to S3.

    Returns:
        True if upload was successful, False otherwise
    """
    client = _get_s3_client(bucket)
    if client is None:
        return False

    try:
        client.upload_file(str(path), bucket, s3_key, ExtraArgs={"ContentType": content_type})
        logger.info(f"Upload successful: s3://{bucket}/{s3_key}")
        return True
    except (BotoCoreError, ClientError, Boto3Error) as e:
        logger.error(f"S3 upload failed: {e}")
        return False


def generate_presigned_url(s3_key: str, bucket: str, expiration: int = 3600) -> Optional[str]:
    """
    Generate a presigned URL for downloading an image from S3.

    Returns:
        Presigned URL string, or None if generation fails
    """
    client = _get_s3_client(bucket)
    if client is None:
        return None

    try:
        return client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": s3_key},
            ExpiresIn=expiration,
        )
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Failed to generate presigned URL: {e}")
        return None


def read_dimensions(data: bytes) -> Tuple[int, int]:
    """
    Return (width, height) of encoded image bytes.

    Raises:
        PersistenceError: If the bytes are not a readable image
    """
    try:
        with Image.open(BytesIO(data)) as image:
            return image.size
    except (UnidentifiedImageError, OSError) as exc:
        raise PersistenceError(f"Invalid image data: {exc}") from exc


@dataclass(frozen=True)
class StoredImage:
    filename: str
    path: Path
    thumbnail_path: Optional[Path]
    width: int
    height: int
    mime_type: str
    s3_key: Optional[str] = None


class LocalImageStore:
    """
    Filesystem layout::

        <root>/uploads/     images submitted by clients
        <root>/results/     variants produced by backends, one directory per job
        <root>/thumbnails/  JPEG thumbnails of both
        <root>/temp/        intermediate results of multi-step processing
    """

    def __init__(self, root: Path, thumbnail_size: int = 300, s3_bucket: str = "") -> None:
        self.root = ensure_directory(Path(root))
        self.upload_dir = ensure_directory(self.root / "uploads")
        self.result_dir = ensure_directory(self.root / "results")
        self.thumbnail_dir = ensure_directory(self.root / "thumbnails")
        self.temp_dir = ensure_directory(self.root / "temp")
        self.thumbnail_size = thumbnail_size
        self.s3_bucket = s3_bucket

    @property
    def s3_enabled(self) -> bool:
        return bool(self.s3_bucket) and _get_s3_client(self.s3_bucket) is not None

    def _write_thumbnail(self, data: bytes, stem: str) -> Path:
        destination = self.thumbnail_dir / f"{stem}.jpg"
        with Image.open(BytesIO(data)) as image:
            image.thumbnail((self.thumbnail_size, self.thumbnail_size))
            image.convert("RGB").save(destination, "JPEG", quality=80)
        return destination

    def _store(self, data: bytes, directory: Path, filename: str) -> StoredImage:
        width, height = read_dimensions(data)
        stem = f"{uuid4().hex[:12]}-{sanitize_label(Path(filename).stem, 'image')}"
        extension = image_extension(filename)
        destination = directory / f"{stem}{extension}"
        try:
            destination.write_bytes(data)
            thumbnail = self._write_thumbnail(data, stem)
        except OSError as exc:
            raise PersistenceError(f"Failed to store image {filename}: {exc}") from exc
        return StoredImage(
            filename=destination.name,
            path=destination,
            thumbnail_path=thumbnail,
            width=width,
            height=height,
            mime_type=mime_type_for(destination.name),
        )

    def save_upload(self, data: bytes, filename: str) -> StoredImage:
        return self._store(data, self.upload_dir, filename)

    def save_result(self, data: bytes, job_id: str, index: int) -> StoredImage:
        """Store one produced variant and mirror it to S3 when configured."""
        directory = ensure_directory(self.result_dir / job_id)
        stored = self._store(data, directory, f"variant-{index + 1}.png")
        if not self.s3_bucket:
            return stored

        s3_key = f"results/{job_id}/{stored.filename}"
        if upload_to_s3(stored.path, s3_key, self.s3_bucket, stored.mime_type):
            return replace(stored, s3_key=s3_key)
        return stored

    def save_temp(self, data: bytes, suffix: str = ".png") -> Path:
        path = self.temp_dir / f"{uuid4().hex}{suffix}"
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise PersistenceError(f"Failed to write temporary image: {exc}") from exc
        return path

    def discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"Could not remove temporary file {path}: {exc}")

    def url_for(self, s3_key: Optional[str]) -> Optional[str]:
        if not s3_key or not self.s3_bucket:
            return None
        return generate_presigned_url(s3_key, self.s3_bucket)
