"""Content-addressed binary asset storage on S3."""

import hashlib
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

_CHUNK = 1024 * 1024


def file_digests(path: Path) -> Dict[str, str]:
    """SHA-256 (identity) and MD5 (S3 ETag check) of a file's bytes."""
    sha256 = hashlib.sha256()
    md5 = hashlib.md5()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            sha256.update(chunk)
            md5.update(chunk)
    return {"sha256": sha256.hexdigest(), "md5": md5.hexdigest()}


def guess_mime_type(path: Path) -> Optional[str]:
    """Sniff an image type from the file's bytes, else fall back to its extension."""
    path = Path(path)
    try:
        with Image.open(path) as image:
            mime = Image.MIME.get(image.format or "")
            if mime:
                return mime
    except (UnidentifiedImageError, OSError):
        pass
    with open(path, "rb") as handle:
        head = handle.read(512).lstrip()
    if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in head):
        return "image/svg+xml"
    mime, _ = mimetypes.guess_type(path.name)
    return mime


class AssetStore:
    """Uploads files under keys derived from their SHA-256 hash.

    Identical content is stored once. An upload is skipped when the object
    already exists with an ETag equal to the local file's MD5.
    """

    def __init__(self, bucket: str, prefix: str, region: Optional[str] = None, client=None):
        """Initialize asset store.

        Args:
            bucket: S3 bucket name
            prefix: Key prefix under which ``binaries/`` lives
            region: AWS region for the default client
            client: Pre-built S3 client, mainly for tests
        """
        self.bucket = bucket
        self.prefix = prefix.rstrip("/")
        self.client = client or boto3.client("s3", region_name=region)

    def asset_key(self, sha256: str) -> str:
        return f"{self.prefix}/binaries/{sha256[:2]}/{sha256[2:4]}/{sha256}"

    def _remote_etag(self, key: str) -> Optional[str]:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return None
            raise
        return response.get("ETag")

    def put(self, path: Path, metadata: Optional[Dict[str, str]] = None) -> str:
        """Store a file and return its content hash.

        Args:
            path: Local file to upload
            metadata: Extra S3 object metadata (width, height, ...)

        Returns:
            Hex SHA-256 of the file, which is also its asset id

        Raises:
            RuntimeError: If S3 reports a checksum that doesn't match the file
        """
        path = Path(path)
        digests = file_digests(path)
        key = self.asset_key(digests["sha256"])
        expected_etag = f'"{digests["md5"]}"'

        if self._remote_etag(key) == expected_etag:
            logger.debug(f"Asset {key} already stored")
            return digests["sha256"]

        object_metadata = {k: str(v) for k, v in (metadata or {}).items()}
        object_metadata["original_path"] = "/".join(path.parts[-2:])
        object_metadata["mime_type"] = guess_mime_type(path) or "application/octet-stream"
        logger.info(f"Uploading {path} to s3://{self.bucket}/{key}")
        with open(path, "rb") as body:
            response = self.client.put_object(
                Bucket=self.bucket, Key=key, Body=body, Metadata=object_metadata
            )
        if response.get("ETag") != expected_etag:
            raise RuntimeError(
                f"S3 returned etag {response.get('ETag')!r} but expected {expected_etag!r}"
            )
        return digests["sha256"]

    def put_image(self, path: Path) -> Dict[str, Any]:
        """Store an image and describe it.

        Returns:
            Dict with ``asset_id`` and ``image_type``, plus ``width`` and
            ``height`` for bitmaps (SVG images carry no dimensions)

        Raises:
            ValueError: If the file is not an image
        """
        path = Path(path)
        mime = guess_mime_type(path)
        if mime == "image/svg+xml":
            return {"asset_id": self.put(path, {}), "image_type": "svg+xml"}
        if not mime or not mime.startswith("image/"):
            raise ValueError(f"Non-image file {path}")
        with Image.open(path) as image:
            width, height = image.size
        return {
            "asset_id": self.put(path, {"width": width, "height": height}),
            "image_type": mime.split("/", 1)[1],
            "width": width,
            "height": height,
        }
