"""
Asset Storage Backends
======================
Object stores for question/option images.

Two backends share one small interface (``upload``, ``delete_many``,
``list_ids``):

    CloudinaryAssetStore   production, images hosted on Cloudinary
    LocalAssetStore        development/tests, images on the filesystem

Local Directory Layout:
    uploads/
    └── images/
        └── quizzes/
            └── {quiz_id}/     # one folder per quiz
                └── {uuid}.png

A storage id (``public_id``) never includes the file extension, matching
Cloudinary's convention, so both backends can be swapped freely.
"""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import cloudinary
import cloudinary.api
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError

from .config import ServiceConfig

logger = logging.getLogger(__name__)

# data:image/png;base64,iVBORw0...
DATA_URI_PATTERN = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w.+-]+=[^;,]*)*;base64,(?P<data>.*)$",
    re.IGNORECASE | re.DOTALL,
)

DELETE_BATCH_SIZE = 100


class AssetStoreError(Exception):
    """Raised by a backend when the object store rejects or cannot serve a call."""


@dataclass(frozen=True)
class StoredAsset:
    """Hosted reference returned by an upload."""
    url: str
    public_id: str


def parse_data_uri(data_uri: str) -> tuple[str, bytes]:
    """
    Split a base64 data URI into (mime_type, raw bytes).
    Raises AssetStoreError if the payload is not valid inline content.
    """
    match = DATA_URI_PATTERN.match(data_uri or "")
    if not match:
        raise AssetStoreError("Not a base64 data URI")
    mime = (match.group("mime") or "application/octet-stream").lower()
    try:
        payload = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise AssetStoreError(f"Invalid base64 image data: {e}") from e
    if not payload:
        raise AssetStoreError("Empty image data")
    return mime, payload


# ─── Cloudinary ───────────────────────────────────────────────────────────────


class CloudinaryAssetStore:
    """Images hosted on Cloudinary. Data URIs are uploaded as-is."""

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        timeout: float = 30,
    ):
        self.timeout = timeout
        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True,
        )

    def upload(self, data_uri: str, folder: str) -> StoredAsset:
        try:
            result = cloudinary.uploader.upload(
                data_uri,
                folder=folder,
                resource_type="image",
                timeout=self.timeout,
            )
        except (CloudinaryError, OSError) as e:
            raise AssetStoreError(str(e)) from e

        url = result.get("secure_url")
        public_id = result.get("public_id")
        if not url or not public_id:
            raise AssetStoreError("Cloudinary returned no secure_url/public_id")
        logger.info(f"Uploaded image to Cloudinary: {public_id}")
        return StoredAsset(url=url, public_id=public_id)

    def delete_many(self, public_ids: list[str]) -> list[str]:
        """Delete in batches. Returns the ids that could not be deleted."""
        failed: list[str] = []
        for start in range(0, len(public_ids), DELETE_BATCH_SIZE):
            batch = public_ids[start:start + DELETE_BATCH_SIZE]
            try:
                result = cloudinary.api.delete_resources(batch)
            except (CloudinaryError, OSError) as e:
                logger.warning(f"Cloudinary batch delete failed: {e}")
                failed.extend(batch)
                continue
            deleted = result.get("deleted", {})
            for public_id in batch:
                # "not_found" means it is already gone, which is the goal
                if deleted.get(public_id) not in ("deleted", "not_found"):
                    failed.append(public_id)
        return failed

    def list_ids(self, prefix: str) -> list[str]:
        ids: list[str] = []
        cursor: Optional[str] = None
        while True:
            params = {"type": "upload", "prefix": prefix, "max_results": 500}
            if cursor:
                params["next_cursor"] = cursor
            try:
                result = cloudinary.api.resources(**params)
            except (CloudinaryError, OSError) as e:
                raise AssetStoreError(str(e)) from e
            ids.extend(r["public_id"] for r in result.get("resources", []))
            cursor = result.get("next_cursor")
            if not cursor:
                return ids


# ─── Local Filesystem ─────────────────────────────────────────────────────────


class LocalAssetStore:
    """
    Images stored under ``{root}/images``. URLs are served by the Flask app
    from ``{base_url}/images/...``.
    """

    def __init__(self, root: str | Path, base_url: str = "/uploads"):
        self.root = Path(root).absolute()
        self.images_dir = self.root / "images"
        self.base_url = base_url.rstrip("/")
        self.images_dir.mkdir(parents=True, exist_ok=True)

    def upload(self, data_uri: str, folder: str) -> StoredAsset:
        mime, payload = parse_data_uri(data_uri)
        ext = mimetypes.guess_extension(mime) or ".bin"
        public_id = f"{_sanitize_folder(folder)}/{uuid.uuid4().hex}"
        dest = self.images_dir / f"{public_id}{ext}"
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(payload)
        except OSError as e:
            raise AssetStoreError(f"Could not write {dest}: {e}") from e

        rel = dest.relative_to(self.root).as_posix()
        logger.info(f"Image saved: {rel}")
        return StoredAsset(url=f"{self.base_url}/{rel}", public_id=public_id)

    def delete_many(self, public_ids: list[str]) -> list[str]:
        failed: list[str] = []
        for public_id in public_ids:
            try:
                for path in self._files_for(public_id):
                    path.unlink()
                    logger.info(f"Deleted image: {path.relative_to(self.root)}")
            except (OSError, ValueError) as e:
                logger.warning(f"Could not delete image {public_id}: {e}")
                failed.append(public_id)
        self._cleanup_empty_dirs()
        return failed

    def list_ids(self, prefix: str) -> list[str]:
        ids = []
        for path in sorted(self.images_dir.rglob("*")):
            if path.is_file():
                public_id = path.relative_to(self.images_dir).with_suffix("").as_posix()
                if public_id.startswith(prefix):
                    ids.append(public_id)
        return ids

    def _files_for(self, public_id: str) -> list[Path]:
        base = (self.images_dir / public_id).resolve()
        if self.images_dir.resolve() not in base.parents:
            raise ValueError(f"Storage id escapes the image root: {public_id}")
        return [p for p in base.parent.glob(f"{base.name}.*") if p.is_file()]

    def _cleanup_empty_dirs(self):
        """Remove per-quiz folders left empty after deletions."""
        for directory in sorted(self.images_dir.rglob("*"), reverse=True):
            if directory.is_dir():
                try:
                    if not any(directory.iterdir()):
                        directory.rmdir()
                except OSError:
                    pass


def _sanitize_folder(folder: str) -> str:
    """Keep path separators, sanitize every segment for filesystem use."""
    parts = []
    for part in folder.split("/"):
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in part)[:100]
        if safe and safe not in (".", ".."):
            parts.append(safe)
    return "/".join(parts) or "misc"


# ─── Factory ──────────────────────────────────────────────────────────────────


def create_asset_store(config: ServiceConfig):
    """Build the backend named by ``config.asset_backend``."""
    if config.asset_backend == "cloudinary":
        if not config.cloudinary_cloud_name:
            raise ValueError(
                "CLOUDINARY_CLOUD_NAME must be set for the cloudinary backend"
            )
        logger.info(f"Asset store: Cloudinary ({config.cloudinary_cloud_name})")
        return CloudinaryAssetStore(
            cloud_name=config.cloudinary_cloud_name,
            api_key=config.cloudinary_api_key,
            api_secret=config.cloudinary_api_secret,
            timeout=config.upload_timeout,
        )
    if config.asset_backend == "local":
        logger.info(f"Asset store: local ({config.uploads_dir})")
        return LocalAssetStore(config.uploads_dir)
    raise ValueError(f"Unknown asset backend: {config.asset_backend!r}")
