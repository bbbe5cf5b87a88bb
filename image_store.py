"""
image_store.py - Read access to previously stored receipt images.

Reprocessing resolves an image reference through an `ImageStore`. The
pipeline only ever reads from the store; uploads belong to the caller.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from errors import InputError
from logging_config import get_logger

logger = get_logger(__name__)

MAX_IMAGE_BYTES = 20 * 1024 * 1024  # 20 MB


class ImageStore(Protocol):
    def fetch(self, image_ref: str) -> bytes: ...


class LocalImageStore:
    """Images stored as files beneath a root directory, keyed by relative path."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _resolve(self, image_ref: str) -> Path:
        if image_ref is None or not str(image_ref).strip():
            raise InputError("image_ref cannot be empty", {"code": "MISSING_IMAGE"})

        path = (self.root / str(image_ref).strip()).resolve()
        if path != self.root and self.root not in path.parents:
            raise InputError(
                "image_ref points outside the image store",
                {"code": "INVALID_IMAGE_REF", "image_ref": image_ref},
            )
        return path

    def fetch(self, image_ref: str) -> bytes:
        path = self._resolve(image_ref)
        if not path.is_file():
            raise InputError(
                f"Stored image not found: {image_ref}",
                {"code": "IMAGE_NOT_FOUND", "image_ref": image_ref},
            )

        size = path.stat().st_size
        if size > MAX_IMAGE_BYTES:
            logger.warning(
                "image_store_large_file | ref=%s | size_mb=%.1f | limit_mb=%.1f | fallback=continue",
                image_ref,
                size / (1024 * 1024),
                MAX_IMAGE_BYTES / (1024 * 1024),
            )

        data = path.read_bytes()
        logger.info("image_store_fetch | ref=%s | bytes=%s", image_ref, len(data))
        return data
