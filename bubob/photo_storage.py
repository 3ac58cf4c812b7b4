from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_EXTENSION = "jpg"
SAVE_ATTEMPTS = 5
FALLBACK_MEDIA_TYPE = "application/octet-stream"

IMAGE_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "heic": "image/heic",
    "heif": "image/heif",
}
EXTENSIONS_BY_TYPE = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heif",
}


class PhotoTooLarge(ValueError):
    """Raised when an upload exceeds the configured size limit."""


@dataclass(frozen=True)
class StoredPhoto:
    path: str
    url: str
    content_type: str
    size: int


@dataclass
class LocalPhotoStore:
    """Filesystem object store for transaction photos.

    Objects live under ``root`` at ``{user_id}/{account_id}/{millis}.{ext}``
    and are published at ``{public_base_url}/photos/{path}``. Only image
    extensions are ever written, and the stored content type is derived from
    the extension so it matches what :meth:`media_type` serves. Existing
    objects are never overwritten; a clash moves on to the next millisecond.
    """

    root: Path
    public_base_url: str = "http://localhost:8000"
    max_bytes: int = DEFAULT_MAX_BYTES
    clock: Callable[[], float] = time.time

    def save(
        self,
        user_id: int,
        account_id: int,
        filename: str | None,
        content: bytes,
        content_type: str | None = None,
    ) -> StoredPhoto:
        if not content:
            raise ValueError("Photo is empty.")
        if len(content) > self.max_bytes:
            raise PhotoTooLarge(
                f"Photo too large. Max {self.max_bytes // (1024 * 1024)}MB."
            )
        extension = photo_extension(filename, content_type)

        millis = int(self.clock() * 1000)
        for attempt in range(SAVE_ATTEMPTS):
            object_path = f"{user_id}/{account_id}/{millis + attempt}.{extension}"
            target = self.resolve(object_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                # "x" mode refuses to replace an existing object
                with target.open("xb") as handle:
                    handle.write(content)
            except FileExistsError:
                if attempt == SAVE_ATTEMPTS - 1:
                    raise
                continue
            break

        logger.info("Stored photo %s (%d bytes)", object_path, len(content))
        return StoredPhoto(
            path=object_path,
            url=self.public_url(object_path),
            content_type=IMAGE_TYPES[extension],
            size=len(content),
        )

    def public_url(self, object_path: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/photos/{object_path.lstrip('/')}"

    def resolve(self, object_path: str) -> Path:
        root = Path(self.root).resolve()
        candidate = (root / object_path).resolve()
        if candidate == root or root not in candidate.parents:
            raise ValueError("Invalid photo path.")
        return candidate

    def media_type(self, object_path: str) -> str:
        extension = object_path.rsplit(".", 1)[-1].lower() if "." in object_path else ""
        return IMAGE_TYPES.get(extension, FALLBACK_MEDIA_TYPE)


def photo_extension(filename: str | None, content_type: str | None = None) -> str:
    """Pick an image extension from the file name, else the declared type."""
    declared = (content_type or "").split(";", 1)[0].strip().lower()
    if declared and not declared.startswith("image/"):
        raise ValueError("Photo must be an image.")

    extension = ""
    if filename and "." in filename:
        extension = filename.rsplit(".", 1)[1].strip().lower()
    if extension in IMAGE_TYPES:
        return extension
    if declared in EXTENSIONS_BY_TYPE:
        return EXTENSIONS_BY_TYPE[declared]
    if not extension and not declared:
        return DEFAULT_EXTENSION
    raise ValueError("Photo must be an image.")
