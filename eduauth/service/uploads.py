from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from eduauth.logging import get_logger
from eduauth.service.errors import ValidationError

logger = get_logger(__name__)

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


@dataclass(frozen=True)
class StoredImage:
    public_id: str
    url: str


class ImageStore:
    """Profile images stored under ``{root}/uploads/profile_images``."""

    def __init__(self, fs_root: str, *, max_bytes: int, public_base: str = "/uploads/profile_images") -> None:
        self.base = Path(fs_root) / "uploads" / "profile_images"
        self.max_bytes = max(1, max_bytes)
        self.public_base = public_base.rstrip("/")

    async def save(self, upload) -> StoredImage:
        """Persist a FastAPI ``UploadFile``; rejects non-images and oversize files."""
        content_type = (upload.content_type or "").lower()
        suffix = ALLOWED_IMAGE_TYPES.get(content_type)
        if suffix is None:
            raise ValidationError(
                "Profile image must be a JPEG, PNG, WEBP or GIF file",
                error_code="INVALID_FILE_TYPE",
            )
        contents = await upload.read(self.max_bytes + 1)
        if len(contents) > self.max_bytes:
            raise ValidationError("Profile image is too large", error_code="FILE_TOO_LARGE")
        public_id = f"{uuid.uuid4().hex}{suffix}"
        dest = safe_join(self.base, public_id)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(contents)
        logger.info("profile_image_stored", public_id=public_id, size=len(contents))
        return StoredImage(public_id=public_id, url=f"{self.public_base}/{public_id}")

    def path_for(self, public_id: str) -> Path:
        if not re.fullmatch(r"[0-9a-f]{32}\.[a-z]{3,4}", public_id or ""):
            raise PathTraversalError("invalid image id")
        return safe_join(self.base, public_id)

    async def delete(self, public_id: Optional[str]) -> bool:
        """Remove a stored image; unknown ids and IO errors are logged, not raised."""
        if not public_id:
            return False
        try:
            path = self.path_for(public_id)
            path.unlink()
        except FileNotFoundError:
            return False
        except (PathTraversalError, OSError) as exc:
            logger.warning("profile_image_delete_failed", public_id=public_id, error=str(exc))
            return False
        logger.info("profile_image_deleted", public_id=public_id)
        return True
