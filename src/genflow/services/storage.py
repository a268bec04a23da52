"""Asset storage collaborator.

Persists downloaded generation outputs and returns the local reference stored
on completed jobs.
"""

import asyncio
import mimetypes
from pathlib import Path
from typing import Protocol
from uuid import uuid4

import structlog

from genflow.core.timezone import utcnow

logger = structlog.get_logger(__name__)

# mimetypes picks odd extensions for some common types
PREFERRED_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "audio/mpeg": ".mp3",
    "video/mp4": ".mp4",
}


class AssetStorage(Protocol):
    async def store(self, data: bytes, content_type: str | None) -> str:
        """Persist data and return its local reference."""


def extension_for(content_type: str | None) -> str:
    if not content_type:
        return ".bin"
    base_type = content_type.split(";", 1)[0].strip().lower()
    return PREFERRED_EXTENSIONS.get(base_type) or mimetypes.guess_extension(base_type) or ".bin"


class LocalAssetStorage:
    """Store assets on the local filesystem under root_dir.

    References have the form {public_prefix}/{yyyy}/{mm}/{uuid}{ext}; the
    directory is expected to be served by the excluded static layer.
    """

    def __init__(self, root_dir: str | Path, public_prefix: str = "/static/generated"):
        self.root_dir = Path(root_dir)
        self.public_prefix = public_prefix.rstrip("/")

    async def store(self, data: bytes, content_type: str | None) -> str:
        now = utcnow()
        relative = Path(f"{now:%Y}") / f"{now:%m}" / f"{uuid4().hex}{extension_for(content_type)}"
        target = self.root_dir / relative

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug("storage.asset_stored", path=str(target), size=len(data))
        return f"{self.public_prefix}/{relative.as_posix()}"

    def resolve(self, reference: str) -> Path:
        """Map a reference produced by store() back to its file path."""
        if not reference.startswith(self.public_prefix + "/"):
            raise ValueError(f"Reference {reference!r} is not managed by this storage")
        return self.root_dir / reference[len(self.public_prefix) + 1 :]
