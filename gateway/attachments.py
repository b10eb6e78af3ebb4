import asyncio
import base64
from pathlib import Path
from typing import Optional, Tuple

MIME_BY_EXTENSION = {
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".pdf": "application/pdf",
}
DEFAULT_MIME = "image/jpeg"
UPLOADS_PREFIX = "/uploads/"


def mime_for(reference: str) -> str:
    suffix = Path(reference.split("?", 1)[0]).suffix.lower()
    return MIME_BY_EXTENSION.get(suffix, DEFAULT_MIME)


class AttachmentNotFound(Exception):
    pass


class AttachmentStore:
    """Read-only access to uploaded attachment bytes, keyed by `/uploads/<name>` references."""

    def __init__(self, upload_dir: str | Path):
        self.upload_dir = Path(upload_dir).resolve()

    def resolve(self, reference: str) -> Path:
        name = reference
        if name.startswith(UPLOADS_PREFIX):
            name = name[len(UPLOADS_PREFIX):]
        name = name.lstrip("/")
        path = (self.upload_dir / name).resolve()
        if self.upload_dir not in path.parents:
            raise AttachmentNotFound(f"Attachment outside upload dir: {reference}")
        if not path.is_file():
            raise AttachmentNotFound(f"Attachment not found: {reference}")
        return path

    async def read_base64(self, reference: str) -> Tuple[str, str]:
        """Return `(mime_type, base64_data)` for an attachment reference."""
        path = self.resolve(reference)
        data = await asyncio.to_thread(path.read_bytes)
        return mime_for(path.name), base64.b64encode(data).decode("ascii")

    async def try_read_base64(self, reference: Optional[str]) -> Optional[Tuple[str, str]]:
        if not reference:
            return None
        try:
            return await self.read_base64(reference)
        except (AttachmentNotFound, OSError):
            return None
