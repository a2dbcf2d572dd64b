"""On-disk store for downloaded message attachments.

Files live in a single directory as ``<id>.<ext>``. The in-memory index is
rebuilt from that directory on startup, so attachments survive a restart
until the retention sweep removes them.
"""

from __future__ import annotations

import logging
import os
import secrets
import tempfile
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .errors import EmptyPayload, NotFound
from .models import MediaRecord

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=7)
FALLBACK_EXTENSION = "bin"
FALLBACK_CONTENT_TYPE = "application/octet-stream"

EXTENSIONS: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/wav": "wav",
    "application/pdf": "pdf",
    "application/zip": "zip",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "text/plain": "txt",
    "text/csv": "csv",
    FALLBACK_CONTENT_TYPE: FALLBACK_EXTENSION,
}

_CONTENT_TYPES: dict[str, str] = {ext: ct for ct, ext in EXTENSIONS.items()}

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_media_id() -> str:
    """Millisecond timestamp prefix plus a random suffix."""
    return f"{_base36(time.time_ns() // 1_000_000)}-{secrets.token_hex(4)}"


def extension_for(content_type: str | None) -> str:
    """Map a MIME type (parameters ignored) to a file extension."""
    if not content_type:
        return FALLBACK_EXTENSION
    base = content_type.split(";", 1)[0].strip().lower()
    return EXTENSIONS.get(base, FALLBACK_EXTENSION)


class MediaStore:
    """Persist, resolve and expire attachment files."""

    def __init__(
        self,
        directory: str | Path,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        self._dir = Path(directory).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._retention = retention
        self._records: dict[str, MediaRecord] = {}
        self._load_index()

    @property
    def directory(self) -> Path:
        return self._dir

    def _load_index(self) -> None:
        for path in self._dir.iterdir():
            if not path.is_file() or path.name.startswith("."):
                continue
            try:
                stat = path.stat()
            except OSError:
                continue
            ext = path.suffix.lstrip(".")
            self._records[path.stem] = MediaRecord(
                id=path.stem,
                path=str(path),
                content_type=_CONTENT_TYPES.get(ext, FALLBACK_CONTENT_TYPE),
                size_bytes=stat.st_size,
                created_at=datetime.fromtimestamp(stat.st_mtime, UTC),
            )
        if self._records:
            logger.info(
                "Indexed %d stored media files in %s", len(self._records), self._dir
            )

    def persist(
        self, data: bytes, content_type: str | None, caption: str = ""
    ) -> MediaRecord:
        """Write *data* to the media directory and register it."""
        if not data:
            raise EmptyPayload()

        media_id = generate_media_id()
        path = self._dir / f"{media_id}.{extension_for(content_type)}"

        fd, tmp = tempfile.mkstemp(dir=str(self._dir), prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

        record = MediaRecord(
            id=media_id,
            path=str(path),
            content_type=content_type or FALLBACK_CONTENT_TYPE,
            size_bytes=len(data),
        )
        self._records[media_id] = record
        logger.debug(
            "Stored media %s (%s, %d bytes)%s",
            media_id,
            record.content_type,
            record.size_bytes,
            f" caption={caption[:40]!r}" if caption else "",
        )
        return record

    def resolve(self, media_id: str) -> MediaRecord:
        record = self._records.get(media_id)
        if record is None or not Path(record.path).exists():
            raise NotFound(media_id)
        return record

    def read(self, media_id: str) -> tuple[bytes, str]:
        """Return the stored bytes and content type."""
        record = self.resolve(media_id)
        try:
            return Path(record.path).read_bytes(), record.content_type
        except FileNotFoundError:
            self._records.pop(media_id, None)
            raise NotFound(media_id) from None

    def sweep(self, now: datetime | None = None) -> int:
        """Delete media older than the retention window.

        Returns the number of files removed. A file that cannot be deleted
        is logged and kept in the index for the next sweep.
        """
        now = now or datetime.now(UTC)
        cutoff = now - self._retention
        removed = 0
        for media_id, record in list(self._records.items()):
            if record.created_at >= cutoff:
                continue
            try:
                Path(record.path).unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not delete expired media %s", record.path)
                continue
            del self._records[media_id]
            removed += 1
        if removed:
            logger.info("Media sweep removed %d expired files", removed)
        return removed

    def __len__(self) -> int:
        return len(self._records)
