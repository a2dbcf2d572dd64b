"""Persistent store for session credential material.

The session client owns the format of its credentials; the gateway only
keeps them as a directory of JSON files (one per key) so a restart resumes
the paired session without a new QR scan.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


def _file_name(name: str) -> str:
    """Map a credential key to a safe file name inside the store."""
    cleaned = _SAFE_NAME.sub("_", name).lstrip(".")
    if not cleaned:
        raise ValueError(f"Invalid credential name: {name!r}")
    return f"{cleaned}.json"


class CredentialStore:
    """Directory of JSON credential files with atomic write and clear."""

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory).expanduser()

    @property
    def directory(self) -> Path:
        return self._dir

    def ensure_dir(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)

    def load(self) -> dict[str, Any]:
        """Return every stored credential keyed by file stem."""
        creds: dict[str, Any] = {}
        if not self._dir.is_dir():
            return creds
        for path in sorted(self._dir.glob("*.json")):
            try:
                creds[path.stem] = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError):
                logger.warning("Skipping unreadable credential file %s", path)
        return creds

    def save(self, name: str, value: Any) -> None:
        """Write one credential file atomically (temp file + rename)."""
        self.ensure_dir()
        target = self._dir / _file_name(name)
        payload = json.dumps(value)

        fd, tmp = tempfile.mkstemp(dir=str(self._dir), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            os.replace(tmp, target)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def clear(self) -> None:
        """Delete the whole bundle.

        The directory is first renamed aside so readers never observe a
        partially deleted bundle.
        """
        if not self._dir.exists():
            return
        graveyard = self._dir.with_name(f".{self._dir.name}.{uuid.uuid4().hex}.del")
        os.replace(self._dir, graveyard)
        shutil.rmtree(graveyard, ignore_errors=True)
        logger.info("Cleared session credentials in %s", self._dir)

    def is_empty(self) -> bool:
        if not self._dir.is_dir():
            return True
        return not any(self._dir.glob("*.json"))
