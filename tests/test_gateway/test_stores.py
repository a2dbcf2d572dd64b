"""Tests for the credential and media stores."""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from wa_gateway.credentials import CredentialStore
from wa_gateway.errors import EmptyPayload, NotFound
from wa_gateway.media import MediaStore, extension_for, generate_media_id

# ---------------------------------------------------------------------------
# CredentialStore
# ---------------------------------------------------------------------------


def test_credentials_roundtrip(tmp_path: Path):
    store = CredentialStore(tmp_path / "creds")
    assert store.load() == {}
    assert store.is_empty()

    store.save("creds", {"me": {"id": "5511"}})
    store.save("app-state-sync-key-AAA", {"k": "v"})

    reloaded = CredentialStore(tmp_path / "creds")
    assert reloaded.load() == {
        "creds": {"me": {"id": "5511"}},
        "app-state-sync-key-AAA": {"k": "v"},
    }
    assert not reloaded.is_empty()
    assert not list((tmp_path / "creds").glob("*.tmp"))


def test_credentials_names_are_sanitized(tmp_path: Path):
    store = CredentialStore(tmp_path / "creds")
    store.save("../escape/attempt", {"x": 1})

    assert list(tmp_path.glob("*.json")) == []
    assert len(list((tmp_path / "creds").glob("*.json"))) == 1


def test_credentials_clear_removes_directory(tmp_path: Path):
    store = CredentialStore(tmp_path / "creds")
    store.save("creds", {"me": "5511"})

    store.clear()

    assert not store.directory.exists()
    assert store.is_empty()
    assert list(tmp_path.iterdir()) == []
    store.clear()  # no-op when already gone


def test_credentials_skip_corrupt_file(tmp_path: Path):
    store = CredentialStore(tmp_path / "creds")
    store.save("good", {"ok": True})
    (tmp_path / "creds" / "bad.json").write_text("{not json")

    assert store.load() == {"good": {"ok": True}}


# ---------------------------------------------------------------------------
# MediaStore
# ---------------------------------------------------------------------------


def test_extension_table():
    assert extension_for("image/jpeg") == "jpg"
    assert extension_for("audio/ogg; codecs=opus") == "ogg"
    assert extension_for("application/x-unknown") == "bin"
    assert extension_for(None) == "bin"


def test_media_ids_are_unique():
    ids = {generate_media_id() for _ in range(200)}
    assert len(ids) == 200


def test_persist_and_resolve(tmp_path: Path):
    store = MediaStore(tmp_path / "media")
    record = store.persist(b"\x89PNGdata", "image/png", "a caption")

    assert record.size_bytes == 8
    assert record.path.endswith(f"{record.id}.png")
    assert store.resolve(record.id) == record
    assert store.read(record.id) == (b"\x89PNGdata", "image/png")


def test_persist_empty_payload_creates_nothing(tmp_path: Path):
    store = MediaStore(tmp_path / "media")

    with pytest.raises(EmptyPayload):
        store.persist(b"", "image/png")

    assert len(store) == 0
    assert list((tmp_path / "media").iterdir()) == []


def test_resolve_unknown_id(tmp_path: Path):
    store = MediaStore(tmp_path / "media")
    with pytest.raises(NotFound):
        store.resolve("nope")
    with pytest.raises(NotFound):
        store.read("nope")


def test_sweep_respects_retention(tmp_path: Path):
    store = MediaStore(tmp_path / "media", retention=timedelta(days=7))
    record = store.persist(b"data", "audio/ogg")
    now = record.created_at

    assert store.sweep(now=now + timedelta(days=6)) == 0
    assert store.resolve(record.id) == record
    assert Path(record.path).exists()

    assert store.sweep(now=now + timedelta(days=8)) == 1
    with pytest.raises(NotFound):
        store.resolve(record.id)
    assert not Path(record.path).exists()


def test_sweep_mixed_ages(tmp_path: Path):
    media_dir = tmp_path / "media"
    media_dir.mkdir()
    now = datetime.now(UTC)
    old = media_dir / "old-1.jpg"
    recent = media_dir / "recent-1.jpg"
    old.write_bytes(b"old")
    recent.write_bytes(b"new")
    for path, age in ((old, timedelta(days=8)), (recent, timedelta(days=6))):
        ts = (now - age).timestamp()
        os.utime(path, (ts, ts))

    store = MediaStore(media_dir, retention=timedelta(days=7))
    assert store.sweep(now=now) == 1
    assert not old.exists()
    assert recent.exists()


def test_sweep_survives_delete_failure(tmp_path: Path, monkeypatch):
    store = MediaStore(tmp_path / "media")
    first = store.persist(b"one", "image/jpeg")
    second = store.persist(b"two", "image/jpeg")

    original_unlink = Path.unlink

    def flaky_unlink(self, missing_ok=False):
        if self.name.startswith(first.id):
            raise PermissionError("locked")
        return original_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", flaky_unlink)

    removed = store.sweep(now=datetime.now(UTC) + timedelta(days=30))
    assert removed == 1
    assert store.resolve(first.id) == first
    with pytest.raises(NotFound):
        store.resolve(second.id)


def test_index_rebuilt_after_restart(tmp_path: Path):
    store = MediaStore(tmp_path / "media")
    record = store.persist(b"%PDF-1.4", "application/pdf")

    restarted = MediaStore(tmp_path / "media")
    data, content_type = restarted.read(record.id)
    assert data == b"%PDF-1.4"
    assert content_type == "application/pdf"
