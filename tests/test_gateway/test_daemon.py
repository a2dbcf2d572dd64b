"""Tests for gateway daemon and CLI helpers."""

from __future__ import annotations

import argparse
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from wa_gateway.cli import _build_parser, _cmd_reset, _cmd_sweep, _ensure_config
from wa_gateway.credentials import CredentialStore
from wa_gateway.daemon import GatewayDaemon, apply_env_overrides, load_config
from wa_gateway.models import SessionState

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_daemon(tmp_path: Path, factory, **config_overrides) -> GatewayDaemon:
    config = {
        "data_dir": str(tmp_path / "data"),
        "http": {"enabled": False},
        "session": {"reconnect_delay": 0.05, "terminate_timeout": 1},
        "messages": {"capacity": 5},
        **config_overrides,
    }
    return GatewayDaemon(config=config, client_factory=factory)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def test_load_config_missing_file(tmp_path: Path):
    assert load_config(str(tmp_path / "absent.yaml")) == {}


def test_load_config_yaml(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("http:\n  port: 8080\nmedia:\n  retention_days: 2\n")
    config = load_config(str(path))
    assert config["http"]["port"] == 8080
    assert config["media"]["retention_days"] == 2


def test_env_overrides():
    config = apply_env_overrides(
        {"http": {"host": "127.0.0.1"}},
        environ={"PORT": "4000", "WA_GATEWAY_DATA_DIR": "/srv/wa"},
    )
    assert config["http"] == {"host": "127.0.0.1", "port": 4000}
    assert config["data_dir"] == "/srv/wa"

    assert apply_env_overrides({}, environ={}) == {}


def test_ensure_config_writes_default_once(tmp_path: Path):
    path = tmp_path / "nested" / "config.yaml"
    _ensure_config(str(path))
    defaults = load_config(str(path))
    assert defaults["http"]["port"] == 3000
    assert defaults["session"]["ignore_groups"] is True

    path.write_text("http:\n  port: 1\n")
    _ensure_config(str(path))
    assert load_config(str(path))["http"]["port"] == 1


def test_cli_parser_defaults():
    args = _build_parser().parse_args([])
    assert args.command is None
    assert args.log_level == "INFO"
    assert _build_parser().parse_args(["reset"]).command == "reset"


def _write_config(tmp_path: Path) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(f"data_dir: {tmp_path / 'data'}\n")
    return str(path)


def test_cli_reset_clears_credentials(tmp_path: Path, capsys, monkeypatch):
    monkeypatch.delenv("WA_GATEWAY_DATA_DIR", raising=False)
    args = argparse.Namespace(config=_write_config(tmp_path))
    _cmd_reset(args)
    assert "No stored credentials" in capsys.readouterr().out

    store = CredentialStore(tmp_path / "data" / "credentials")
    store.save("creds", {"me": "x"})
    _cmd_reset(args)
    assert "Credentials cleared" in capsys.readouterr().out
    assert store.is_empty()


def test_cli_sweep_reports_count(tmp_path: Path, capsys, monkeypatch):
    monkeypatch.delenv("WA_GATEWAY_DATA_DIR", raising=False)
    media_dir = tmp_path / "data" / "media"
    media_dir.mkdir(parents=True)
    stale = media_dir / "stale-1.ogg"
    stale.write_bytes(b"old")
    old = time.time() - 30 * 86400
    os.utime(stale, (old, old))

    _cmd_sweep(argparse.Namespace(config=_write_config(tmp_path)))
    assert "Removed 1 expired media" in capsys.readouterr().out
    assert not stale.exists()


# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------


def test_daemon_creates_components(tmp_path: Path, factory):
    d = _make_daemon(tmp_path, factory)
    assert d.server is None
    assert d.messages.capacity == 5
    assert d.credentials.directory == tmp_path / "data" / "credentials"
    assert d.media.directory == tmp_path / "data" / "media"
    assert not d.is_running


def test_daemon_with_http_builds_server(tmp_path: Path, factory):
    d = _make_daemon(tmp_path, factory, http={"port": 0})
    assert d.server is not None


@pytest.mark.asyncio
async def test_daemon_start_and_stop(tmp_path: Path, factory):
    d = _make_daemon(tmp_path, factory)

    await d.start()
    assert d.is_running
    assert d.sweeper.is_running
    assert d.manager.get_status().state == SessionState.CONNECTING
    assert factory.current.connected_with == {}

    await d.stop()
    assert not d.is_running
    assert not d.sweeper.is_running
    assert factory.current.terminated
    assert d.manager.get_status().state == SessionState.DISCONNECTED

    await d.stop()  # idempotent


@pytest.mark.asyncio
async def test_daemon_start_sweeps_expired_media(tmp_path: Path, factory):
    media_dir = tmp_path / "data" / "media"
    media_dir.mkdir(parents=True)
    stale = media_dir / "stale-1.jpg"
    stale.write_bytes(b"old")
    old = time.time() - 30 * 86400
    os.utime(stale, (old, old))

    d = _make_daemon(tmp_path, factory)
    await d.start()
    try:
        assert not stale.exists()
    finally:
        await d.stop()


def test_default_factory_builds_bridge_client(tmp_path: Path):
    config = {
        "data_dir": str(tmp_path / "data"),
        "http": {"enabled": False},
        "session": {"bridge": {"node_path": "/opt/node/bin/node"}},
    }
    with patch("wa_gateway.daemon.BridgeSessionClient") as bridge_cls:
        d = GatewayDaemon(config=config)
        client = d.manager._client_factory()

    bridge_cls.assert_called_once_with({"node_path": "/opt/node/bin/node"})
    assert client is bridge_cls.return_value
