"""Main gateway daemon: wires the stores, the session manager and HTTP."""

from __future__ import annotations

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from .buffer import DEFAULT_CAPACITY, DEFAULT_LIMIT, MessageBuffer
from .credentials import CredentialStore
from .lifecycle import ClientFactory, SessionManager
from .media import MediaStore
from .scheduler import PeriodicTask
from .server import GatewayServer
from .session import BridgeSessionClient

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.wa-gateway/config.yaml"
DEFAULT_DATA_DIR = "~/.wa-gateway"


def load_config(config_path: str) -> dict[str, Any]:
    """Load YAML config, falling back to an empty dict if missing."""
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning("Config file not found: %s; using defaults", path)
        return {}
    return yaml.safe_load(path.read_text()) or {}


def apply_env_overrides(
    config: dict[str, Any], environ: dict[str, str] | None = None
) -> dict[str, Any]:
    """Apply ``PORT`` and ``WA_GATEWAY_DATA_DIR`` on top of the file config."""
    env = os.environ if environ is None else environ
    if env.get("PORT"):
        config.setdefault("http", {})["port"] = int(env["PORT"])
    if env.get("WA_GATEWAY_DATA_DIR"):
        config["data_dir"] = env["WA_GATEWAY_DATA_DIR"]
    return config


class GatewayDaemon:
    """Top-level gateway daemon that owns every component."""

    def __init__(
        self,
        config_path: str = DEFAULT_CONFIG_PATH,
        config: dict[str, Any] | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._config: dict[str, Any] = (
            config if config is not None else apply_env_overrides(load_config(config_path))
        )
        data_dir = Path(self._config.get("data_dir", DEFAULT_DATA_DIR)).expanduser()
        session_cfg: dict[str, Any] = self._config.get("session", {})
        messages_cfg: dict[str, Any] = self._config.get("messages", {})
        media_cfg: dict[str, Any] = self._config.get("media", {})

        self.credentials = CredentialStore(data_dir / "credentials")
        self.media = MediaStore(
            data_dir / "media",
            retention=timedelta(days=float(media_cfg.get("retention_days", 7))),
        )
        self.messages = MessageBuffer(
            capacity=int(messages_cfg.get("capacity", DEFAULT_CAPACITY)),
            default_limit=int(messages_cfg.get("default_limit", DEFAULT_LIMIT)),
        )

        bridge_cfg = session_cfg.get("bridge", {})
        self.manager = SessionManager(
            client_factory=client_factory or (lambda: BridgeSessionClient(bridge_cfg)),
            credentials=self.credentials,
            media=self.media,
            messages=self.messages,
            config=session_cfg,
        )
        self.sweeper = PeriodicTask(
            float(media_cfg.get("sweep_interval", 86400)),
            self._sweep_media,
            name="media-sweep",
        )

        http_cfg: dict[str, Any] = self._config.get("http", {})
        self.server: GatewayServer | None = (
            GatewayServer(self.manager, http_cfg)
            if http_cfg.get("enabled", True)
            else None
        )
        self._shutdown_timeout = float(self._config.get("shutdown_timeout", 5))
        self._running = False

    async def _sweep_media(self) -> None:
        self.media.sweep()

    # ---- lifecycle ----

    async def start(self) -> None:
        """Start all components."""
        logger.info("Starting GatewayDaemon")
        self._running = True
        self.media.sweep()

        if self.server is not None:
            await self.server.start()
        await self.sweeper.start()
        await self.manager.start()
        logger.info("GatewayDaemon started")

    async def stop(self) -> None:
        """Shut down, giving the session client a bounded chance to close."""
        if not self._running:
            return
        logger.info("Stopping GatewayDaemon")
        self._running = False

        if self.server is not None:
            try:
                await self.server.stop()
            except Exception:
                logger.exception("Error stopping HTTP surface")
        await self.sweeper.stop()
        await self.manager.stop(timeout=self._shutdown_timeout)
        logger.info("GatewayDaemon stopped")

    @property
    def is_running(self) -> bool:
        return self._running
