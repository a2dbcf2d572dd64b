"""CLI entry point for the gateway daemon."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import timedelta
from pathlib import Path

from .credentials import CredentialStore
from .daemon import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_DATA_DIR,
    GatewayDaemon,
    apply_env_overrides,
    load_config,
)
from .media import MediaStore

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = """\
# wa-gateway configuration
# Created automatically on first run.

data_dir: ~/.wa-gateway

http:
  host: 0.0.0.0
  port: 3000

session:
  reconnect_delay: 3
  restart_delay: 1
  connect_failure_delay: 10
  ignore_groups: true
  bridge:
    # Node.js bridge that speaks the WhatsApp multi-device protocol. Defaults
    # to the whatsapp_bridge.js shipped in wa_gateway/session (run
    # `npm install` there once).
    # bridge_script: /path/to/whatsapp_bridge.js
    request_timeout: 60

messages:
  capacity: 200

media:
  retention_days: 7
"""


def _ensure_config(config_path: str) -> str:
    """Create a default config file if none exists."""
    path = Path(config_path).expanduser()
    if path.exists():
        return str(path)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_DEFAULT_CONFIG)
    logger.info("Created default config at %s", path)
    return str(path)


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(description="WhatsApp session gateway")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Config file path",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level",
    )

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("start", help="Run the gateway (default)")
    sub.add_parser("sweep", help="Delete media older than the retention window")
    sub.add_parser("reset", help="Forget stored credentials (forces a new QR pairing)")
    return parser


def _data_dir(config: dict) -> Path:
    return Path(config.get("data_dir", DEFAULT_DATA_DIR)).expanduser()


# ---- subcommand handlers ----


def _cmd_start(args: argparse.Namespace) -> None:
    config_path = _ensure_config(args.config)
    daemon = GatewayDaemon(config_path=config_path)

    loop = asyncio.new_event_loop()
    stop_requested = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    async def _run() -> None:
        await daemon.start()
        await stop_requested.wait()

    try:
        loop.run_until_complete(_run())
    finally:
        loop.run_until_complete(daemon.stop())
        loop.close()


def _cmd_sweep(args: argparse.Namespace) -> None:
    config = apply_env_overrides(load_config(args.config))
    media_cfg = config.get("media", {})
    store = MediaStore(
        _data_dir(config) / "media",
        retention=timedelta(days=float(media_cfg.get("retention_days", 7))),
    )
    removed = store.sweep()
    print(f"Removed {removed} expired media file(s).")


def _cmd_reset(args: argparse.Namespace) -> None:
    config = apply_env_overrides(load_config(args.config))
    store = CredentialStore(_data_dir(config) / "credentials")
    if store.is_empty():
        print("No stored credentials.")
        return
    store.clear()
    print("Credentials cleared; the next start will show a new QR code.")


# ---- main ----


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    command = args.command or "start"

    if command == "start":
        _cmd_start(args)
    elif command == "sweep":
        _cmd_sweep(args)
    elif command == "reset":
        _cmd_reset(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
