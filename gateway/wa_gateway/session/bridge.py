"""Session client backed by a Node.js WhatsApp bridge.

Spawns ``node <bridge_script>``; the script runs the multi-device protocol
library and talks to us in JSON lines on stdin/stdout. Commands carry an
``id`` and are answered with a ``result`` event bearing the same id.

Commands (stdin)::

    {"type": "connect",  "id": "1", "data": {"credentials": {...}}}
    {"type": "send",     "id": "2", "data": {"to": "...", "payload": {...}}}
    {"type": "download", "id": "3", "data": {"message": {...}}}
    {"type": "logout",   "id": "4", "data": {}}
    {"type": "shutdown"}

Events (stdout)::

    {"type": "connection", "data": {"qr": "...", "connection": "open|close",
                                    "reason": {"statusCode": 401, "message": "..."}}}
    {"type": "creds",      "data": {"name": "creds", "value": {...}}}
    {"type": "messages",   "data": {"kind": "notify", "messages": [...]}}
    {"type": "result",     "id": "2", "data": {...}, "error": "..."}
    {"type": "log",        "data": {"message": "..."}}

The bundled ``whatsapp_bridge.js`` (next to this module) is the default
script; it needs ``npm install`` run once in this directory to fetch its
Baileys dependency.

Config keys:
    bridge_script: Path to the bridge entry point (default: bundled script)
    node_path: Path to node binary (default: found via ``shutil.which``)
    request_timeout: Seconds to wait for a command result (default 60)
    shutdown_grace: Seconds to wait for a clean exit before killing (default 10)
    max_line_bytes: Largest JSON line accepted from the bridge (default 64 MiB)
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import json
import logging
import shutil
from pathlib import Path
from typing import Any

from ..errors import GatewayError
from ..models import DisconnectReason, OutboundPayload
from .base import (
    CONNECTION_CLOSE,
    ConnectionUpdate,
    CredentialsUpdate,
    MessagesUpsert,
    SessionClient,
)

logger = logging.getLogger(__name__)

_DEFAULT_SCRIPT = Path(__file__).parent / "whatsapp_bridge.js"
_BRIDGE_DEPENDENCY = Path("node_modules") / "@whiskeysockets" / "baileys"

# Attachments travel base64-encoded inside one line.
DEFAULT_MAX_LINE_BYTES = 64 * 1024 * 1024


class BridgeUnavailable(GatewayError):
    """node or the bridge script is missing."""


class BridgeError(GatewayError):
    """The bridge reported a failure or went away mid-request."""


class BridgeSessionClient(SessionClient):
    """Session client that drives a Node.js bridge subprocess."""

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__()
        config = config or {}
        self._script = Path(config.get("bridge_script", _DEFAULT_SCRIPT)).expanduser()
        self._node_path: str | None = config.get("node_path") or shutil.which("node")
        self._request_timeout = float(config.get("request_timeout", 60))
        self._shutdown_grace = float(config.get("shutdown_grace", 10))
        self._max_line_bytes = int(config.get("max_line_bytes", DEFAULT_MAX_LINE_BYTES))

        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self._running = False

    # ---- lifecycle ----

    async def connect(self, credentials: dict[str, Any]) -> None:
        if not self._node_path:
            raise BridgeUnavailable(
                "node not found; install Node.js and ensure 'node' is on PATH"
            )
        if not self._script.exists():
            raise BridgeUnavailable(f"bridge script not found at {self._script}")
        pkg_dir = self._script.parent
        if (pkg_dir / "package.json").exists() and not (pkg_dir / _BRIDGE_DEPENDENCY).exists():
            raise BridgeUnavailable(
                f"bridge dependencies missing; run 'npm install' in {pkg_dir}"
            )

        self._process = await asyncio.create_subprocess_exec(
            self._node_path,
            str(self._script),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(pkg_dir),
            limit=self._max_line_bytes,
        )
        self._running = True
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        logger.info("Bridge started (pid=%s, script=%s)", self._process.pid, self._script)

        await self._request("connect", {"credentials": credentials})

    async def terminate(self) -> None:
        self._running = False
        process = self._process
        tasks = [t for t in (self._reader_task, self._stderr_task) if t]

        try:
            if process and process.stdin and process.returncode is None:
                try:
                    self._write_cmd({"type": "shutdown"})
                    await asyncio.wait_for(process.wait(), timeout=self._shutdown_grace)
                except (asyncio.TimeoutError, ProcessLookupError, ConnectionResetError):
                    pass
                except Exception:
                    logger.exception("Error during bridge shutdown")
        finally:
            # Also reached on cancellation.
            if process and process.returncode is None:
                logger.warning("Bridge did not exit on shutdown; killing pid %s", process.pid)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            for task in tasks:
                task.cancel()
            self._fail_pending(BridgeError("bridge terminated"))
            self._process = None
            self._reader_task = None
            self._stderr_task = None
            self._close_events()

        if process and process.returncode is None:
            await process.wait()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ---- commands ----

    async def send(self, target: str, payload: OutboundPayload) -> str:
        data = await self._request("send", {"to": target, "payload": payload.to_wire()})
        return str(data.get("id", ""))

    async def download_media(self, message: dict[str, Any]) -> bytes:
        data = await self._request("download", {"message": message})
        return base64.b64decode(data.get("data", ""))

    async def logout(self) -> None:
        await self._request("logout", {})

    # ---- bridge communication ----

    def _write_cmd(self, cmd: dict[str, Any]) -> None:
        """Send a JSON-line command to the bridge's stdin."""
        if self._process and self._process.stdin:
            line = json.dumps(cmd) + "\n"
            self._process.stdin.write(line.encode())

    async def _request(self, cmd_type: str, data: dict[str, Any]) -> dict[str, Any]:
        if not self._running or not self._process or not self._process.stdin:
            raise BridgeError("bridge is not running")

        request_id = str(next(self._ids))
        future: asyncio.Future[dict[str, Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request_id] = future
        try:
            self._write_cmd({"type": cmd_type, "id": request_id, "data": data})
            await self._process.stdin.drain()
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError:
            raise BridgeError(
                f"bridge did not answer '{cmd_type}' within {self._request_timeout}s"
            ) from None
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise BridgeError(f"bridge pipe closed: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    async def _read_stdout(self) -> None:
        """Read JSON lines from bridge stdout and dispatch."""
        assert self._process and self._process.stdout
        while self._running:
            try:
                raw = await self._process.stdout.readline()
                if not raw:
                    break
                line = raw.decode().strip()
                if not line:
                    continue
                self._handle_bridge_event(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Invalid JSON from bridge: %s", raw[:200])
            except ValueError:
                logger.error(
                    "Bridge line exceeded %d bytes and was dropped", self._max_line_bytes
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error reading from bridge")

        if self._running:
            logger.warning("Bridge process exited unexpectedly")
            self._running = False
            self._fail_pending(BridgeError("bridge process exited"))
            self._emit(
                ConnectionUpdate(
                    connection=CONNECTION_CLOSE,
                    reason=DisconnectReason(message="bridge process exited"),
                )
            )
            self._close_events()

    async def _read_stderr(self) -> None:
        """Forward bridge stderr to Python logging."""
        assert self._process and self._process.stderr
        while True:
            raw = await self._process.stderr.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").strip()
            if line:
                logger.info("[bridge] %s", line)

    def _handle_bridge_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type", "")
        data = event.get("data") or {}

        if event_type == "result":
            future = self._pending.get(str(event.get("id")))
            if future is None or future.done():
                return
            if event.get("error"):
                future.set_exception(BridgeError(str(event["error"])))
            else:
                future.set_result(data)

        elif event_type == "connection":
            reason = data.get("reason")
            self._emit(
                ConnectionUpdate(
                    challenge=data.get("qr"),
                    connection=data.get("connection"),
                    reason=(
                        DisconnectReason(
                            status_code=reason.get("statusCode"),
                            message=str(reason.get("message", "")),
                        )
                        if isinstance(reason, dict)
                        else None
                    ),
                )
            )

        elif event_type == "creds":
            self._emit(CredentialsUpdate(name=data.get("name", "creds"), value=data.get("value")))

        elif event_type == "messages":
            self._emit(
                MessagesUpsert(
                    messages=list(data.get("messages", [])),
                    kind=data.get("kind", "notify"),
                )
            )

        elif event_type == "log":
            logger.info("[bridge] %s", data.get("message", ""))

        elif event_type == "error":
            logger.error("Bridge error: %s", data.get("message", ""))

        else:
            logger.debug("Ignoring bridge event '%s'", event_type)
