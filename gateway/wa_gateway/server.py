"""HTTP request surface over the session manager, using aiohttp.

Routes cover status and QR polling, message history, media download,
typed sends, logout and reconnect. Gateway errors raised by
handlers are mapped to JSON error responses by a middleware.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from typing import Any

from aiohttp import hdrs, web

from .errors import (
    GatewayError,
    InvalidTarget,
    NotConnected,
    NotFound,
    SendFailed,
)
from .lifecycle import SessionManager
from .models import OutboundPayload, PayloadKind

logger = logging.getLogger(__name__)

_MAX_BODY = 50 * 1024 * 1024

_ERROR_STATUS: tuple[tuple[type[GatewayError], int], ...] = (
    (NotConnected, 503),
    (InvalidTarget, 400),
    (NotFound, 404),
    (SendFailed, 502),
)

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def _error_status(exc: GatewayError) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Translate gateway errors into ``{"ok": false, "error": ...}``."""
    try:
        return await handler(request)
    except GatewayError as exc:
        status = _error_status(exc)
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.path, exc)
        return web.json_response({"ok": False, "error": str(exc)}, status=status)


@web.middleware
async def cors_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    if request.method == hdrs.METH_OPTIONS:
        response: web.StreamResponse = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            exc.headers.update(_CORS_HEADERS)
            raise
    response.headers.update(_CORS_HEADERS)
    return response


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"ok": False, "error": message}),
        content_type="application/json",
    )


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise _bad_request("invalid JSON") from None
    if not isinstance(data, dict):
        raise _bad_request("JSON body must be an object")
    return data


def _decode(data: dict[str, Any], field: str) -> bytes:
    raw = data.get(field)
    if not raw or not isinstance(raw, str):
        raise _bad_request(f"missing base64 field '{field}'")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise _bad_request(f"field '{field}' is not valid base64") from None


class GatewayServer:
    """aiohttp application exposing the session manager.

    Config keys:
        host: Bind address (default ``"0.0.0.0"``)
        port: Bind port (default ``3000``)
    """

    def __init__(self, manager: SessionManager, config: dict[str, Any] | None = None) -> None:
        config = config or {}
        self._manager = manager
        self._host: str = config.get("host", "0.0.0.0")
        self._port: int = int(config.get("port", 3000))
        self._runner: web.AppRunner | None = None
        self._background: set[asyncio.Task[None]] = set()
        self.app = self.build_app()

    def build_app(self) -> web.Application:
        app = web.Application(
            client_max_size=_MAX_BODY,
            middlewares=[cors_middleware, error_middleware],
        )
        app.router.add_get("/", self._handle_status)
        app.router.add_get("/status", self._handle_status)
        app.router.add_get("/qr", self._handle_qr)
        app.router.add_get("/messages", self._handle_messages)
        app.router.add_get("/media/{media_id}", self._handle_media)
        app.router.add_post("/send", self._handle_send_text)
        app.router.add_post("/send-audio", self._handle_send_audio)
        app.router.add_post("/send-ptt", self._handle_send_ptt)
        app.router.add_post("/send-image", self._handle_send_image)
        app.router.add_post("/send-document", self._handle_send_document)
        app.router.add_post("/logout", self._handle_logout)
        app.router.add_post("/reconnect", self._handle_reconnect)
        return app

    # ---- lifecycle ----

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("HTTP surface listening on %s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        for task in list(self._background):
            task.cancel()

    def _fire_and_forget(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ---- read handlers ----

    async def _handle_status(self, request: web.Request) -> web.Response:
        status = self._manager.get_status()
        return web.json_response(
            {
                "ok": True,
                "connected": self._manager.is_connected,
                "status": status.to_dict(),
            }
        )

    async def _handle_qr(self, request: web.Request) -> web.Response:
        challenge = self._manager.get_pairing_challenge()
        return web.json_response({"qr": challenge.code if challenge else None})

    async def _handle_messages(self, request: web.Request) -> web.Response:
        raw_limit = request.query.get("limit")
        limit = None
        if raw_limit:
            try:
                limit = int(raw_limit)
            except ValueError:
                raise _bad_request("limit must be an integer") from None
        records = self._manager.recent_messages(limit)
        return web.json_response({"messages": [r.to_dict() for r in records]})

    async def _handle_media(self, request: web.Request) -> web.Response:
        data, content_type = self._manager.resolve_media(request.match_info["media_id"])
        return web.Response(body=data, headers={hdrs.CONTENT_TYPE: content_type})

    # ---- send handlers ----

    async def _read_send_body(self, request: web.Request) -> dict[str, Any]:
        # Connection state is reported before any body validation.
        self._manager.ensure_connected()
        return await _read_json(request)

    async def _send(self, data: dict[str, Any], payload: OutboundPayload) -> web.Response:
        remote_id = await self._manager.send(str(data.get("to") or ""), payload)
        return web.json_response({"ok": True, "success": True, "id": remote_id})

    async def _handle_send_text(self, request: web.Request) -> web.Response:
        data = await self._read_send_body(request)
        text = data.get("text") or data.get("message")
        if not text:
            raise _bad_request("missing 'text'")
        return await self._send(data, OutboundPayload(kind=PayloadKind.TEXT, text=str(text)))

    async def _handle_send_audio(self, request: web.Request, ptt: bool | None = None) -> web.Response:
        data = await self._read_send_body(request)
        payload = OutboundPayload(
            kind=PayloadKind.AUDIO,
            data=_decode(data, "audio"),
            mimetype=data.get("mimetype") or "audio/ogg; codecs=opus",
            ptt=ptt if ptt is not None else data.get("ptt") is not False,
        )
        return await self._send(data, payload)

    async def _handle_send_ptt(self, request: web.Request) -> web.Response:
        return await self._handle_send_audio(request, ptt=True)

    async def _handle_send_image(self, request: web.Request) -> web.Response:
        data = await self._read_send_body(request)
        payload = OutboundPayload(
            kind=PayloadKind.IMAGE,
            data=_decode(data, "image"),
            mimetype=data.get("mimetype") or "image/jpeg",
            caption=data.get("caption") or "",
        )
        return await self._send(data, payload)

    async def _handle_send_document(self, request: web.Request) -> web.Response:
        data = await self._read_send_body(request)
        payload = OutboundPayload(
            kind=PayloadKind.DOCUMENT,
            data=_decode(data, "document"),
            mimetype=data.get("mimetype") or "application/octet-stream",
            filename=data.get("filename") or "document",
        )
        return await self._send(data, payload)

    # ---- session control ----

    async def _handle_logout(self, request: web.Request) -> web.Response:
        self._fire_and_forget(self._manager.logout())
        return web.json_response({"ok": True}, status=202)

    async def _handle_reconnect(self, request: web.Request) -> web.Response:
        self._fire_and_forget(self._manager.force_reconnect())
        return web.json_response({"ok": True}, status=202)
