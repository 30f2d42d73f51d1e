"""
WebSocket bridge transport.

The wire protocol (noise handshake, signal encryption, multi-device sync)
runs in a separate bridge process. This transport talks to it over a local
WebSocket using small JSON frames:

    Client -> Bridge (on connect):
        {"type": "connect", "creds": {...}, "keys": {...},
         "browser": ["Ubuntu", "Chrome", "22.04.4"], "connectTimeoutMs": 30000, ...}

    Bridge -> Client (events):
        {"type": "creds.update", "creds": {...}, "keys": {...}}
        {"type": "qr", "qr": "2@..."}
        {"type": "connection.update", "connection": "close", "statusCode": 428}
        {"type": "messages.upsert", "messages": [...], "kind": "notify"}

    Client -> Bridge (send):
        {"type": "send", "request_id": "uuid", "jid": "...", "content": {"text": "..."}}

    Bridge -> Client (result):
        {"type": "result", "request_id": "uuid", "success": true, "result": {...}}
"""

import asyncio
import json
import uuid
from typing import Any, Optional

import websockets

from wasession.config import DEFAULT_BRIDGE_URL
from wasession.logger import get_logger
from wasession.models import (
    ConnectionState,
    ConnectionStateChange,
    CredentialUpdate,
    DisconnectReason,
    MessageBatch,
    QrChallenge,
    TransportOptions,
)
from wasession.transport.base import TransportSession

logger = get_logger(__name__)


class BridgeTransport(TransportSession):
    """TransportSession backed by a protocol bridge reachable over WebSocket."""

    def __init__(self, options: TransportOptions, url: str = DEFAULT_BRIDGE_URL):
        super().__init__(options)
        self.url = url
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._closed = False
        self._close_reported = False

    def _build_connect_message(self) -> dict[str, Any]:
        """Build the handshake frame."""
        options = self.options
        return {
            "type": "connect",
            "creds": options.credentials.creds,
            "keys": options.credentials.keys,
            "browser": list(options.client_identity.as_tuple()),
            "connectTimeoutMs": options.connect_timeout_ms,
            "defaultQueryTimeoutMs": options.query_timeout_ms,
            "keepAliveIntervalMs": options.keep_alive_interval_ms,
        }

    async def connect(self) -> None:
        logger.info(f"Connecting to bridge at {self.url} ...")
        self._ws = await websockets.connect(
            self.url,
            open_timeout=self.options.connect_timeout_ms / 1000,
            ping_interval=self.options.keep_alive_interval_ms / 1000,
        )
        await self._ws.send(json.dumps(self._build_connect_message()))
        self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        """Forward bridge frames as typed events until the socket drops."""
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Dropping malformed frame from bridge")
                    continue
                await self._handle_frame(data)
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug(f"Bridge socket closed: {e}")
        finally:
            self._fail_pending(ConnectionError("Bridge connection closed"))
            if not self._closed and not self._close_reported:
                self._close_reported = True
                await self._emit(
                    ConnectionStateChange(
                        state=ConnectionState.CLOSE,
                        close_reason=DisconnectReason.CONNECTION_LOST,
                        error="bridge socket closed",
                    )
                )

    async def _handle_frame(self, data: dict[str, Any]) -> None:
        frame_type = data.get("type")

        if frame_type == "creds.update":
            await self._emit(
                CredentialUpdate(creds=data.get("creds", {}), keys=data.get("keys", {}))
            )

        elif frame_type == "qr":
            await self._emit(QrChallenge(payload=data.get("qr", "")))

        elif frame_type == "connection.update":
            connection = data.get("connection")
            if not connection:
                return
            event = ConnectionStateChange(
                state=connection,
                close_reason=data.get("statusCode"),
                error=data.get("error"),
            )
            if event.state == ConnectionState.CLOSE:
                self._close_reported = True
            await self._emit(event)

        elif frame_type == "messages.upsert":
            await self._emit(
                MessageBatch(
                    messages=data.get("messages", []),
                    kind=data.get("kind", "notify"),
                )
            )

        elif frame_type == "result":
            future = self._pending.get(data.get("request_id", ""))
            if future and not future.done():
                future.set_result(data)
            elif not future:
                logger.warning(
                    f"Received result for unknown request_id: {data.get('request_id')}"
                )

        elif frame_type == "ping":
            await self._ws.send(json.dumps({"type": "pong"}))

        else:
            logger.debug(f"Unhandled bridge frame type: {frame_type}")

    async def send(self, address: str, content: dict[str, Any]) -> Any:
        """
        Send a message through the bridge and wait for its receipt.

        Raises:
            ConnectionError: If the bridge socket is not open.
            TimeoutError: If no result arrives within the query timeout.
            RuntimeError: If the bridge reports the send as failed.
        """
        if self._ws is None or self._closed:
            raise ConnectionError("Bridge transport is not connected")

        request_id = str(uuid.uuid4())
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        timeout = self.options.query_timeout_ms / 1000

        try:
            await self._ws.send(
                json.dumps(
                    {
                        "type": "send",
                        "request_id": request_id,
                        "jid": address,
                        "content": content,
                    }
                )
            )
            reply = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"Bridge did not acknowledge send to {address} within {timeout}s"
            ) from None
        finally:
            self._pending.pop(request_id, None)

        if not reply.get("success"):
            raise RuntimeError(reply.get("error") or "bridge rejected the message")
        return reply.get("result")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass

        self._fail_pending(ConnectionError("Bridge transport closing"))
        if self._ws is not None:
            await self._ws.close()
        logger.info("Bridge transport closed.")

    async def logout(self) -> None:
        if self._ws is not None and not self._closed:
            await self._ws.send(json.dumps({"type": "logout"}))
        await self.close()
