"""WebSocket signaling channel to the room server.

This module provides:
- WebSocketSignalingChannel: registers with the room server over a
  WebSocket, delivers inbound messages, and sends outbound messages
- HTTP POST fallback for messages sent while the socket is not open

Usage:
    channel = WebSocketSignalingChannel(
        wss_url="wss://example.org/ws",
        wss_post_url="https://example.org",
        room_id="room",
        client_id="12345678",
    )
    channel.on_open(on_open)          # async () -> None
    channel.on_message(on_message)    # async (str) -> None, inner message JSON
    channel.on_close(on_close)        # (code, reason) -> None
    await channel.open()
    ...
    await channel.close()
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from rtcnego.errors import ProtocolError, TransportError
from rtcnego.messages import (
    SignalingMessage,
    encode_message,
    parse_inbound_envelope,
    register_envelope,
    send_envelope,
)

logger = logging.getLogger(__name__)

OpenCallback = Callable[[], Awaitable[None]]
MessageCallback = Callable[[str], Awaitable[None]]
ErrorCallback = Callable[[Optional[BaseException]], None]
CloseCallback = Callable[[Optional[int], Optional[str]], None]


class WebSocketSignalingChannel:
    """Signaling channel over a room server WebSocket.

    Reconnection is off by default; when enabled the channel reopens the
    socket after reconnect_delay seconds and re-registers.
    """

    REQUEST_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        wss_url: str,
        wss_post_url: str,
        room_id: str,
        client_id: str,
        http_session: aiohttp.ClientSession | None = None,
        reconnect: bool = False,
        reconnect_delay: float = 5.0,
    ):
        """Initialize channel.

        Args:
            wss_url: WebSocket URL of the room server.
            wss_post_url: Base URL for the HTTP fallback.
            room_id: Room to register in.
            client_id: This client's identifier in the room.
            http_session: Optional aiohttp session (for testing).
            reconnect: Reopen the socket after it closes.
            reconnect_delay: Seconds to wait before reconnecting.
        """
        self._wss_url = wss_url
        self._post_url = wss_post_url.rstrip("/")
        self.room_id = room_id
        self.client_id = client_id
        self._session = http_session
        self._owns_session = http_session is None
        self._reconnect = reconnect
        self._reconnect_delay = reconnect_delay

        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task | None = None
        self._open = False
        self._closing = False
        self._reconnecting = False

        self._open_callback: OpenCallback | None = None
        self._message_callback: MessageCallback | None = None
        self._error_callback: ErrorCallback | None = None
        self._close_callback: CloseCallback | None = None

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def post_url(self) -> str:
        """Fallback endpoint for this room and client."""
        return f"{self._post_url}/{self.room_id}/{self.client_id}"

    def on_open(self, callback: OpenCallback) -> None:
        self._open_callback = callback

    def on_message(self, callback: MessageCallback) -> None:
        self._message_callback = callback

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callback = callback

    def on_close(self, callback: CloseCallback) -> None:
        self._close_callback = callback

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def open(self) -> None:
        """Open the WebSocket, register, and start receiving.

        Raises:
            TransportError: If the socket cannot be opened.
        """
        if self._task is not None:
            return
        self._closing = False
        try:
            await self._connect()
        except aiohttp.ClientError as e:
            raise TransportError(f"Could not open channel: {e}") from e
        self._task = asyncio.create_task(self._run())

    async def _connect(self) -> None:
        logger.info("Opening channel.")
        session = self._ensure_session()
        self._ws = await session.ws_connect(self._wss_url)
        logger.info("Channel opened. Registering with room server")
        await self._ws.send_str(register_envelope(self.room_id, self.client_id))
        self._open = True
        if self._open_callback:
            await self._open_callback()

    async def _run(self) -> None:
        while True:
            await self._pump()
            self._open = False
            if self._close_callback:
                self._close_callback(self._ws.close_code, None)
            if self._closing or not self._reconnect:
                return

            self._reconnecting = True
            while not self._closing:
                logger.info(f"Reconnecting in {self._reconnect_delay}s...")
                await asyncio.sleep(self._reconnect_delay)
                try:
                    await self._connect()
                    self._reconnecting = False
                    break
                except aiohttp.ClientError as e:
                    logger.warning(f"Reconnect failed: {e}")
            if self._closing:
                return

    async def _pump(self) -> None:
        ws = self._ws
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self._handle_text(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("Channel error.")
                if self._error_callback:
                    self._error_callback(ws.exception())
        logger.info(f"Channel closed with code: {ws.close_code}")

    async def _handle_text(self, data: str) -> None:
        try:
            envelope = parse_inbound_envelope(data)
        except ProtocolError as e:
            logger.warning(str(e))
            return
        if envelope.error:
            logger.warning(f"WSS error: {envelope.error}")
            return
        if not envelope.msg:
            return
        logger.debug(f"S->C: {envelope.msg}")
        if self._message_callback:
            await self._message_callback(envelope.msg)

    async def send(self, message: SignalingMessage) -> None:
        """Send a message, over the socket if open, else via HTTP POST.

        Raises:
            TransportError: If delivery fails.
        """
        payload = send_envelope(message)
        logger.debug(f"C->S: {payload}")

        if self._open and self._ws is not None and not self._ws.closed:
            try:
                await self._ws.send_str(payload)
            except (ConnectionError, aiohttp.ClientError) as e:
                raise TransportError(f"Failed to send {message.type}: {e}") from e
            return

        await self._post(encode_message(message), message.type)

    async def _post(self, msg: str, msg_type: str) -> None:
        session = self._ensure_session()
        try:
            async with session.post(
                self.post_url,
                data={"msg": msg},
                timeout=aiohttp.ClientTimeout(total=self.REQUEST_TIMEOUT),
            ) as response:
                if response.status != 200:
                    raise TransportError(
                        f"Failed to post {msg_type}: HTTP {response.status}"
                    )
        except (aiohttp.ClientError, TimeoutError) as e:
            raise TransportError(f"Failed to post {msg_type}: {e}") from e

    async def close(self) -> None:
        """Close the socket, stop receiving, release the HTTP session."""
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._task is not None:
            if self._reconnecting:
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._open = False

        if self._owns_session and self._session is not None:
            await self._session.close()
            # Allow event loop to clean up connector
            await asyncio.sleep(0)
            self._session = None

    async def __aenter__(self) -> "WebSocketSignalingChannel":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
