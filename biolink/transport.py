import asyncio
import logging
from enum import Enum

import websockets
from websockets.exceptions import ConnectionClosed

from biolink.protocol import Snapshot, build_message, encode_message

log = logging.getLogger("transport")

WS_SCHEME = "ws"
NORMAL_CLOSURE = 1000


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def build_url(target: str) -> str:
    """
    Turn a user-entered ``host:port`` into a ``ws://`` URL.

    Only a bare host and port are accepted; no scheme, path or query.
    """
    target = (target or "").strip()
    if not target:
        raise ValueError("Server address is empty")
    if "://" in target or "/" in target or "?" in target:
        raise ValueError(f"Expected host:port, got {target!r}")
    host, sep, port = target.rpartition(":")
    if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"Expected host:port, got {target!r}")
    return f"{WS_SCHEME}://{host}:{port}"


class WebSocketTransport:
    """
    One outbound WebSocket connection and its connected flag.

    By default the link reports CONNECTED as soon as the open is requested,
    and only receive failures drop it back to DISCONNECTED. With
    ``hardened=True`` it goes through CONNECTING until the handshake completes
    and a failed send also disconnects.
    """

    def __init__(self, connector=websockets.connect, hardened: bool = False):
        self._connector = connector
        self.hardened = hardened

        self._state = ConnectionState.DISCONNECTED
        self._ws = None
        self._task: asyncio.Task | None = None
        self._url: str | None = None
        self._state_callback = None
        self._closing: set[asyncio.Task] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def url(self) -> str | None:
        return self._url

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def set_state_callback(self, callback):
        self._state_callback = callback

    def _set_state(self, state: ConnectionState):
        if state is self._state:
            return
        log.info(f"Connection state: {self._state.value} -> {state.value}")
        self._state = state
        if self._state_callback:
            self._state_callback(state)

    def connect(self, target: str):
        """Request a connection to ``target``. Must run on the event loop."""
        if self._state is not ConnectionState.DISCONNECTED:
            log.info("Already connected.")
            return

        url = build_url(target)
        loop = asyncio.get_running_loop()
        self._discard_previous(loop)
        self._url = url
        log.info(f"Connecting to {url}...")
        self._set_state(ConnectionState.CONNECTING if self.hardened else ConnectionState.CONNECTED)
        self._task = loop.create_task(self._run(url))

    def _discard_previous(self, loop):
        # leftovers of a connection that failed without an explicit disconnect()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self._ws is not None:
            # the loop only keeps weak references to tasks
            task = loop.create_task(self._close_quietly(self._ws))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
            self._ws = None

    async def _close_quietly(self, ws):
        try:
            await ws.close(code=NORMAL_CLOSURE)
        except Exception as e:
            log.warning(f"Error while closing WebSocket: {e!r}")

    async def _run(self, url: str):
        try:
            self._ws = await self._connector(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Failed to open {url}: {e!r}", exc_info=True)
            self._set_state(ConnectionState.DISCONNECTED)
            return

        log.info(f"WebSocket open: {url}")
        self._set_state(ConnectionState.CONNECTED)
        await self._receive_loop(self._ws)

    async def _receive_loop(self, ws):
        while True:
            try:
                message = await ws.recv()
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as e:
                log.error(f"WebSocket receive error: connection closed ({e})")
                break
            except Exception as e:
                log.error(f"WebSocket receive error: {e!r}", exc_info=True)
                break

            if isinstance(message, (bytes, bytearray)):
                log.info(f"Received binary message: {len(message)} bytes")
            else:
                log.info(f"Received text message: {message}")

        self._set_state(ConnectionState.DISCONNECTED)

    async def disconnect(self):
        task, ws = self._task, self._ws
        self._task = None
        self._ws = None
        if task is None and ws is None and self._state is ConnectionState.DISCONNECTED:
            return

        log.info("Disconnecting...")
        self._set_state(ConnectionState.DISCONNECTED)
        if task is not None and not task.done():
            task.cancel()
        if ws is not None:
            await self._close_quietly(ws)
        log.info("Disconnected.")

    async def send(self, payload: dict) -> bool:
        try:
            text = encode_message(payload)
        except (TypeError, ValueError) as e:
            log.error(f"Failed to serialize data: {e}")
            return False

        if self._ws is None:
            log.warning("Cannot send, WebSocket is not open.")
            return False

        try:
            await self._ws.send(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"WebSocket send error: {e!r}", exc_info=True)
            if self.hardened:
                self._set_state(ConnectionState.DISCONNECTED)
            return False
        return True

    async def send_biometric_data(self, snapshot: Snapshot) -> bool:
        return await self.send(build_message(snapshot))
