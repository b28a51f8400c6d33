"""
Live byte-stream relays between one container and one WebSocket peer.

Two session kinds exist:

* log follow: the container's combined stdout/stderr in follow mode, sent to
  the peer as text frames of at most ``chunk_size`` characters. Bytes are
  decoded incrementally, so a multi-byte UTF-8 sequence split across runtime
  chunks is never cut in half.
* console: a TTY shell exec. Peer frames are written to the shell verbatim
  and shell output is sent back verbatim as binary frames.

docker-py reads and writes block, so every runtime-side call goes through
``asyncio.to_thread``. Whichever side closes first, the other side is torn
down before the relay returns.
"""

import asyncio
import codecs
import logging
import socket
from typing import Iterator, List

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from config import WS_CHUNK_SIZE

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011
# RFC 6455 leaves 123 bytes for the close reason.
MAX_CLOSE_REASON_BYTES = 123
CONSOLE_READ_SIZE = 4096


def split_text(text: str, size: int) -> List[str]:
    if size < 1:
        raise ValueError("segment size must be positive")
    return [text[i:i + size] for i in range(0, len(text), size)]


class Utf8Segmenter:
    """Turns arbitrary byte chunks into bounded text segments, in order."""

    def __init__(self, size: int = WS_CHUNK_SIZE):
        self.size = size
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, data: bytes) -> List[str]:
        return split_text(self._decoder.decode(data), self.size)

    def flush(self) -> List[str]:
        return split_text(self._decoder.decode(b"", final=True), self.size)


def _truncate_reason(reason: str) -> str:
    encoded = reason.encode("utf-8")
    if len(encoded) <= MAX_CLOSE_REASON_BYTES:
        return reason
    return encoded[:MAX_CLOSE_REASON_BYTES].decode("utf-8", errors="ignore")


def peer_connected(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


async def close_peer(websocket: WebSocket, code: int = CLOSE_NORMAL, reason: str = "") -> None:
    if not peer_connected(websocket):
        return
    try:
        await websocket.close(code=code, reason=_truncate_reason(reason))
    except RuntimeError as e:
        # Peer went away between the state check and the close frame.
        logger.debug(f"WebSocket already closed: {e}")


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _finish(tasks) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def relay_logs(websocket: WebSocket, stream: Iterator[bytes], chunk_size: int = WS_CHUNK_SIZE) -> None:
    """Forward a follow-mode log stream until the stream or the peer ends."""
    segmenter = Utf8Segmenter(chunk_size)

    async def pump():
        while True:
            chunk = await asyncio.to_thread(next, stream, None)
            if chunk is None:
                break
            for segment in segmenter.feed(chunk):
                await websocket.send_text(segment)
        for segment in segmenter.flush():
            await websocket.send_text(segment)

    pump_task = asyncio.create_task(pump())
    peer_task = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({pump_task, peer_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        # Closing the runtime stream unblocks the reader thread.
        stream.close()
        await _finish((pump_task, peer_task))

    if pump_task in done:
        error = pump_task.exception()
        if error is not None:
            logger.warning(f"Log stream ended with error: {error}")
            await close_peer(websocket, CLOSE_INTERNAL_ERROR, str(error))
        else:
            await close_peer(websocket, CLOSE_NORMAL, "log stream ended")


def _raw_socket(sock):
    # exec_start(socket=True) hands back a SocketIO wrapper on unix sockets.
    return getattr(sock, "_sock", sock)


def _shutdown_socket(sock) -> None:
    raw = _raw_socket(sock)
    try:
        raw.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    for target in (raw, sock):
        try:
            target.close()
        except OSError as e:
            logger.debug(f"Closing console socket: {e}")


async def relay_console(websocket: WebSocket, sock) -> None:
    """Bridge a hijacked exec socket and the peer until either side closes."""
    raw = _raw_socket(sock)

    async def peer_to_shell():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            data = message.get("bytes")
            if data is None:
                text = message.get("text")
                data = text.encode("utf-8") if text is not None else b""
            if data:
                await asyncio.to_thread(raw.sendall, data)

    async def shell_to_peer():
        while True:
            data = await asyncio.to_thread(raw.recv, CONSOLE_READ_SIZE)
            if not data:
                return
            await websocket.send_bytes(data)

    inbound = asyncio.create_task(peer_to_shell())
    outbound = asyncio.create_task(shell_to_peer())
    try:
        done, _ = await asyncio.wait({inbound, outbound}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        _shutdown_socket(sock)
        await _finish((inbound, outbound))

    if outbound in done:
        error = outbound.exception()
        if error is not None:
            logger.warning(f"Console session ended with error: {error}")
            await close_peer(websocket, CLOSE_INTERNAL_ERROR, str(error))
        else:
            await close_peer(websocket, CLOSE_NORMAL, "shell exited")
    elif inbound.exception() is not None:
        logger.warning(f"Console input failed: {inbound.exception()}")
        await close_peer(websocket, CLOSE_INTERNAL_ERROR, str(inbound.exception()))
