"""
Real-Time Communication
Console and log-follow sessions over WebSocket, one container per peer.
"""

import asyncio
import logging
from typing import Dict

from fastapi import APIRouter, Depends, WebSocket

from docker_manager import DockerManager, get_docker_manager
from errors import NotFound, ServerManagerError
from stream_sessions import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_POLICY_VIOLATION,
    close_peer,
    relay_console,
    relay_logs,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

SESSION_TYPES = ("console", "logs")


class SessionTracker:
    """Counts live sessions per server name; sessions are never shared between peers."""

    def __init__(self):
        self.active: Dict[str, int] = {}

    def opened(self, name: str) -> None:
        self.active[name] = self.active.get(name, 0) + 1

    def closed(self, name: str) -> None:
        remaining = self.active.get(name, 0) - 1
        if remaining > 0:
            self.active[name] = remaining
        else:
            self.active.pop(name, None)

    def total(self) -> int:
        return sum(self.active.values())


sessions = SessionTracker()


@router.websocket("/ws")
async def stream_session(websocket: WebSocket, dm: DockerManager = Depends(get_docker_manager)):
    """Attach a console (``type=console``, default) or log tail (``type=logs``) to server ``name``."""
    await websocket.accept()
    name = websocket.query_params.get("name")
    session_type = websocket.query_params.get("type") or "console"
    if not name:
        await close_peer(websocket, CLOSE_POLICY_VIOLATION, "name required")
        return
    if session_type not in SESSION_TYPES:
        await close_peer(websocket, CLOSE_POLICY_VIOLATION, f"unknown session type '{session_type}'")
        return

    try:
        container = await asyncio.to_thread(dm.get_container, name)
        if session_type == "logs":
            handle = await asyncio.to_thread(dm.open_log_stream, container)
        else:
            handle = await asyncio.to_thread(dm.open_console, container)
    except NotFound as e:
        await close_peer(websocket, CLOSE_POLICY_VIOLATION, e.message)
        return
    except ServerManagerError as e:
        logger.warning(f"Could not open {session_type} session for {name}: {e.message}")
        await close_peer(websocket, CLOSE_INTERNAL_ERROR, e.message)
        return

    logger.info(f"Opened {session_type} session for {name}")
    sessions.opened(name)
    try:
        if session_type == "logs":
            await relay_logs(websocket, handle)
        else:
            await relay_console(websocket, handle)
    finally:
        sessions.closed(name)
        logger.info(f"Closed {session_type} session for {name}")
