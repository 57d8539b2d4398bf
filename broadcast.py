# broadcast.py
from __future__ import annotations

import asyncio
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class Broadcaster(ABC):
    """At-most-once, best-effort publish of state changes to live dashboards."""

    @abstractmethod
    def publish(self, event: str, payload: Dict[str, Any]) -> None: ...


def safe_publish(broadcaster: Broadcaster, event: str, payload: Dict[str, Any]) -> None:
    try:
        broadcaster.publish(event, payload)
    except Exception:
        logger.exception("Realtime publish of %s failed", event)


class LogBroadcaster(Broadcaster):
    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        logger.debug("event %s: %s", event, payload)


class WebSocketHub(Broadcaster):
    """
    Relays events to every connected WebSocket client.

    publish() may be called from any thread; sends are scheduled on the loop
    that serves the sockets. A client that fails to receive is dropped.
    """

    def __init__(self):
        self._clients: Set[WebSocket] = set()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        with self._lock:
            self._clients.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        with self._lock:
            self._clients.discard(websocket)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            clients = list(self._clients)
        if not clients or self._loop is None or self._loop.is_closed():
            return
        text = json.dumps({"event": event, "data": payload}, default=str)
        try:
            asyncio.run_coroutine_threadsafe(self._send_all(clients, text), self._loop)
        except RuntimeError:
            logger.debug("Broadcast loop unavailable; dropped %s", event)

    async def _send_all(self, clients, text: str) -> None:
        results = await asyncio.gather(
            *(ws.send_text(text) for ws in clients), return_exceptions=True
        )
        for ws, result in zip(clients, results):
            if isinstance(result, Exception):
                logger.info("Dropping websocket client after failed send: %s", result)
                self.disconnect(ws)
