"""Fan named events out to connected dashboard clients as SSE frames."""
from __future__ import annotations

import asyncio
import itertools
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger()

EVENT_CONNECTED = "connected"
EVENT_PING = "ping"
EVENT_SESSION_CREATED = "agent-session-created"
EVENT_STREAM = "agent-stream"
EVENT_SESSION_COMPLETE = "agent-complete"
EVENT_JOB_STATUS = "agent-status"
EVENT_PR_UPDATE = "pr-update"


def jdump(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {jdump(data)}\n\n"


@dataclass
class BroadcastClient:
    id: int
    sink: Any
    connected_at: float
    keepalive: Optional[asyncio.Task] = None


class EventBroadcaster:
    """Best-effort, at-most-once delivery to every registered sink.

    A sink is anything with ``put_nowait(frame)``; the SSE handler uses an
    ``asyncio.Queue`` and drains it onto the HTTP response. A sink that fails
    stays registered until its connection reports the disconnect.
    """

    def __init__(
        self,
        keepalive_seconds: float = 30.0,
        queue_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keepalive_seconds = keepalive_seconds
        self.queue_size = queue_size
        self._clock = clock
        self._ids = itertools.count(1)
        self._clients: Dict[int, BroadcastClient] = {}

    def __len__(self) -> int:
        return len(self._clients)

    @property
    def clients(self) -> List[BroadcastClient]:
        return list(self._clients.values())

    def subscribe(self, sink: Any = None) -> BroadcastClient:
        if sink is None:
            sink = asyncio.Queue(maxsize=self.queue_size)
        client = BroadcastClient(id=next(self._ids), sink=sink, connected_at=self._clock())
        self._clients[client.id] = client
        self._deliver(client, format_sse(EVENT_CONNECTED, {"clientId": client.id}))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None and self.keepalive_seconds > 0:
            client.keepalive = loop.create_task(self._keepalive(client), name=f"sse-ping-{client.id}")
        logger.info("sse_client_connected", client_id=client.id, total=len(self._clients))
        return client

    def unsubscribe(self, client_id: int) -> bool:
        client = self._clients.pop(client_id, None)
        if client is None:
            return False
        if client.keepalive and not client.keepalive.done():
            client.keepalive.cancel()
        logger.info("sse_client_disconnected", client_id=client_id, remaining=len(self._clients))
        return True

    def publish(self, event: str, data: Any) -> int:
        frame = format_sse(event, data)
        sent = 0
        for client in list(self._clients.values()):
            if self._deliver(client, frame):
                sent += 1
        logger.debug("sse_broadcast", sse_event=event, sent=sent, total=len(self._clients))
        return sent

    def close(self) -> None:
        """Signal end of stream to every sink; handlers unsubscribe on their way out."""
        for client in list(self._clients.values()):
            if client.keepalive and not client.keepalive.done():
                client.keepalive.cancel()
            self._deliver(client, None)

    def _deliver(self, client: BroadcastClient, frame: Optional[str]) -> bool:
        try:
            client.sink.put_nowait(frame)
        except Exception as exc:
            logger.debug("sse_delivery_failed", client_id=client.id, error=repr(exc))
            return False
        return True

    async def _keepalive(self, client: BroadcastClient) -> None:
        try:
            while True:
                await asyncio.sleep(self.keepalive_seconds)
                self._deliver(client, format_sse(EVENT_PING, {"time": int(self._clock() * 1000)}))
        except asyncio.CancelledError:
            return
