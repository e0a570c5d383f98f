"""In-app delivery over WebSocket connections.

The hub keeps the sessions connected to this API process. Workers call
``send_to_user`` from their own threads; delivery to a local session is
scheduled on the API event loop, and with the Redis bridge enabled a user
with no local session is reached through pub/sub by whichever API process
holds the connection. Delivery is best effort: nothing is queued for
offline users.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Optional

import redis
import redis.asyncio as aioredis
from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class WebSocketHub:
    """Registry of connected sessions keyed by user id."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        channel: str = "finjobs:websocket",
        bridge: bool = False,
    ):
        self.redis_url = redis_url
        self.channel = channel
        self.bridge = bridge and bool(redis_url)
        self._connections: dict[str, set[WebSocket]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._publisher: Optional[redis.Redis] = None
        self._publisher_lock = threading.Lock()
        self._bridge_task: Optional[asyncio.Task] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the event loop that owns the sessions."""
        self._loop = loop

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.setdefault(user_id, set()).add(websocket)
        logger.debug(
            f"WebSocket connected for user {user_id}. "
            f"Total sessions: {len(self._connections[user_id])}"
        )

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sessions = self._connections.get(user_id)
        if not sessions:
            return
        sessions.discard(websocket)
        if not sessions:
            del self._connections[user_id]
        logger.debug(f"WebSocket disconnected for user {user_id}")

    def has_sessions(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    @property
    def session_count(self) -> int:
        return sum(len(s) for s in self._connections.values())

    async def send_local(self, user_id: str, data: dict[str, Any]) -> int:
        """Send ``data`` to every local session of ``user_id``.

        Returns:
            Number of sessions that received the message
        """
        sessions = list(self._connections.get(user_id, ()))
        sent = 0
        for websocket in sessions:
            try:
                await websocket.send_json(data)
                sent += 1
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug(f"Dropping WebSocket for user {user_id}: {e}")
                self.disconnect(user_id, websocket)
        return sent

    def send_to_user(self, user_id: str, data: dict[str, Any]) -> bool:
        """Deliver ``data`` from any thread.

        Returns:
            True if the message was handed to a local session or the bridge
        """
        if self._loop is not None and self.has_sessions(user_id) and not self._loop.is_closed():
            asyncio.run_coroutine_threadsafe(self.send_local(user_id, data), self._loop)
            return True
        if self.bridge:
            return self._publish(user_id, data)
        logger.info(f"No WebSocket session for user {user_id}; in-app message dropped")
        return False

    def _get_publisher(self) -> redis.Redis:
        with self._publisher_lock:
            if self._publisher is None:
                self._publisher = redis.Redis.from_url(self.redis_url)
            return self._publisher

    def _publish(self, user_id: str, data: dict[str, Any]) -> bool:
        publisher = self._get_publisher()
        try:
            publisher.publish(
                self.channel, json.dumps({"user_id": user_id, "data": data}, default=str)
            )
        except redis.RedisError as e:
            logger.warning(f"WebSocket bridge publish failed for user {user_id}: {e}")
            return False
        return True

    async def start_bridge(self) -> None:
        """Subscribe to the bridge channel and forward messages to local sessions."""
        if not self.bridge or self._bridge_task is not None:
            return
        self._bridge_task = asyncio.create_task(self._listen())
        logger.info(f"WebSocket bridge subscribed to {self.channel}")

    async def stop_bridge(self) -> None:
        if self._bridge_task is not None:
            self._bridge_task.cancel()
            try:
                await self._bridge_task
            except asyncio.CancelledError:
                pass
            self._bridge_task = None
        with self._publisher_lock:
            publisher, self._publisher = self._publisher, None
        if publisher is not None:
            publisher.close()

    async def _listen(self) -> None:
        client = aioredis.from_url(self.redis_url)
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    envelope = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed WebSocket bridge message")
                    continue
                await self.send_local(envelope.get("user_id", ""), envelope.get("data") or {})
        except redis.RedisError as e:
            logger.error(f"WebSocket bridge stopped: {e}", exc_info=True)
        finally:
            await pubsub.aclose()
            await client.aclose()
