"""Room-based fan-out of chat events to connected WebSockets.

Rooms are named ``conversation:<id>`` and ``user:<id>``. Delivery is
at-most-once: a socket that is not connected when an event is emitted never
sees it and has to re-fetch.
"""
import asyncio
import json
import logging
from typing import Dict, Protocol, Set

from fastapi import WebSocket

from config import REDIS_CHANNEL, REDIS_MAX_RETRY_SECONDS, REDIS_RETRY_SECONDS

logger = logging.getLogger(__name__)

NEW_CONVERSATION = "chat:new_conversation"
CONVERSATION_UPDATED = "chat:conversation_updated"
CONVERSATION_DELETED = "chat:conversation_deleted"
CONVERSATION_READ = "chat:conversation_read"
NEW_MESSAGE = "chat:new_message"
MESSAGE_DELETED = "chat:message_deleted"
REACTION_ADDED = "chat:reaction_added"
REACTION_REMOVED = "chat:reaction_removed"
TYPING = "chat:typing"
STOP_TYPING = "chat:stop_typing"


def conversation_room(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


class Broadcaster(Protocol):
    async def emit(self, room: str, event: str, payload: dict) -> None:
        ...


class ConnectionManager:
    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: int):
        await websocket.accept()
        self.join(websocket, user_room(user_id))

    def join(self, websocket: WebSocket, room: str):
        self.rooms.setdefault(room, set()).add(websocket)

    def leave(self, websocket: WebSocket, room: str):
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            del self.rooms[room]

    def disconnect(self, websocket: WebSocket):
        for room in list(self.rooms):
            self.leave(websocket, room)

    async def emit(self, room: str, event: str, payload: dict):
        message = json.dumps({"event": event, "data": payload}, default=str)
        for websocket in list(self.rooms.get(room, ())):
            try:
                await websocket.send_text(message)
            except Exception as exc:
                logger.warning("Dropping socket from %s after send failure: %s", room, exc)
                self.disconnect(websocket)


class LocalBroadcaster:
    """Single-instance fan-out straight to this process's sockets."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def emit(self, room: str, event: str, payload: dict):
        await self.manager.emit(room, event, payload)


class RedisBroadcaster:
    """Fan-out through Redis pub/sub so every instance reaches its own sockets."""

    def __init__(self, redis, manager: ConnectionManager, channel: str = REDIS_CHANNEL,
                 retry_delay: float = REDIS_RETRY_SECONDS, max_retry_delay: float = REDIS_MAX_RETRY_SECONDS):
        self.redis = redis
        self.manager = manager
        self.channel = channel
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self._running = False
        self._delay = retry_delay

    async def emit(self, room: str, event: str, payload: dict):
        envelope = json.dumps({"room": room, "event": event, "data": payload}, default=str)
        await self.redis.publish(self.channel, envelope)

    async def relay(self, raw: str):
        try:
            envelope = json.loads(raw)
            room, event, payload = envelope["room"], envelope["event"], envelope["data"]
        except (TypeError, ValueError, KeyError) as exc:
            logger.warning("Ignoring malformed pub/sub envelope: %s", exc)
            return
        await self.manager.emit(room, event, payload)

    async def _relay_subscription(self):
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            logger.info("Relaying chat events from Redis channel %s", self.channel)
            async for message in pubsub.listen():
                self._delay = self.retry_delay
                if message.get("type") == "message":
                    await self.relay(message["data"])
        finally:
            await pubsub.aclose()

    async def listen(self):
        """Relay the channel until stopped, re-subscribing with backoff after Redis errors."""
        self._running = True
        self._delay = self.retry_delay
        while self._running:
            try:
                await self._relay_subscription()
                logger.warning("Redis subscription on %s ended", self.channel)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "Redis relay on %s failed: %s; retrying in %.1fs", self.channel, exc, self._delay
                )
            if not self._running:
                break
            await asyncio.sleep(self._delay)
            self._delay = min(self._delay * 2, self.max_retry_delay)

    def stop(self):
        self._running = False
