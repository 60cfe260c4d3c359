import asyncio
import logging
import uuid
from typing import Any, Iterable

from pydantic import BaseModel

from .events import ServerFrame, conversation_channel, user_channel

logger = logging.getLogger(__name__)


class Connection:
    """One open socket of an authenticated user."""

    def __init__(self, websocket, user_id: uuid.UUID):
        self.id = uuid.uuid4()
        self.websocket = websocket
        self.user_id = user_id
        self.channels: set[str] = set()

    async def send(self, frame: str) -> None:
        await self.websocket.send_text(frame)

    def __repr__(self) -> str:
        return f"<Connection {self.id} user={self.user_id}>"


def encode_frame(event: str, payload: Any) -> str:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", by_alias=True)
    return ServerFrame(event=event, data=payload).model_dump_json()


class RealtimeGateway:
    """
    Fans events out to socket connections grouped into named channels.

    Every connection sits in its owner's personal channel ``user:{id}`` and in
    the ``conversation:{id}`` rooms it has joined. Channel membership is only
    changed by the synchronous methods below, so it is never observed half
    updated from the event loop. Emitting never raises: a stopped gateway
    drops the event and a connection whose send fails is disconnected.
    """

    def __init__(self):
        self._channels: dict[str, set[Connection]] = {}
        self._connections: dict[uuid.UUID, Connection] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def init(self) -> None:
        self._running = True
        logger.info("Realtime gateway started")

    async def shutdown(self) -> None:
        self._running = False
        connections = list(self._connections.values())
        self._connections.clear()
        self._channels.clear()
        for connection in connections:
            try:
                await connection.websocket.close(code=1001)
            except Exception as e:
                logger.debug(f"Error closing {connection}: {e}")
        logger.info(f"Realtime gateway stopped, closed {len(connections)} connection(s)")

    # Registration

    def connect(self, websocket, user_id: uuid.UUID) -> Connection:
        """Registers an accepted socket and joins its personal channel."""
        connection = Connection(websocket, user_id)
        self._connections[connection.id] = connection
        self.join_user(connection)
        logger.debug(f"Registered {connection}")
        return connection

    def disconnect(self, connection: Connection) -> None:
        self._connections.pop(connection.id, None)
        for channel in list(connection.channels):
            self.leave(connection, channel)
        logger.debug(f"Unregistered {connection}")

    def join(self, connection: Connection, channel: str) -> None:
        self._channels.setdefault(channel, set()).add(connection)
        connection.channels.add(channel)

    def leave(self, connection: Connection, channel: str) -> None:
        members = self._channels.get(channel)
        if members is not None:
            members.discard(connection)
            if not members:
                del self._channels[channel]
        connection.channels.discard(channel)

    def join_user(self, connection: Connection) -> None:
        self.join(connection, user_channel(connection.user_id))

    def join_conversation(self, connection: Connection, conversation_id) -> None:
        self.join(connection, conversation_channel(conversation_id))

    def leave_conversation(self, connection: Connection, conversation_id) -> None:
        self.leave(connection, conversation_channel(conversation_id))

    def leave_conversation_for_user(self, user_id, conversation_id) -> None:
        """Takes every connection of user_id out of the conversation room."""
        for connection in self.connections_for_user(user_id):
            self.leave_conversation(connection, conversation_id)

    def close_room(self, conversation_id) -> None:
        channel = conversation_channel(conversation_id)
        for connection in self.members(channel):
            self.leave(connection, channel)

    def members(self, channel: str) -> set[Connection]:
        return set(self._channels.get(channel, ()))

    def connections_for_user(self, user_id) -> set[Connection]:
        return self.members(user_channel(user_id))

    # Fan-out

    async def _safe_send(self, connection: Connection, frame: str) -> bool:
        try:
            await connection.send(frame)
            return True
        except Exception as e:
            logger.warning(f"Dropping {connection} after failed send: {e}")
            self.disconnect(connection)
            return False

    async def _send_all(self, connections: Iterable[Connection], frame: str) -> int:
        results = await asyncio.gather(
            *(self._safe_send(connection, frame) for connection in connections)
        )
        return sum(results)

    async def emit_to_users(
        self, event: str, payload: Any, user_ids: Iterable[uuid.UUID]
    ) -> int:
        """Sends the event once to every personal channel of user_ids.

        Returns the number of connections reached.
        """
        if not self._running:
            return 0
        try:
            frame = encode_frame(event, payload)
            targets: set[Connection] = set()
            for user_id in dict.fromkeys(user_ids):
                targets |= self.members(user_channel(user_id))
            return await self._send_all(targets, frame)
        except Exception as e:
            logger.error(f"Failed to emit {event} to users: {e}", exc_info=True)
            return 0

    async def emit_to_room(
        self,
        conversation_id,
        event: str,
        payload: Any,
        exclude: Connection | None = None,
    ) -> int:
        """Sends the event to every connection viewing the conversation."""
        if not self._running:
            return 0
        try:
            frame = encode_frame(event, payload)
            targets = self.members(conversation_channel(conversation_id))
            targets.discard(exclude)
            return await self._send_all(targets, frame)
        except Exception as e:
            logger.error(
                f"Failed to emit {event} to conversation {conversation_id}: {e}",
                exc_info=True,
            )
            return 0

    async def send_to(self, connection: Connection, event: str, payload: Any) -> bool:
        """Replies to a single connection, e.g. an acknowledgement."""
        if not self._running:
            return False
        return await self._safe_send(connection, encode_frame(event, payload))
