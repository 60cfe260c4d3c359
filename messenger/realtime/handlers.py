import logging
import uuid
from contextlib import aclosing
from typing import Any, AsyncGenerator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from messenger.repositories.conversation_repository import ConversationRepository
from messenger.repositories.message_repository import MessageRepository
from messenger.repositories.user_repository import UserRepository
from messenger.schemas.message import TypingEvent
from messenger.services.exceptions import ServiceError
from messenger.services.messaging_service import MessagingService

from . import events
from .events import ClientIntent, conversation_channel
from .gateway import Connection, RealtimeGateway

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]


class IntentError(Exception):
    """Malformed socket intent."""


def _uuid_field(data: dict[str, Any], key: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(data[key]))
    except (KeyError, TypeError, ValueError):
        raise IntentError(f"'{key}' must be a valid id")


def _uuid_list_field(data: dict[str, Any], key: str) -> list[uuid.UUID]:
    raw = data.get(key) or []
    if not isinstance(raw, list):
        raise IntentError(f"'{key}' must be a list of ids")
    try:
        return [uuid.UUID(str(item)) for item in raw]
    except ValueError:
        raise IntentError(f"'{key}' must be a list of ids")


class SocketIntentHandler:
    """
    Dispatches the intents received on one socket connection.

    Intents that touch the database run in their own session from
    ``session_factory`` and go through the MessagingService, the same path
    as the HTTP routes.
    """

    def __init__(
        self,
        gateway: RealtimeGateway,
        connection: Connection,
        session_factory: SessionFactory,
        media_store=None,
        notifier=None,
    ):
        self.gateway = gateway
        self.connection = connection
        self.session_factory = session_factory
        self.media_store = media_store
        self.notifier = notifier
        self._handlers: dict[str, Callable[[ClientIntent], Awaitable[None]]] = {
            events.AUTH_JOIN: self.on_auth_join,
            events.CONVERSATION_JOIN: self.on_conversation_join,
            events.CONVERSATION_LEAVE: self.on_conversation_leave,
            events.MESSAGE_SEND: self.on_message_send,
            events.MESSAGE_DELIVERED: self.on_message_delivered,
            events.MESSAGE_READ: self.on_message_read,
            events.TYPING_START: self.on_typing,
            events.TYPING_STOP: self.on_typing,
        }

    @property
    def user_id(self) -> uuid.UUID:
        return self.connection.user_id

    async def _with_service(
        self, work: Callable[[MessagingService], Awaitable[Any]]
    ) -> Any:
        result = None
        async with aclosing(self.session_factory()) as sessions:
            async for session in sessions:
                service = MessagingService(
                    ConversationRepository(session),
                    MessageRepository(session),
                    UserRepository(session),
                    gateway=self.gateway,
                    media_store=self.media_store,
                    notifier=self.notifier,
                )
                result = await work(service)
        return result

    async def _send_error(self, intent: ClientIntent, message: str) -> None:
        await self.gateway.send_to(
            self.connection,
            events.ERROR,
            {"event": intent.event, "message": message},
        )

    async def handle(self, intent: ClientIntent) -> None:
        handler = self._handlers.get(intent.event)
        if handler is None:
            await self._send_error(intent, f"Unknown event '{intent.event}'")
            return
        try:
            await handler(intent)
        except IntentError as e:
            await self._send_error(intent, str(e))
        except ServiceError as e:
            logger.info(f"Socket {intent.event} rejected for user {self.user_id}: {e}")
            await self._send_error(intent, e.message)
        except Exception as e:
            logger.error(f"Socket {intent.event} failed: {e}", exc_info=True)
            await self._send_error(intent, "Internal error")

    async def on_auth_join(self, intent: ClientIntent) -> None:
        # The personal channel comes from the authenticated handshake, never
        # from a client supplied id
        self.gateway.join_user(self.connection)

    async def on_conversation_join(self, intent: ClientIntent) -> None:
        conversation_id = _uuid_field(intent.data, "conversationId")
        await self._with_service(
            lambda service: service.ensure_participant(conversation_id, self.user_id)
        )
        self.gateway.join_conversation(self.connection, conversation_id)
        logger.debug(f"{self.connection} joined conversation {conversation_id}")

    async def on_conversation_leave(self, intent: ClientIntent) -> None:
        conversation_id = _uuid_field(intent.data, "conversationId")
        self.gateway.leave_conversation(self.connection, conversation_id)

    async def on_message_send(self, intent: ClientIntent) -> None:
        try:
            conversation_id = _uuid_field(intent.data, "conversationId")
            message = await self._with_service(
                lambda service: service.create_message(
                    conversation_id, self.user_id, intent.data.get("content")
                )
            )
        except (IntentError, ServiceError) as e:
            await self._ack(intent, {"status": "error", "message": str(e)})
            return
        except Exception as e:
            logger.error(f"Socket message:send failed: {e}", exc_info=True)
            await self._ack(intent, {"status": "error", "message": "Internal error"})
            return
        await self._ack(intent, {"status": "ok", "messageId": str(message.id)})

    async def _ack(self, intent: ClientIntent, body: dict[str, Any]) -> None:
        if intent.ack_id is None:
            return
        await self.gateway.send_to(
            self.connection, events.ACK, {"ackId": intent.ack_id, **body}
        )

    async def on_message_delivered(self, intent: ClientIntent) -> None:
        conversation_id = _uuid_field(intent.data, "conversationId")
        message_ids = _uuid_list_field(intent.data, "messageIds")
        await self._with_service(
            lambda service: service.mark_messages_delivered(
                conversation_id, message_ids, self.user_id
            )
        )

    async def on_message_read(self, intent: ClientIntent) -> None:
        conversation_id = _uuid_field(intent.data, "conversationId")
        message_ids = _uuid_list_field(intent.data, "messageIds")
        await self._with_service(
            lambda service: service.mark_messages_read(
                conversation_id, message_ids, self.user_id
            )
        )

    async def on_typing(self, intent: ClientIntent) -> None:
        conversation_id = _uuid_field(intent.data, "conversationId")
        # Only connections viewing the conversation may signal typing there
        if conversation_channel(conversation_id) not in self.connection.channels:
            return
        await self.gateway.emit_to_room(
            conversation_id,
            intent.event,
            TypingEvent(conversation_id=conversation_id, user_id=self.user_id),
            exclude=self.connection,
        )
