import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PayloadError

from messenger.auth_config import AUTH_COOKIE_NAME, decode_user_id
from messenger.db import get_db_session
from messenger.realtime import events
from messenger.realtime.events import ClientIntent
from messenger.realtime.handlers import SocketIntentHandler
from messenger.services.dependencies import (
    get_gateway,
    get_media_store,
    get_notification_dispatcher,
)

logger = logging.getLogger(__name__)
realtime_router_instance = APIRouter()


@realtime_router_instance.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    """
    Realtime channel. Authenticates with the auth cookie or a ``token``
    query parameter, then joins the user's personal channel and serves
    client intents until the socket closes.
    """
    token = websocket.cookies.get(AUTH_COOKIE_NAME) or websocket.query_params.get("token")
    user_id = decode_user_id(token)
    gateway = get_gateway(websocket)

    if user_id is None or gateway is None or not gateway.is_running:
        logger.info("Rejected unauthenticated socket connection")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection = gateway.connect(websocket, user_id)

    # Same override lookup as the HTTP dependency chain, so tests share one database
    session_factory = websocket.app.dependency_overrides.get(
        get_db_session, get_db_session
    )
    handler = SocketIntentHandler(
        gateway,
        connection,
        session_factory,
        media_store=get_media_store(websocket),
        notifier=get_notification_dispatcher(websocket),
    )
    logger.info(f"Socket connected for user {user_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                intent = ClientIntent.model_validate_json(raw)
            except PayloadError:
                await gateway.send_to(
                    connection, events.ERROR, {"event": None, "message": "Malformed frame"}
                )
                continue
            await handler.handle(intent)
    except WebSocketDisconnect:
        logger.info(f"Socket disconnected for user {user_id}")
    finally:
        gateway.disconnect(connection)
