import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from messenger.core.config import settings
from messenger.models import MediaAsset, Message, MessageReceipt, Notification
from messenger.realtime import events
from messenger.realtime.gateway import RealtimeGateway
from messenger.schemas.notification import EntityKind, NotificationType
from messenger.services.exceptions import AuthorizationError, NotFoundError, ValidationError
from messenger.services.media_store import IncomingFile, LocalMediaStore
from messenger.services.messaging_service import MessagingService
from messenger.services.notification_service import NotificationDispatcher
from test_helpers import FakeWebSocket, add_test_users, create_test_user, image_file


@pytest.fixture
async def users(db_test_session_manager: async_sessionmaker[AsyncSession]):
    return await add_test_users(
        db_test_session_manager,
        create_test_user(username="alice"),
        create_test_user(username="bob"),
        create_test_user(username="carol"),
    )


def connect(gateway: RealtimeGateway, *users) -> list[FakeWebSocket]:
    sockets = []
    for user in users:
        socket = FakeWebSocket()
        gateway.connect(socket, user.id)
        sockets.append(socket)
    return sockets


async def count_rows(session_maker, model, *criteria) -> int:
    async with session_maker() as session:
        stmt = select(func.count()).select_from(model)
        if criteria:
            stmt = stmt.where(*criteria)
        return (await session.execute(stmt)).scalar_one()


# Conversations


async def test_direct_conversation_is_unique_per_pair(
    messaging_service: MessagingService, gateway: RealtimeGateway, users
):
    alice, bob, _ = users
    alice_socket, bob_socket = connect(gateway, alice, bob)

    first = await messaging_service.create_conversation(alice.id, [bob.id])
    again = await messaging_service.create_conversation(bob.id, [alice.id, bob.id])

    assert again.id == first.id
    assert first.is_group is False
    assert set(first.participant_ids) == {alice.id, bob.id}
    assert first.admin_ids == []
    # Only the first call broadcasts
    assert alice_socket.events() == [events.CONVERSATION_NEW]
    assert bob_socket.events() == [events.CONVERSATION_NEW]
    assert bob_socket.payloads(events.CONVERSATION_NEW)[0]["id"] == str(first.id)


@pytest.mark.parametrize(
    "participants, is_group",
    [
        ("self", False),
        ("two_others", False),
        ("self", True),
    ],
)
async def test_create_conversation_validates_participants(
    messaging_service: MessagingService, users, participants, is_group
):
    alice, bob, carol = users
    participant_ids = [alice.id] if participants == "self" else [bob.id, carol.id]

    with pytest.raises(ValidationError):
        await messaging_service.create_conversation(
            alice.id, participant_ids, is_group=is_group
        )


async def test_create_conversation_rejects_unknown_users(
    messaging_service: MessagingService, users
):
    alice = users[0]
    with pytest.raises(ValidationError, match="Unknown user"):
        await messaging_service.create_conversation(alice.id, [uuid.uuid4()])


async def test_group_conversation_has_creator_as_admin(
    messaging_service: MessagingService, users
):
    alice, bob, carol = users

    group = await messaging_service.create_conversation(
        alice.id, [bob.id, carol.id], name="  <b>Team</b>  ", is_group=True
    )

    assert group.is_group is True
    assert group.name == "Team"
    assert group.admin_ids == [alice.id]
    assert set(group.participant_ids) == {alice.id, bob.id, carol.id}


async def test_non_participant_gets_not_found(messaging_service: MessagingService, users):
    alice, bob, carol = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])

    with pytest.raises(NotFoundError):
        await messaging_service.get_conversation(conversation.id, carol.id)
    with pytest.raises(NotFoundError):
        await messaging_service.get_messages(conversation.id, carol.id)


async def test_list_conversations_most_recent_first(
    messaging_service: MessagingService, users
):
    alice, bob, carol = users
    with_bob = await messaging_service.create_conversation(alice.id, [bob.id])
    with_carol = await messaging_service.create_conversation(alice.id, [carol.id])

    await messaging_service.create_message(with_bob.id, bob.id, "ping")

    listed = await messaging_service.list_conversations(alice.id)
    assert [c.id for c in listed] == [with_bob.id, with_carol.id]
    assert listed[0].last_message.content == "ping"
    assert [c.id for c in await messaging_service.list_conversations(carol.id)] == [
        with_carol.id
    ]


async def test_only_admins_add_participants(
    messaging_service: MessagingService, gateway: RealtimeGateway, users
):
    alice, bob, carol = users
    group = await messaging_service.create_conversation(alice.id, [bob.id], is_group=True)
    (carol_socket,) = connect(gateway, carol)

    with pytest.raises(AuthorizationError):
        await messaging_service.add_participants(group.id, bob.id, [carol.id])

    updated = await messaging_service.add_participants(group.id, alice.id, [carol.id, bob.id])

    assert set(updated.participant_ids) == {alice.id, bob.id, carol.id}
    assert carol_socket.events() == [events.CONVERSATION_UPDATE]


async def test_cannot_add_participants_to_direct_conversation(
    messaging_service: MessagingService, users
):
    alice, bob, carol = users
    direct = await messaging_service.create_conversation(alice.id, [bob.id])

    with pytest.raises(ValidationError):
        await messaging_service.add_participants(direct.id, alice.id, [carol.id])


async def test_remove_participant_rules(
    messaging_service: MessagingService, gateway: RealtimeGateway, users
):
    alice, bob, carol = users
    group = await messaging_service.create_conversation(
        alice.id, [bob.id, carol.id], is_group=True
    )
    alice_socket, bob_socket, carol_socket = connect(gateway, alice, bob, carol)

    with pytest.raises(AuthorizationError):
        await messaging_service.remove_participant(group.id, bob.id, carol.id)

    updated = await messaging_service.remove_participant(group.id, alice.id, carol.id)

    assert carol.id not in updated.participant_ids
    assert carol_socket.payloads(events.CONVERSATION_REMOVED) == [
        {"conversationId": str(group.id)}
    ]
    assert alice_socket.events() == [events.CONVERSATION_UPDATE]
    (bob_update,) = bob_socket.payloads(events.CONVERSATION_UPDATE)
    assert bob_update["id"] == str(group.id)
    assert carol_socket.payloads(events.CONVERSATION_UPDATE) == []
    with pytest.raises(NotFoundError):
        await messaging_service.get_conversation(group.id, carol.id)


async def test_removed_participant_leaves_the_room(
    messaging_service: MessagingService, gateway: RealtimeGateway, users
):
    alice, bob, carol = users
    group = await messaging_service.create_conversation(
        alice.id, [bob.id, carol.id], is_group=True
    )
    carol_socket = FakeWebSocket()
    carol_connection = gateway.connect(carol_socket, carol.id)
    gateway.join_conversation(carol_connection, group.id)

    await messaging_service.remove_participant(group.id, alice.id, carol.id)
    await messaging_service.create_message(group.id, alice.id, "after removal")

    assert carol_connection.channels == {f"user:{carol.id}"}
    assert carol_socket.payloads(events.MESSAGE_NEW) == []


async def test_leave_conversation(messaging_service: MessagingService, users):
    alice, bob, carol = users
    group = await messaging_service.create_conversation(
        alice.id, [bob.id, carol.id], is_group=True
    )

    updated = await messaging_service.leave_conversation(group.id, bob.id)

    assert set(updated.participant_ids) == {alice.id, carol.id}


async def test_removed_admin_loses_admin_rights(messaging_service: MessagingService, users):
    alice, bob, carol = users
    group = await messaging_service.create_conversation(
        alice.id, [bob.id, carol.id], is_group=True
    )

    updated = await messaging_service.leave_conversation(group.id, alice.id)

    assert alice.id not in updated.admin_ids
    assert updated.admin_ids == []


# Messages


async def test_create_message_fans_out_and_notifies(
    messaging_service: MessagingService,
    gateway: RealtimeGateway,
    notification_dispatcher: NotificationDispatcher,
    db_test_session_manager: async_sessionmaker[AsyncSession],
    users,
):
    alice, bob, _ = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])
    alice_socket, bob_socket = connect(gateway, alice, bob)
    viewer = FakeWebSocket()
    gateway.join_conversation(gateway.connect(viewer, bob.id), conversation.id)

    message = await messaging_service.create_message(
        conversation.id, alice.id, "  hello <i>there</i> "
    )
    await notification_dispatcher.wait_idle()

    assert message.content == "hello there"
    assert message.delivered_to == [alice.id]
    assert message.read_by == []

    (payload,) = alice_socket.payloads(events.MESSAGE_NEW)
    assert payload["id"] == str(message.id)
    assert payload["isMine"] is True
    assert payload["sender"]["username"] == "alice"
    assert bob_socket.payloads(events.MESSAGE_NEW) == [payload]
    # The viewing socket sits in both the personal channel and the room
    assert viewer.events().count(events.MESSAGE_NEW) == 2
    assert viewer.events().count(events.NOTIFICATION_NEW) == 1

    reloaded = await messaging_service.get_conversation(conversation.id, alice.id)
    assert reloaded.last_message_id == message.id

    async with db_test_session_manager() as session:
        notifications = (await session.execute(select(Notification))).scalars().all()
    assert len(notifications) == 1
    (notification,) = notifications
    assert notification.user_id == bob.id
    assert notification.actor_id == alice.id
    assert notification.type == NotificationType.MESSAGE
    assert notification.entity_type == EntityKind.MESSAGE
    assert notification.entity_id == message.id
    assert notification.details == {"conversationId": str(conversation.id)}
    assert bob_socket.payloads(events.NOTIFICATION_NEW)[0]["id"] == str(notification.id)
    assert alice_socket.payloads(events.NOTIFICATION_NEW) == []


@pytest.mark.parametrize("content", [None, "   ", "<p></p>"])
async def test_empty_message_is_rejected(messaging_service: MessagingService, users, content):
    alice, bob, _ = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])

    with pytest.raises(ValidationError):
        await messaging_service.create_message(conversation.id, alice.id, content)


async def test_message_length_limit(messaging_service: MessagingService, users):
    alice, bob, _ = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])

    with pytest.raises(ValidationError):
        await messaging_service.create_message(
            conversation.id, alice.id, "x" * (settings.MESSAGE_MAX_LENGTH + 1)
        )
    message = await messaging_service.create_message(
        conversation.id, alice.id, "x" * settings.MESSAGE_MAX_LENGTH
    )
    assert len(message.content) == settings.MESSAGE_MAX_LENGTH


async def test_message_with_attachments_only(
    messaging_service: MessagingService, media_store: LocalMediaStore, users
):
    alice, bob, _ = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])

    message = await messaging_service.create_message(
        conversation.id, alice.id, None, [image_file("a.png"), image_file("b.jpg", "image/jpeg")]
    )

    assert message.content == ""
    assert [a.mime_type for a in message.attachments] == ["image/png", "image/jpeg"]
    for attachment in message.attachments:
        assert attachment.key.startswith("messages/")
        assert (media_store.root / attachment.key).exists()


async def test_non_image_attachment_is_rejected(
    messaging_service: MessagingService, media_store: LocalMediaStore, users
):
    alice, bob, _ = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])

    with pytest.raises(ValidationError):
        await messaging_service.create_message(
            conversation.id,
            alice.id,
            "see file",
            [image_file(), IncomingFile("notes.txt", "text/plain", b"hi")],
        )
    assert not (media_store.root / "messages").exists()


async def test_get_messages_pages_from_newest(messaging_service: MessagingService, users):
    alice, bob, _ = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])
    for index in range(5):
        await messaging_service.create_message(conversation.id, alice.id, f"m{index}")

    first_page = await messaging_service.get_messages(conversation.id, bob.id, page=1, limit=2)
    last_page = await messaging_service.get_messages(conversation.id, bob.id, page=3, limit=2)

    assert [m.content for m in first_page.items] == ["m3", "m4"]
    assert [m.content for m in last_page.items] == ["m0"]
    assert first_page.pagination.total == 5
    assert first_page.pagination.count == 2
    assert all(m.is_mine is False for m in first_page.items)


async def test_mark_read_is_idempotent(
    messaging_service: MessagingService, gateway: RealtimeGateway, users
):
    alice, bob, _ = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])
    first = await messaging_service.create_message(conversation.id, alice.id, "one")
    second = await messaging_service.create_message(conversation.id, alice.id, "two")
    (alice_socket,) = connect(gateway, alice)

    changed = await messaging_service.mark_messages_read(
        conversation.id, [second.id, first.id, second.id], bob.id
    )
    again = await messaging_service.mark_messages_read(conversation.id, [first.id], bob.id)

    assert changed == [second.id, first.id]
    assert again == []
    page = await messaging_service.get_messages(conversation.id, alice.id)
    assert [m.read_by for m in page.items] == [[bob.id], [bob.id]]
    payloads = alice_socket.payloads(events.MESSAGE_READ)
    assert payloads[0] == {
        "conversationId": str(conversation.id),
        "messageIds": [str(second.id), str(first.id)],
        "readerId": str(bob.id),
    }
    assert len(payloads) == 2


async def test_mark_delivered_ignores_foreign_messages(
    messaging_service: MessagingService, users
):
    alice, bob, carol = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])
    other = await messaging_service.create_conversation(alice.id, [carol.id])
    mine = await messaging_service.create_message(conversation.id, alice.id, "here")
    elsewhere = await messaging_service.create_message(other.id, alice.id, "there")

    changed = await messaging_service.mark_messages_delivered(
        conversation.id, [mine.id, elsewhere.id, uuid.uuid4()], bob.id
    )

    assert changed == [mine.id]


async def test_empty_receipt_request_is_a_no_op(
    messaging_service: MessagingService, gateway: RealtimeGateway, users
):
    alice, bob, _ = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])
    (alice_socket,) = connect(gateway, alice)

    assert await messaging_service.mark_messages_read(conversation.id, [], bob.id) == []
    assert await messaging_service.mark_messages_delivered(conversation.id, [], bob.id) == []
    assert alice_socket.sent == []


# Deletion and avatars


async def test_delete_group_requires_admin(messaging_service: MessagingService, users):
    alice, bob, _ = users
    group = await messaging_service.create_conversation(alice.id, [bob.id], is_group=True)

    with pytest.raises(AuthorizationError):
        await messaging_service.delete_conversation(group.id, bob.id)


async def test_delete_conversation_cascades(
    messaging_service: MessagingService,
    gateway: RealtimeGateway,
    media_store: LocalMediaStore,
    notification_dispatcher: NotificationDispatcher,
    db_test_session_manager: async_sessionmaker[AsyncSession],
    users,
):
    alice, bob, _ = users
    conversation = await messaging_service.create_conversation(alice.id, [bob.id])
    message = await messaging_service.create_message(
        conversation.id, alice.id, "bye", [image_file()]
    )
    await messaging_service.mark_messages_read(conversation.id, [message.id], bob.id)
    await notification_dispatcher.wait_idle()
    stored_path = media_store.root / message.attachments[0].key
    assert stored_path.exists()
    assert await count_rows(db_test_session_manager, Notification) == 1
    alice_socket, bob_socket = connect(gateway, alice, bob)

    # Either side of a direct conversation may delete it
    await messaging_service.delete_conversation(conversation.id, bob.id)
    await notification_dispatcher.wait_idle()

    assert await count_rows(db_test_session_manager, Message) == 0
    assert await count_rows(db_test_session_manager, MessageReceipt) == 0
    assert await count_rows(db_test_session_manager, MediaAsset) == 0
    assert await count_rows(db_test_session_manager, Notification) == 0
    assert not stored_path.exists()
    for socket in (alice_socket, bob_socket):
        assert socket.payloads(events.CONVERSATION_DELETED) == [
            {"conversationId": str(conversation.id)}
        ]
    with pytest.raises(NotFoundError):
        await messaging_service.get_conversation(conversation.id, alice.id)


async def test_admin_deletes_group_with_attachments(
    messaging_service: MessagingService,
    gateway: RealtimeGateway,
    media_store: LocalMediaStore,
    notification_dispatcher: NotificationDispatcher,
    db_test_session_manager: async_sessionmaker[AsyncSession],
    users,
):
    alice, bob, carol = users
    group = await messaging_service.create_conversation(
        alice.id, [bob.id, carol.id], is_group=True
    )
    stored_paths = []
    for index, sender in enumerate((alice, bob, carol)):
        message = await messaging_service.create_message(
            group.id, sender.id, f"photo {index}", [image_file(f"photo{index}.png")]
        )
        stored_paths.append(media_store.root / message.attachments[0].key)
    await notification_dispatcher.wait_idle()
    assert all(path.exists() for path in stored_paths)
    sockets = connect(gateway, alice, bob, carol)
    room_connection = gateway.connect(FakeWebSocket(), bob.id)
    gateway.join_conversation(room_connection, group.id)

    await messaging_service.delete_conversation(group.id, alice.id)
    await notification_dispatcher.wait_idle()

    for socket in sockets:
        assert socket.payloads(events.CONVERSATION_DELETED) == [
            {"conversationId": str(group.id)}
        ]
    assert not any(path.exists() for path in stored_paths)
    assert await count_rows(db_test_session_manager, Message) == 0
    assert await count_rows(db_test_session_manager, MediaAsset) == 0
    assert await count_rows(db_test_session_manager, Notification) == 0
    assert gateway.members(f"conversation:{group.id}") == set()


async def test_set_conversation_avatar_replaces_previous(
    messaging_service: MessagingService, media_store: LocalMediaStore, users
):
    alice, bob, _ = users
    group = await messaging_service.create_conversation(alice.id, [bob.id], is_group=True)

    first = await messaging_service.set_conversation_avatar(group.id, alice.id, image_file())
    first_key = first.avatar_key
    second = await messaging_service.set_conversation_avatar(group.id, alice.id, image_file())

    assert second.avatar_url == f"/media/{second.avatar_key}"
    assert second.avatar_key != first_key
    assert not (media_store.root / first_key).exists()
    assert (media_store.root / second.avatar_key).exists()


async def test_set_conversation_avatar_validation(messaging_service: MessagingService, users):
    alice, bob, _ = users
    group = await messaging_service.create_conversation(alice.id, [bob.id], is_group=True)

    with pytest.raises(AuthorizationError):
        await messaging_service.set_conversation_avatar(group.id, bob.id, image_file())
    with pytest.raises(ValidationError):
        await messaging_service.set_conversation_avatar(
            group.id, alice.id, IncomingFile("a.gif", "application/pdf", b"%PDF")
        )
    with pytest.raises(ValidationError):
        await messaging_service.set_conversation_avatar(group.id, alice.id, None)
