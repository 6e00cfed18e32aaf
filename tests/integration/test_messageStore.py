"""
Integration tests for the message store against SQLite.

Covers append, newest-page-first history with oldest-first pages, read
receipts (bulk and single), edits and soft deletes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from tradiechat.core.exceptions import AccessDeniedError, NotFoundError, ValidationError
from tradiechat.models.chat import MAX_MESSAGE_LENGTH, Message, MessageType
from tradiechat.services import conversationService, messageService

from tests.conftest import BUILDER_ID, OTHER_TRADIE_ID, TRADIE_ID


pytestmark = pytest.mark.asyncio

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _load(db, conversation, user_id=TRADIE_ID):
    return await conversationService.get_for_participant(db, conversation.id, user_id)


async def _insert_history(db, conv, count: int) -> list[Message]:
    """Insert ``count`` text messages one minute apart, alternating senders."""
    messages = []
    for i in range(count):
        msg = Message(
            conversation_id=conv.id,
            sender_id=TRADIE_ID if i % 2 == 0 else BUILDER_ID,
            message_type=MessageType.TEXT,
            content=f"message {i}",
            is_read=False,
            read_at=None,
            is_edited=False,
            edited_at=None,
            is_deleted=False,
            deleted_at=None,
            created_at=BASE_TIME + timedelta(minutes=i),
            updated_at=BASE_TIME + timedelta(minutes=i),
        )
        db.add(msg)
        messages.append(msg)
    await db.flush()
    return messages


async def _message_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(Message))).scalar()


# ---------------------------------------------------------------------------
# Append
# ---------------------------------------------------------------------------


class TestAppend:

    async def test_text_message_view(self, db, conversation):
        conv = await _load(db, conversation)
        view = await messageService.append(db, conv, TRADIE_ID, "text", {"content": "  Hello  "})
        await db.commit()

        assert view.content == "Hello"
        assert view.chat_id == conv.id
        assert view.message_type == "text"
        assert view.is_read is False
        assert view.sender.id == TRADIE_ID
        assert view.receiver.id == BUILDER_ID

    async def test_image_message(self, db, conversation):
        conv = await _load(db, conversation, BUILDER_ID)
        view = await messageService.append(
            db, conv, BUILDER_ID, "image",
            {"document_url": "https://cdn.test/site.jpg", "document_name": "site.jpg", "document_size": 5000},
        )
        assert view.document_name == "site.jpg"
        assert view.content is None
        assert view.receiver.id == TRADIE_ID

    async def test_oversize_text_persists_nothing(self, db, conversation):
        conv = await _load(db, conversation)
        with pytest.raises(ValidationError):
            await messageService.append(
                db, conv, TRADIE_ID, "text", {"content": "x" * (MAX_MESSAGE_LENGTH + 1)},
            )
        assert await _message_count(db) == 0

    async def test_document_without_size_persists_nothing(self, db, conversation):
        conv = await _load(db, conversation)
        with pytest.raises(ValidationError):
            await messageService.append(
                db, conv, TRADIE_ID, "document",
                {"document_url": "https://cdn.test/a.pdf", "document_name": "a.pdf"},
            )
        assert await _message_count(db) == 0

    async def test_outsider_cannot_append(self, db, conversation):
        conv = await _load(db, conversation)
        with pytest.raises(NotFoundError):
            await messageService.append(db, conv, OTHER_TRADIE_ID, "text", {"content": "Hi"})


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestListPage:

    async def test_first_page_is_newest_in_ascending_order(self, db, conversation):
        conv = await _load(db, conversation)
        await _insert_history(db, conv, 5)

        page = await messageService.list_page(db, conv, page=1, page_size=2)

        assert [m.content for m in page.items] == ["message 3", "message 4"]
        assert page.total_items == 5
        assert page.total_pages == 3
        assert page.has_more is True

    async def test_pages_reassemble_full_history(self, db, conversation):
        conv = await _load(db, conversation)
        await _insert_history(db, conv, 5)

        contents = []
        for page_number in (3, 2, 1):
            page = await messageService.list_page(db, conv, page=page_number, page_size=2)
            contents.extend(m.content for m in page.items)

        assert contents == [f"message {i}" for i in range(5)]

    async def test_last_page_has_no_more(self, db, conversation):
        conv = await _load(db, conversation)
        await _insert_history(db, conv, 5)

        page = await messageService.list_page(db, conv, page=3, page_size=2)
        assert [m.content for m in page.items] == ["message 0"]
        assert page.has_more is False

    async def test_before_cursor_excludes_newer(self, db, conversation):
        conv = await _load(db, conversation)
        await _insert_history(db, conv, 5)

        page = await messageService.list_page(
            db, conv, page=1, page_size=10, before=BASE_TIME + timedelta(minutes=3),
        )
        assert [m.content for m in page.items] == ["message 0", "message 1", "message 2"]
        assert page.total_items == 3

    async def test_deleted_messages_hidden(self, db, conversation):
        conv = await _load(db, conversation)
        messages = await _insert_history(db, conv, 3)
        await messageService.soft_delete(db, messages[1].id, BUILDER_ID)

        page = await messageService.list_page(db, conv)
        assert [m.content for m in page.items] == ["message 0", "message 2"]
        assert page.total_items == 2

    async def test_empty_history(self, db, conversation):
        conv = await _load(db, conversation)
        page = await messageService.list_page(db, conv)
        assert page.items == []
        assert page.total_pages == 0
        assert page.has_more is False


# ---------------------------------------------------------------------------
# Read receipts
# ---------------------------------------------------------------------------


class TestReadReceipts:

    async def test_mark_all_skips_own_messages(self, db, conversation):
        conv = await _load(db, conversation)
        messages = await _insert_history(db, conv, 4)
        tradie_sent = {m.id for m in messages if m.sender_id == TRADIE_ID}

        ids = await messageService.mark_all_read_except_sender(db, conv.id, BUILDER_ID)

        assert set(ids) == tradie_sent
        assert await messageService.count_unread(db, conv.id, BUILDER_ID) == 0
        assert await messageService.count_unread(db, conv.id, TRADIE_ID) == 2

    async def test_mark_all_second_time_is_empty(self, db, conversation):
        conv = await _load(db, conversation)
        await _insert_history(db, conv, 2)

        await messageService.mark_all_read_except_sender(db, conv.id, BUILDER_ID)
        assert await messageService.mark_all_read_except_sender(db, conv.id, BUILDER_ID) == []

    async def test_mark_all_skips_deleted(self, db, conversation):
        conv = await _load(db, conversation)
        messages = await _insert_history(db, conv, 1)
        await messageService.soft_delete(db, messages[0].id, TRADIE_ID)

        assert await messageService.mark_all_read_except_sender(db, conv.id, BUILDER_ID) == []

    async def test_mark_one_changes_state_once(self, db, conversation):
        conv = await _load(db, conversation)
        messages = await _insert_history(db, conv, 1)

        assert await messageService.mark_one_read(db, conv.id, messages[0].id, BUILDER_ID) is True
        assert await messageService.mark_one_read(db, conv.id, messages[0].id, BUILDER_ID) is False

        page = await messageService.list_page(db, conv)
        assert page.items[0].is_read is True
        assert page.items[0].read_at is not None

    async def test_sender_cannot_mark_own_message(self, db, conversation):
        conv = await _load(db, conversation)
        messages = await _insert_history(db, conv, 1)

        assert await messageService.mark_one_read(db, conv.id, messages[0].id, TRADIE_ID) is False

    async def test_message_from_other_chat_untouched(self, db, conversation):
        conv = await _load(db, conversation)
        messages = await _insert_history(db, conv, 1)
        other, _ = await conversationService.create_or_get_conversation(
            db, conv.project_id, OTHER_TRADIE_ID, BUILDER_ID,
        )

        assert await messageService.mark_one_read(db, other.id, messages[0].id, BUILDER_ID) is False


# ---------------------------------------------------------------------------
# Edit and delete
# ---------------------------------------------------------------------------


class TestEditAndDelete:

    async def test_sender_edits_text(self, db, conversation):
        conv = await _load(db, conversation)
        view = await messageService.append(db, conv, TRADIE_ID, "text", {"content": "Quote is $500"})

        msg = await messageService.edit(db, view.id, TRADIE_ID, " Quote is $550 ")
        assert msg.content == "Quote is $550"
        assert msg.is_edited is True
        assert msg.edited_at is not None

    async def test_other_participant_cannot_edit(self, db, conversation):
        conv = await _load(db, conversation)
        view = await messageService.append(db, conv, TRADIE_ID, "text", {"content": "Hi"})

        with pytest.raises(AccessDeniedError):
            await messageService.edit(db, view.id, BUILDER_ID, "Changed")

    async def test_document_cannot_be_edited(self, db, conversation):
        conv = await _load(db, conversation)
        view = await messageService.append(
            db, conv, TRADIE_ID, "document",
            {"document_url": "https://cdn.test/a.pdf", "document_name": "a.pdf", "document_size": 1},
        )
        with pytest.raises(AccessDeniedError) as exc_info:
            await messageService.edit(db, view.id, TRADIE_ID, "text now")
        assert exc_info.value.message == "Only text messages can be edited"

    async def test_edit_validates_content(self, db, conversation):
        conv = await _load(db, conversation)
        view = await messageService.append(db, conv, TRADIE_ID, "text", {"content": "Hi"})

        with pytest.raises(ValidationError):
            await messageService.edit(db, view.id, TRADIE_ID, "   ")

    async def test_deleted_message_cannot_be_edited_or_redeleted(self, db, conversation):
        conv = await _load(db, conversation)
        view = await messageService.append(db, conv, TRADIE_ID, "text", {"content": "Oops"})

        msg = await messageService.soft_delete(db, view.id, TRADIE_ID)
        assert msg.is_deleted is True
        assert msg.deleted_at is not None

        with pytest.raises(AccessDeniedError):
            await messageService.edit(db, view.id, TRADIE_ID, "Fixed")
        with pytest.raises(AccessDeniedError) as exc_info:
            await messageService.soft_delete(db, view.id, TRADIE_ID)
        assert exc_info.value.message == "Message has already been deleted"

    async def test_only_sender_can_delete(self, db, conversation):
        conv = await _load(db, conversation)
        view = await messageService.append(db, conv, TRADIE_ID, "text", {"content": "Mine"})

        with pytest.raises(AccessDeniedError) as exc_info:
            await messageService.soft_delete(db, view.id, BUILDER_ID)
        assert exc_info.value.message == "You can only delete your own messages"

    async def test_unknown_message(self, db, conversation):
        with pytest.raises(NotFoundError):
            await messageService.soft_delete(db, conversation.id, TRADIE_ID)
