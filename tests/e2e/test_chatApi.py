"""
E2E: REST chat flow.

Tests the full journey over HTTP: create a chat -> send messages -> list
chats and history -> mark read -> edit and delete -> close, plus the error
envelope for auth, access and validation failures.
"""

from __future__ import annotations

import uuid

import pytest
from httpx import AsyncClient

from tradiechat.models.chat import MAX_MESSAGE_LENGTH
from tradiechat.models.notification import NotificationType

from tests.conftest import (
    ADMIN_ID,
    BUILDER_ID,
    OTHER_TRADIE_ID,
    PROJECT_ID,
    PROJECT_TITLE,
    TRADIE_ID,
    auth_headers,
)
from tests.e2e.conftest import emitted


pytestmark = pytest.mark.asyncio

BASE = "/api/v1/chats"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def create_chat_via_api(
    client: AsyncClient,
    *,
    caller_id: uuid.UUID = TRADIE_ID,
    tradie_id: uuid.UUID = TRADIE_ID,
    builder_id: uuid.UUID = BUILDER_ID,
):
    """POST to /api/v1/chats/create and return the response."""
    return await client.post(
        f"{BASE}/create",
        json={
            "projectId": str(PROJECT_ID),
            "tradieId": str(tradie_id),
            "builderId": str(builder_id),
        },
        headers=auth_headers(caller_id),
    )


async def send_text(client: AsyncClient, chat_id: str, sender_id: uuid.UUID, content: str):
    return await client.post(
        f"{BASE}/{chat_id}/messages",
        json={"messageType": "text", "content": content},
        headers=auth_headers(sender_id),
    )


async def _chat_id(client: AsyncClient) -> str:
    resp = await create_chat_via_api(client)
    return resp.json()["data"]["id"]


# ---------------------------------------------------------------------------
# Authentication and envelope
# ---------------------------------------------------------------------------


class TestAuthentication:

    async def test_missing_token_is_401_envelope(self, client: AsyncClient):
        resp = await client.get(f"{BASE}/my-chats")
        assert resp.status_code == 401
        body = resp.json()
        assert body == {
            "status": False,
            "message": "No authentication token provided",
            "heading": "Chat",
            "data": None,
        }

    async def test_garbage_token_is_401(self, client: AsyncClient):
        resp = await client.get(f"{BASE}/my-chats", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.json()["message"] == "Invalid token"

    async def test_token_for_unknown_user_is_401(self, client: AsyncClient):
        resp = await client.get(f"{BASE}/my-chats", headers=auth_headers(uuid.uuid4()))
        assert resp.status_code == 401
        assert resp.json()["message"] == "User not found"


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreateChat:

    async def test_create_returns_201_and_pushes_both(self, client: AsyncClient, mock_dispatch):
        resp = await create_chat_via_api(client)

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] is True
        assert body["heading"] == "Chat"
        assert body["message"] == "Chat created successfully"
        data = body["data"]
        assert data["status"] == "active"
        assert data["unreadCount"] == 0
        assert data["otherParticipant"]["id"] == str(BUILDER_ID)
        assert data["project"]["title"] == PROJECT_TITLE

        recipients = {call.args[0].recipient_id for call in mock_dispatch.call_args_list}
        assert recipients == {TRADIE_ID, BUILDER_ID}
        assert all(
            call.args[0].type == NotificationType.CHAT_CREATED
            for call in mock_dispatch.call_args_list
        )

    async def test_second_create_returns_200_same_chat(self, client: AsyncClient, mock_dispatch):
        first = await create_chat_via_api(client)
        mock_dispatch.reset_mock()
        second = await create_chat_via_api(client, caller_id=BUILDER_ID)

        assert second.status_code == 200
        assert second.json()["message"] == "Chat already exists"
        assert second.json()["data"]["id"] == first.json()["data"]["id"]
        mock_dispatch.assert_not_called()

    async def test_outsider_cannot_create(self, client: AsyncClient):
        resp = await create_chat_via_api(client, caller_id=OTHER_TRADIE_ID)
        assert resp.status_code == 403
        assert resp.json()["status"] is False

    async def test_admin_can_create(self, client: AsyncClient):
        resp = await create_chat_via_api(client, caller_id=ADMIN_ID)
        assert resp.status_code == 201

    async def test_role_mismatch_is_422(self, client: AsyncClient):
        resp = await create_chat_via_api(
            client, caller_id=BUILDER_ID, tradie_id=BUILDER_ID, builder_id=TRADIE_ID,
        )
        assert resp.status_code == 422
        assert "tradie role" in resp.json()["message"]

    async def test_missing_field_is_422_with_field_name(self, client: AsyncClient):
        resp = await client.post(
            f"{BASE}/create",
            json={"projectId": str(PROJECT_ID), "tradieId": str(TRADIE_ID)},
            headers=auth_headers(TRADIE_ID),
        )
        assert resp.status_code == 422
        body = resp.json()
        assert body["message"].startswith("builderId")
        assert body["data"]["errors"]


# ---------------------------------------------------------------------------
# Messaging flow
# ---------------------------------------------------------------------------


class TestMessaging:

    async def test_send_message_broadcasts_and_pushes(
        self, client: AsyncClient, sio_emit, mock_dispatch,
    ):
        chat_id = await _chat_id(client)
        mock_dispatch.reset_mock()

        resp = await send_text(client, chat_id, TRADIE_ID, "Hello")

        assert resp.status_code == 201
        body = resp.json()
        assert body["message"] == "Message sent successfully"
        assert body["data"]["content"] == "Hello"
        assert body["data"]["chatId"] == chat_id
        assert body["data"]["receiver"]["id"] == str(BUILDER_ID)

        broadcasts = emitted(sio_emit, "new_message")
        assert len(broadcasts) == 1
        data, kwargs = broadcasts[0]
        assert kwargs["room"] == f"chat_{chat_id}"
        assert data["id"] == body["data"]["id"]

        request = mock_dispatch.call_args.args[0]
        assert request.type == NotificationType.MESSAGE_SENT
        assert request.recipient_id == BUILDER_ID
        assert request.meta == {"senderName": "Tom Tradie"}

    async def test_unread_flow(self, client: AsyncClient):
        chat_id = await _chat_id(client)
        await send_text(client, chat_id, TRADIE_ID, "Hello")
        await send_text(client, chat_id, TRADIE_ID, "Are you there?")

        listing = await client.get(f"{BASE}/my-chats", headers=auth_headers(BUILDER_ID))
        item = listing.json()["data"]["items"][0]
        assert item["unreadCount"] == 2
        assert item["lastMessage"] == "Are you there?"

        read = await client.patch(f"{BASE}/{chat_id}/messages/read", headers=auth_headers(BUILDER_ID))
        assert read.status_code == 200
        assert read.json()["message"] == "Messages marked as read (2 updated)"
        assert read.json()["data"]["count"] == 2

        listing = await client.get(f"{BASE}/my-chats", headers=auth_headers(BUILDER_ID))
        assert listing.json()["data"]["items"][0]["unreadCount"] == 0

        again = await client.patch(f"{BASE}/{chat_id}/messages/read", headers=auth_headers(BUILDER_ID))
        assert again.json()["data"]["messageIds"] == []

    async def test_history_is_oldest_first(self, client: AsyncClient):
        chat_id = await _chat_id(client)
        for text in ("one", "two", "three"):
            await send_text(client, chat_id, TRADIE_ID, text)

        resp = await client.get(
            f"{BASE}/{chat_id}/messages", params={"limit": 2}, headers=auth_headers(BUILDER_ID),
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert [m["content"] for m in data["items"]] == ["two", "three"]
        assert data["meta"]["totalItems"] == 3
        assert data["meta"]["hasMore"] is True

    async def test_outsider_gets_404(self, client: AsyncClient):
        chat_id = await _chat_id(client)

        for resp in (
            await client.get(f"{BASE}/{chat_id}", headers=auth_headers(OTHER_TRADIE_ID)),
            await client.get(f"{BASE}/{chat_id}/messages", headers=auth_headers(OTHER_TRADIE_ID)),
            await send_text(client, chat_id, OTHER_TRADIE_ID, "Let me in"),
        ):
            assert resp.status_code == 404
            assert resp.json()["message"] == "Chat not found"

    async def test_oversize_text_rejected_and_not_stored(self, client: AsyncClient):
        chat_id = await _chat_id(client)
        resp = await send_text(client, chat_id, TRADIE_ID, "x" * (MAX_MESSAGE_LENGTH + 1))
        assert resp.status_code == 422

        history = await client.get(f"{BASE}/{chat_id}/messages", headers=auth_headers(TRADIE_ID))
        assert history.json()["data"]["items"] == []

    async def test_document_without_size_rejected(self, client: AsyncClient):
        chat_id = await _chat_id(client)
        resp = await client.post(
            f"{BASE}/{chat_id}/messages",
            json={
                "messageType": "document",
                "documentUrl": "https://cdn.test/quote.pdf",
                "documentName": "quote.pdf",
            },
            headers=auth_headers(BUILDER_ID),
        )
        assert resp.status_code == 422
        assert resp.json()["message"] == "documentSize is required for document messages"

    async def test_edit_and_delete(self, client: AsyncClient, sio_emit):
        chat_id = await _chat_id(client)
        sent = await send_text(client, chat_id, TRADIE_ID, "Quote: $500")
        message_id = sent.json()["data"]["id"]

        denied = await client.patch(
            f"{BASE}/messages/{message_id}/edit",
            json={"content": "Quote: $5"},
            headers=auth_headers(BUILDER_ID),
        )
        assert denied.status_code == 403

        edited = await client.patch(
            f"{BASE}/messages/{message_id}/edit",
            json={"content": "Quote: $550"},
            headers=auth_headers(TRADIE_ID),
        )
        assert edited.status_code == 200
        assert edited.json()["data"]["content"] == "Quote: $550"
        assert edited.json()["data"]["isEdited"] is True
        assert len(emitted(sio_emit, "message_edited")) == 1

        deleted = await client.delete(f"{BASE}/messages/{message_id}", headers=auth_headers(TRADIE_ID))
        assert deleted.status_code == 200
        assert deleted.json()["data"]["messageId"] == message_id
        assert len(emitted(sio_emit, "message_deleted")) == 1

        history = await client.get(f"{BASE}/{chat_id}/messages", headers=auth_headers(BUILDER_ID))
        assert history.json()["data"]["items"] == []

    async def test_rest_broadcast_can_be_disabled(self, client: AsyncClient, sio_emit, monkeypatch):
        from tradiechat.core.config import settings

        monkeypatch.setattr(settings, "rest_broadcast_enabled", False)
        chat_id = await _chat_id(client)
        resp = await send_text(client, chat_id, TRADIE_ID, "Quiet")

        assert resp.status_code == 201
        sio_emit.assert_not_awaited()


# ---------------------------------------------------------------------------
# Status, listings and totals
# ---------------------------------------------------------------------------


class TestChatManagement:

    async def test_close_hides_from_default_listing(self, client: AsyncClient):
        chat_id = await _chat_id(client)

        resp = await client.patch(
            f"{BASE}/{chat_id}/status", json={"status": "closed"}, headers=auth_headers(BUILDER_ID),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "closed"

        active = await client.get(f"{BASE}/my-chats", headers=auth_headers(TRADIE_ID))
        assert active.json()["data"]["items"] == []

        everything = await client.get(
            f"{BASE}/my-chats", params={"status": "all"}, headers=auth_headers(TRADIE_ID),
        )
        assert [c["id"] for c in everything.json()["data"]["items"]] == [chat_id]

    async def test_invalid_status_filter_is_422(self, client: AsyncClient):
        resp = await client.get(
            f"{BASE}/my-chats", params={"status": "deleted"}, headers=auth_headers(TRADIE_ID),
        )
        assert resp.status_code == 422

    async def test_project_chats_for_owner(self, client: AsyncClient):
        chat_id = await _chat_id(client)
        resp = await client.get(f"{BASE}/project/{PROJECT_ID}/chats", headers=auth_headers(BUILDER_ID))

        assert resp.status_code == 200
        assert [c["id"] for c in resp.json()["data"]["items"]] == [chat_id]
        assert resp.json()["data"]["meta"]["totalItems"] == 1

    async def test_project_chats_hidden_from_outsider(self, client: AsyncClient):
        await _chat_id(client)
        resp = await client.get(
            f"{BASE}/project/{PROJECT_ID}/chats", headers=auth_headers(OTHER_TRADIE_ID),
        )
        assert resp.json()["data"]["items"] == []

    async def test_project_chats_by_query(self, client: AsyncClient):
        chat_id = await _chat_id(client)
        await create_chat_via_api(client, caller_id=BUILDER_ID, tradie_id=OTHER_TRADIE_ID)

        everything = await client.get(
            f"{BASE}/project-chats",
            params={"projectId": str(PROJECT_ID)},
            headers=auth_headers(BUILDER_ID),
        )
        assert everything.status_code == 200
        assert everything.json()["message"] == "Project chat list by query success"
        assert everything.json()["data"]["meta"]["totalItems"] == 2

        narrowed = await client.get(
            f"{BASE}/project-chats",
            params={"projectId": str(PROJECT_ID), "tradieId": str(TRADIE_ID)},
            headers=auth_headers(BUILDER_ID),
        )
        assert [c["id"] for c in narrowed.json()["data"]["items"]] == [chat_id]

    async def test_project_chats_by_query_scoped_to_caller(self, client: AsyncClient):
        await _chat_id(client)
        resp = await client.get(
            f"{BASE}/project-chats",
            params={"projectId": str(PROJECT_ID), "tradieId": str(TRADIE_ID)},
            headers=auth_headers(OTHER_TRADIE_ID),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["items"] == []

    async def test_project_chats_by_query_requires_project(self, client: AsyncClient):
        resp = await client.get(f"{BASE}/project-chats", headers=auth_headers(BUILDER_ID))
        assert resp.status_code == 422
        assert resp.json()["status"] is False

    async def test_stats_overview(self, client: AsyncClient):
        chat_id = await _chat_id(client)
        await send_text(client, chat_id, TRADIE_ID, "Hi")

        resp = await client.get(f"{BASE}/stats/overview", headers=auth_headers(BUILDER_ID))
        assert resp.status_code == 200
        assert resp.json()["data"] == {
            "totalChats": 1,
            "activeChats": 1,
            "totalUnreadMessages": 1,
        }

    async def test_get_chat_detail(self, client: AsyncClient):
        chat_id = await _chat_id(client)
        resp = await client.get(f"{BASE}/{chat_id}", headers=auth_headers(BUILDER_ID))

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["id"] == chat_id
        assert data["otherParticipant"]["fullName"] == "Tom Tradie"
        assert data["tradie"]["companyName"] == "Sparks Electrical"
