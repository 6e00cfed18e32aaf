"""
Chat API Routes
===============

REST facade over the conversation and message stores.  These complement
the WebSocket handlers in ``tradiechat/realtime/handlers/chatHandler.py``;
writes made here are also pushed to connected clients (best-effort, see
``settings.rest_broadcast_enabled``).

Routes:
  POST   /api/v1/chats/create                       -- Create or fetch a chat
  GET    /api/v1/chats/my-chats                     -- Caller's chats (paginated)
  GET    /api/v1/chats/project/{project_id}/chats   -- A project's chats
  GET    /api/v1/chats/stats/overview               -- Chat totals
  GET    /api/v1/chats/{chat_id}                    -- Chat detail
  PATCH  /api/v1/chats/{chat_id}/status             -- Close / archive / reopen
  POST   /api/v1/chats/{chat_id}/messages           -- Send a message
  GET    /api/v1/chats/{chat_id}/messages           -- History (paginated)
  PATCH  /api/v1/chats/{chat_id}/messages/read      -- Mark all as read
  PATCH  /api/v1/chats/messages/{message_id}/edit   -- Edit a text message
  DELETE /api/v1/chats/messages/{message_id}        -- Soft-delete a message

All endpoints require a valid Bearer token.  Chat-scoped endpoints answer
404 both when the chat does not exist and when the caller is not one of its
participants.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Response, status

from tradiechat.api.deps import CurrentUser, DBSession, PageParams
from tradiechat.api.schemas.chat import (
    ChatStatsOut,
    ConversationListData,
    ConversationOut,
    CreateChatRequest,
    DeletedMessageData,
    EditMessageRequest,
    Envelope,
    MarkReadData,
    MessageListData,
    MessageOut,
    PaginationMeta,
    SendMessageRequest,
    UpdateChatStatusRequest,
    serialize,
)
from tradiechat.core.config import settings
from tradiechat.core.exceptions import AccessDeniedError, ChatError
from tradiechat.models.base import utcnow
from tradiechat.models.notification import NotificationType
from tradiechat.models.user import UserRole
from tradiechat.realtime import events
from tradiechat.services import conversationService, messageService, notificationService
from tradiechat.services.notificationService import NotifyRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["Chat"])

# ``status`` query value that disables the status filter.
ALL_STATUSES = "all"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _http_error(exc: ChatError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _status_filter(value: Optional[str]) -> Optional[str]:
    if value is None or value.lower() == ALL_STATUSES:
        return None
    return value


def _list_data(result: Any, schema: type) -> dict[str, Any]:
    return {
        "items": [schema.model_validate(item) for item in result.items],
        "meta": PaginationMeta(
            page=result.page,
            page_size=result.page_size,
            total_items=result.total_items,
            total_pages=result.total_pages,
            has_more=getattr(result, "has_more", result.page < result.total_pages),
        ),
    }


async def _broadcast(
    chat_id: uuid.UUID,
    event: str,
    data: Any,
    *,
    skip_user_id: Optional[uuid.UUID] = None,
) -> None:
    """Best-effort WebSocket broadcast of a REST write.

    The REST response is the source of truth; a failed broadcast is logged
    and the request still succeeds.
    """
    if not settings.rest_broadcast_enabled:
        return
    try:
        from tradiechat.realtime.socketServer import broadcast_to_chat, get_user_sids

        skip = list(get_user_sids(skip_user_id)) if skip_user_id else None
        await broadcast_to_chat(chat_id, event, data, skip_sid=skip or None)
    except Exception:
        logger.warning(
            "Failed to broadcast %s via WebSocket for chat=%s",
            event, chat_id, exc_info=True,
        )


# ---------------------------------------------------------------------------
# POST /api/v1/chats/create -- Create or fetch a chat
# ---------------------------------------------------------------------------

@router.post(
    "/create",
    response_model=Envelope[ConversationOut],
    status_code=status.HTTP_201_CREATED,
    summary="Create a chat for a project",
    description=(
        "Returns the chat between the tradie and the builder on the project, "
        "creating it if needed.  Responds 201 when a chat was created and 200 "
        "when it already existed.  The caller must be one of the two users."
    ),
)
async def create_chat(
    db: DBSession,
    current_user: CurrentUser,
    body: CreateChatRequest,
    response: Response,
) -> Envelope[ConversationOut]:
    if current_user.role != UserRole.ADMIN and current_user.id not in (body.tradie_id, body.builder_id):
        raise _http_error(AccessDeniedError("You can only create chats you take part in"))

    try:
        conversation, created = await conversationService.create_or_get_conversation(
            db,
            project_id=body.project_id,
            tradie_id=body.tradie_id,
            builder_id=body.builder_id,
        )
        await db.commit()
        view = await conversationService.build_conversation_view(db, conversation, current_user.id)
    except ChatError as exc:
        raise _http_error(exc)

    if not created:
        response.status_code = status.HTTP_200_OK
        return Envelope(message="Chat already exists", data=ConversationOut.model_validate(view))

    project_title = view.project.title if view.project else None
    for recipient_id in (conversation.tradie_id, conversation.builder_id):
        notificationService.dispatch(
            NotifyRequest(
                type=NotificationType.CHAT_CREATED,
                recipient_id=recipient_id,
                sender_id=current_user.id,
                project_id=conversation.project_id,
                chat_id=conversation.id,
                meta={"projectTitle": project_title},
            )
        )

    return Envelope(message="Chat created successfully", data=ConversationOut.model_validate(view))


# ---------------------------------------------------------------------------
# GET /api/v1/chats/my-chats -- Caller's chats
# ---------------------------------------------------------------------------

@router.get(
    "/my-chats",
    response_model=Envelope[ConversationListData],
    summary="List the caller's chats",
    description=(
        "Chats the caller takes part in, most recently active first.  "
        "``status`` defaults to ``active``; pass ``all`` to disable the filter."
    ),
)
async def get_my_chats(
    db: DBSession,
    current_user: CurrentUser,
    paging: PageParams,
    chat_status: Optional[str] = Query(default="active", alias="status"),
    project_id: Optional[uuid.UUID] = Query(default=None, alias="projectId"),
) -> Envelope[ConversationListData]:
    try:
        result = await conversationService.list_for_user(
            db,
            current_user.id,
            status=_status_filter(chat_status),
            project_id=project_id,
            page=paging.page,
            page_size=paging.size(settings.default_page_size),
        )
    except ChatError as exc:
        raise _http_error(exc)

    return Envelope(
        message="Chats retrieved successfully",
        data=ConversationListData(**_list_data(result, ConversationOut)),
    )


# ---------------------------------------------------------------------------
# GET /api/v1/chats/project/{project_id}/chats -- A project's chats
# ---------------------------------------------------------------------------

@router.get(
    "/project/{project_id}/chats",
    response_model=Envelope[ConversationListData],
    summary="List the chats on a project",
    description=(
        "The project owner sees every chat on the project; other callers "
        "see only the chats they take part in."
    ),
)
async def get_project_chats(
    db: DBSession,
    current_user: CurrentUser,
    project_id: uuid.UUID,
    paging: PageParams,
    chat_status: Optional[str] = Query(default="active", alias="status"),
) -> Envelope[ConversationListData]:
    try:
        result = await conversationService.list_for_project(
            db,
            project_id,
            current_user.id,
            status=_status_filter(chat_status),
            page=paging.page,
            page_size=paging.size(settings.default_page_size),
        )
    except ChatError as exc:
        raise _http_error(exc)

    return Envelope(
        message="Project chats retrieved successfully",
        data=ConversationListData(**_list_data(result, ConversationOut)),
    )


# ---------------------------------------------------------------------------
# GET /api/v1/chats/project-chats -- A project's chats by query
# ---------------------------------------------------------------------------

@router.get(
    "/project-chats",
    response_model=Envelope[ConversationListData],
    summary="Find a project's chats by participant",
    description=(
        "Chats on ``projectId``, optionally narrowed to a tradie and/or a "
        "builder.  Visibility follows the project listing.  Without "
        "``status`` every status is returned."
    ),
)
async def get_project_chats_by_query(
    db: DBSession,
    current_user: CurrentUser,
    paging: PageParams,
    project_id: uuid.UUID = Query(alias="projectId"),
    tradie_id: Optional[uuid.UUID] = Query(default=None, alias="tradieId"),
    builder_id: Optional[uuid.UUID] = Query(default=None, alias="builderId"),
    chat_status: Optional[str] = Query(default=None, alias="status"),
) -> Envelope[ConversationListData]:
    try:
        result = await conversationService.list_for_project(
            db,
            project_id,
            current_user.id,
            status=_status_filter(chat_status),
            tradie_id=tradie_id,
            builder_id=builder_id,
            page=paging.page,
            page_size=paging.size(settings.default_page_size),
        )
    except ChatError as exc:
        raise _http_error(exc)

    return Envelope(
        message="Project chat list by query success",
        data=ConversationListData(**_list_data(result, ConversationOut)),
    )


# ---------------------------------------------------------------------------
# GET /api/v1/chats/stats/overview -- Chat totals
# ---------------------------------------------------------------------------

@router.get(
    "/stats/overview",
    response_model=Envelope[ChatStatsOut],
    summary="Chat totals for the caller",
)
async def get_chat_stats(
    db: DBSession,
    current_user: CurrentUser,
) -> Envelope[ChatStatsOut]:
    stats = await conversationService.get_stats(db, current_user.id)
    return Envelope(
        message="Chat stats retrieved successfully",
        data=ChatStatsOut.model_validate(stats),
    )


# ---------------------------------------------------------------------------
# PATCH /api/v1/chats/messages/{message_id}/edit -- Edit a message
# ---------------------------------------------------------------------------

@router.patch(
    "/messages/{message_id}/edit",
    response_model=Envelope[MessageOut],
    summary="Edit a text message",
    description="Only the sender can edit, only text messages, never deleted ones.",
)
async def edit_message(
    db: DBSession,
    current_user: CurrentUser,
    message_id: uuid.UUID,
    body: EditMessageRequest,
) -> Envelope[MessageOut]:
    try:
        msg = await messageService.edit(db, message_id, current_user.id, body.content)
        view = await messageService.build_message_view(db, msg)
        await db.commit()
    except ChatError as exc:
        raise _http_error(exc)

    await _broadcast(view.chat_id, events.MESSAGE_EDITED, serialize(MessageOut, view))
    return Envelope(message="Message edited successfully", data=MessageOut.model_validate(view))


# ---------------------------------------------------------------------------
# DELETE /api/v1/chats/messages/{message_id} -- Delete a message
# ---------------------------------------------------------------------------

@router.delete(
    "/messages/{message_id}",
    response_model=Envelope[DeletedMessageData],
    summary="Delete a message",
    description="Soft delete: the message disappears from history and unread counts.",
)
async def delete_message(
    db: DBSession,
    current_user: CurrentUser,
    message_id: uuid.UUID,
) -> Envelope[DeletedMessageData]:
    try:
        msg = await messageService.soft_delete(db, message_id, current_user.id)
        if not msg.is_read:
            await conversationService.retract_unread(db, msg.conversation_id, msg.sender_id)
        await db.commit()
    except ChatError as exc:
        raise _http_error(exc)

    data = DeletedMessageData(
        chat_id=msg.conversation_id,
        message_id=msg.id,
        deleted_at=msg.deleted_at,
    )
    await _broadcast(
        msg.conversation_id,
        events.MESSAGE_DELETED,
        data.model_dump(mode="json", by_alias=True),
    )
    return Envelope(message="Message deleted successfully", data=data)


# ---------------------------------------------------------------------------
# GET /api/v1/chats/{chat_id} -- Chat detail
# ---------------------------------------------------------------------------

@router.get(
    "/{chat_id}",
    response_model=Envelope[ConversationOut],
    summary="Get a chat",
)
async def get_chat(
    db: DBSession,
    current_user: CurrentUser,
    chat_id: uuid.UUID,
) -> Envelope[ConversationOut]:
    try:
        conversation = await conversationService.get_for_participant(db, chat_id, current_user.id)
    except ChatError as exc:
        raise _http_error(exc)

    view = await conversationService.build_conversation_view(db, conversation, current_user.id)
    return Envelope(message="Chat retrieved successfully", data=ConversationOut.model_validate(view))


# ---------------------------------------------------------------------------
# PATCH /api/v1/chats/{chat_id}/status -- Change chat status
# ---------------------------------------------------------------------------

@router.patch(
    "/{chat_id}/status",
    response_model=Envelope[ConversationOut],
    summary="Close, archive or reopen a chat",
)
async def update_chat_status(
    db: DBSession,
    current_user: CurrentUser,
    chat_id: uuid.UUID,
    body: UpdateChatStatusRequest,
) -> Envelope[ConversationOut]:
    try:
        conversation = await conversationService.set_status(db, chat_id, current_user.id, body.status)
        await db.commit()
    except ChatError as exc:
        raise _http_error(exc)

    view = await conversationService.build_conversation_view(db, conversation, current_user.id)
    return Envelope(message="Chat status updated successfully", data=ConversationOut.model_validate(view))


# ---------------------------------------------------------------------------
# POST /api/v1/chats/{chat_id}/messages -- Send a message
# ---------------------------------------------------------------------------

@router.post(
    "/{chat_id}/messages",
    response_model=Envelope[MessageOut],
    status_code=status.HTTP_201_CREATED,
    summary="Send a message",
    description=(
        "Persists a message and updates the chat summary and the other "
        "participant's unread counter.  The message is also broadcast to the "
        "chat room and pushed to the other participant."
    ),
)
async def send_message(
    db: DBSession,
    current_user: CurrentUser,
    chat_id: uuid.UUID,
    body: SendMessageRequest,
) -> Envelope[MessageOut]:
    try:
        conversation = await conversationService.get_for_participant(db, chat_id, current_user.id)
        view = await messageService.append(
            db, conversation, current_user.id, body.message_type, body.payload(),
        )
        await conversationService.record_outgoing_message(
            db,
            conversation.id,
            current_user.id,
            conversationService.build_summary(view.message_type, view.content),
            sent_at=view.created_at,
        )
        await db.commit()
    except ChatError as exc:
        raise _http_error(exc)

    await _broadcast(chat_id, events.NEW_MESSAGE, serialize(MessageOut, view))

    notificationService.dispatch(
        NotifyRequest(
            type=NotificationType.MESSAGE_SENT,
            recipient_id=conversationService.other_participant_id(conversation, current_user.id),
            sender_id=current_user.id,
            project_id=conversation.project_id,
            chat_id=chat_id,
            meta={"senderName": current_user.full_name},
        )
    )

    return Envelope(message="Message sent successfully", data=MessageOut.model_validate(view))


# ---------------------------------------------------------------------------
# GET /api/v1/chats/{chat_id}/messages -- Chat history
# ---------------------------------------------------------------------------

@router.get(
    "/{chat_id}/messages",
    response_model=Envelope[MessageListData],
    summary="Get chat history",
    description=(
        "Page 1 holds the newest messages; each page is ordered oldest first.  "
        "Pass ``before`` (the time of the first fetch) to keep page boundaries "
        "stable while new messages arrive."
    ),
)
async def get_chat_messages(
    db: DBSession,
    current_user: CurrentUser,
    chat_id: uuid.UUID,
    paging: PageParams,
    before: Optional[datetime] = Query(
        default=None,
        description="Only return messages created before this ISO timestamp",
    ),
) -> Envelope[MessageListData]:
    try:
        conversation = await conversationService.get_for_participant(db, chat_id, current_user.id)
        result = await messageService.list_page(
            db,
            conversation,
            page=paging.page,
            page_size=paging.size(settings.default_message_page_size),
            before=before,
        )
    except ChatError as exc:
        raise _http_error(exc)

    return Envelope(
        message="Messages retrieved successfully",
        data=MessageListData(**_list_data(result, MessageOut)),
    )


# ---------------------------------------------------------------------------
# PATCH /api/v1/chats/{chat_id}/messages/read -- Mark all as read
# ---------------------------------------------------------------------------

@router.patch(
    "/{chat_id}/messages/read",
    response_model=Envelope[MarkReadData],
    summary="Mark all messages as read",
    description=(
        "Marks every unread message from the other participant as read and "
        "takes them off the caller's unread counter."
    ),
)
async def mark_messages_read(
    db: DBSession,
    current_user: CurrentUser,
    chat_id: uuid.UUID,
) -> Envelope[MarkReadData]:
    read_at = utcnow()
    try:
        await conversationService.get_for_participant(db, chat_id, current_user.id)
        message_ids = await messageService.mark_all_read_except_sender(
            db, chat_id, current_user.id, read_at=read_at,
        )
        await conversationService.consume_unread(db, chat_id, current_user.id, len(message_ids))
        await db.commit()
    except ChatError as exc:
        raise _http_error(exc)

    data = MarkReadData(
        chat_id=chat_id,
        message_ids=message_ids,
        count=len(message_ids),
        read_at=read_at,
    )
    await _broadcast(
        chat_id,
        events.MESSAGES_READ,
        {
            "chatId": str(chat_id),
            "messageIds": [str(message_id) for message_id in message_ids],
            "readByUserId": str(current_user.id),
            "readAt": read_at.isoformat(),
            "timestamp": read_at.isoformat(),
        },
        skip_user_id=current_user.id,
    )
    return Envelope(message=f"Messages marked as read ({len(message_ids)} updated)", data=data)
