from fastapi import (
    APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Query, Response, UploadFile,
    WebSocket, WebSocketDisconnect, status,
)
from fastapi.responses import RedirectResponse, StreamingResponse
from typing import List, Optional
import base64
import binascii
import json
import logging

import crud
from auth import get_current_user_id
from config import API_PREFIX
from database import SessionLocal
from dependencies import get_chat_service, get_current_user, get_dispatcher
from models import User
from notifications import NotificationDispatcher, run_outbox_entry
from realtime import CONVERSATION_READ, STOP_TYPING, TYPING, conversation_room
from schemas import (
    AddMembersRequest, ConversationResponse, MessagePage, MessageResponse, ReactionListResponse,
    ReactionRequest, ReadReceiptResponse, SendMessageRequest, StatusMessage, UserBrief,
)
from service import ChatService, advance_last_read_quietly
from storage import StoredObject
from text_utils import content_disposition

logger = logging.getLogger(__name__)

router = APIRouter(prefix=API_PREFIX, tags=["chat"])

ATTACHMENT_MAX_AGE = 31536000
AVATAR_MAX_AGE = 86400


def stream_object(stored: StoredObject, filename: str, max_age: int) -> StreamingResponse:
    headers = {
        "Content-Disposition": content_disposition(filename, stored.content_type),
        "Cache-Control": f"public, max-age={max_age}",
        "Access-Control-Allow-Origin": "*",
    }
    if stored.size is not None:
        headers["Content-Length"] = str(stored.size)
    return StreamingResponse(stored.chunks, media_type=stored.content_type, headers=headers)


def schedule_notification(background_tasks: BackgroundTasks, outbox_id: Optional[int],
                          dispatcher: NotificationDispatcher):
    if outbox_id:
        background_tasks.add_task(run_outbox_entry, outbox_id, dispatcher)


# ---- conversations ---------------------------------------------------------

@router.get("/conversations", response_model=List[ConversationResponse])
def list_conversations(
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return service.list_conversations(current_user)


@router.post("/conversations", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    response: Response,
    conversation_type: str = Form("PRIVATE", alias="type"),
    member_ids: Optional[List[int]] = Form(None),
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    avatar: Optional[UploadFile] = File(None),
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    conversation, created = await service.create_conversation(
        current_user, conversation_type, member_ids, name, description, avatar
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return conversation


@router.get("/conversations/search", response_model=List[ConversationResponse])
def search_conversations(
    q: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return service.search_conversations(current_user, q)


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
def get_conversation(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return service.get_conversation(current_user, conversation_id)


@router.put("/conversations/{conversation_id}", response_model=ConversationResponse)
async def update_conversation(
    conversation_id: int,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    avatar: Optional[UploadFile] = File(None),
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return await service.update_conversation(current_user, conversation_id, name, description, avatar)


@router.post("/conversations/{conversation_id}/members", response_model=ConversationResponse)
async def add_members(
    conversation_id: int,
    request: AddMembersRequest,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return await service.add_members(current_user, conversation_id, request.member_ids)


@router.post("/conversations/{conversation_id}/read", response_model=ReadReceiptResponse)
async def mark_as_read(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return await service.mark_as_read(current_user, conversation_id)


@router.post("/conversations/{conversation_id}/leave", response_model=StatusMessage)
async def leave_conversation(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return await service.leave_conversation(current_user, conversation_id)


@router.delete("/conversations/{conversation_id}", response_model=StatusMessage)
async def delete_conversation(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return await service.delete_conversation(current_user, conversation_id)


# ---- messages --------------------------------------------------------------

@router.get("/conversations/{conversation_id}/messages", response_model=MessagePage)
def get_messages(
    conversation_id: int,
    background_tasks: BackgroundTasks,
    cursor: Optional[int] = None,
    limit: int = Query(50, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    page = service.get_messages(current_user, conversation_id, cursor, limit)
    background_tasks.add_task(advance_last_read_quietly, conversation_id, current_user.id)
    return page


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def send_message(
    conversation_id: int,
    request: SendMessageRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    message, outbox_id = await service.send_message(current_user, conversation_id, request)
    schedule_notification(background_tasks, outbox_id, dispatcher)
    return message


@router.post(
    "/conversations/{conversation_id}/messages/file",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def send_file_message(
    conversation_id: int,
    background_tasks: BackgroundTasks,
    file: Optional[UploadFile] = File(None),
    content: Optional[str] = Form(None),
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    message, outbox_id = await service.send_file_message(current_user, conversation_id, file, content)
    schedule_notification(background_tasks, outbox_id, dispatcher)
    return message


@router.post(
    "/conversations/{conversation_id}/messages/voice",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def send_voice_message(
    conversation_id: int,
    background_tasks: BackgroundTasks,
    audio: Optional[UploadFile] = File(None),
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    message, outbox_id = await service.send_voice_message(current_user, conversation_id, audio)
    schedule_notification(background_tasks, outbox_id, dispatcher)
    return message


@router.delete("/messages/{message_id}", response_model=StatusMessage)
async def delete_message(
    message_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return await service.delete_message(current_user, message_id)


@router.post("/messages/{message_id}/reactions", response_model=ReactionListResponse)
async def add_reaction(
    message_id: int,
    request: ReactionRequest,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return await service.add_reaction(current_user, message_id, request.emoji)


@router.delete("/messages/{message_id}/reactions/{emoji}", response_model=ReactionListResponse)
async def remove_reaction(
    message_id: int,
    emoji: str,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return await service.remove_reaction(current_user, message_id, emoji)


# ---- users -----------------------------------------------------------------

@router.get("/users/search", response_model=List[UserBrief])
def search_users(
    q: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    return service.search_users(current_user, q)


# ---- public file serving ---------------------------------------------------

@router.get("/conversations/{conversation_id}/messages/{message_id}/file")
def serve_message_attachment(
    conversation_id: int,
    message_id: int,
    service: ChatService = Depends(get_chat_service)
):
    stored, filename = service.open_message_attachment(conversation_id, message_id)
    return stream_object(stored, filename, ATTACHMENT_MAX_AGE)


@router.get("/conversations/{conversation_id}/avatar")
def serve_conversation_avatar(
    conversation_id: int,
    service: ChatService = Depends(get_chat_service)
):
    stored, filename = service.open_conversation_avatar(conversation_id)
    return stream_object(stored, filename, AVATAR_MAX_AGE)


@router.get("/users/{user_id}/avatar")
def serve_user_avatar(
    user_id: int,
    service: ChatService = Depends(get_chat_service)
):
    avatar = service.get_user_avatar(user_id)
    if avatar.startswith("data:"):
        header, _, encoded = avatar.partition(",")
        media_type = header[5:].split(";")[0] or "application/octet-stream"
        try:
            content = base64.b64decode(encoded)
        except (binascii.Error, ValueError):
            logger.warning("User %s has an undecodable inline avatar", user_id)
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Avatar not found")
        return Response(
            content=content,
            media_type=media_type,
            headers={"Cache-Control": f"public, max-age={AVATAR_MAX_AGE}", "Access-Control-Allow-Origin": "*"}
        )
    if avatar.startswith(("http://", "https://")):
        return RedirectResponse(avatar)
    stored, filename = service.open_object(avatar, f" for user {user_id}")
    return stream_object(stored, filename, AVATAR_MAX_AGE)


# ---- websocket -------------------------------------------------------------

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    token = websocket.query_params.get("token")
    db = SessionLocal()
    try:
        try:
            user = crud.get_user(db, get_current_user_id(token))
        except HTTPException:
            user = None
        if not user:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        user_id, user_name = user.id, user.name
    finally:
        db.close()

    manager = websocket.app.state.connection_manager
    broadcaster = websocket.app.state.broadcaster
    await manager.connect(websocket, user_id)
    try:
        while True:
            try:
                data = json.loads(await websocket.receive_text())
                action = data.get("action")
                conversation_id = int(data.get("conversation_id") or 0)
            except (ValueError, TypeError, AttributeError):
                await websocket.send_json({"event": "error", "data": {"message": "Invalid payload"}})
                continue

            if action == "ping":
                await websocket.send_json({"event": "pong", "data": {}})
                continue
            if not conversation_id:
                await websocket.send_json({"event": "error", "data": {"message": "conversation_id is required"}})
                continue

            db = SessionLocal()
            try:
                is_member = crud.get_membership(db, conversation_id, user_id) is not None
                if action == "mark_read" and is_member:
                    membership = crud.advance_last_read(db, conversation_id, user_id)
                    last_read = membership.last_read
            finally:
                db.close()

            room = conversation_room(conversation_id)
            if action == "leave_conversation":
                manager.leave(websocket, room)
            elif not is_member:
                await websocket.send_json({"event": "error", "data": {"message": "Access denied"}})
            elif action == "join_conversation":
                manager.join(websocket, room)
            elif action in ("typing", "stop_typing"):
                await broadcaster.emit(room, TYPING if action == "typing" else STOP_TYPING, {
                    "conversation_id": conversation_id,
                    "user_id": user_id,
                    "user_name": user_name,
                })
            elif action == "mark_read":
                await broadcaster.emit(room, CONVERSATION_READ, {
                    "conversation_id": conversation_id,
                    "user_id": user_id,
                    "last_read": last_read.isoformat(),
                })
            else:
                await websocket.send_json({"event": "error", "data": {"message": "Unknown action"}})
    except WebSocketDisconnect:
        logger.debug("User %s disconnected", user_id)
    finally:
        manager.disconnect(websocket)
