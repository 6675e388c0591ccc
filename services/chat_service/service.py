"""Conversation and message workflows.

Every operation follows the same shape: check membership or role, mutate the
relational store, then emit a room event carrying the full changed entity.
The broadcaster and object store are handed in by the caller.
"""
import logging
import mimetypes
from typing import List, Optional, Tuple

from fastapi import HTTPException, UploadFile, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import crud
from config import API_PREFIX
from database import SessionLocal
from models import ChatMessage, ChatMessageReaction, Conversation, ConversationType, MessageType, User
from realtime import (
    Broadcaster, conversation_room, user_room,
    NEW_CONVERSATION, CONVERSATION_UPDATED, CONVERSATION_DELETED, CONVERSATION_READ,
    NEW_MESSAGE, MESSAGE_DELETED, REACTION_ADDED, REACTION_REMOVED,
)
from schemas import (
    ConversationResponse, MemberResponse, MessagePage, MessageResponse, ReactionListResponse,
    ReactionResponse, ReadReceiptResponse, SendMessageRequest, StatusMessage, UserBrief,
)
from storage import ObjectNotFound, ObjectStore, StoredObject
from text_utils import (
    attachment_object_name, classify_message_type, display_filename, normalize_filename,
    unique_object_name,
)

logger = logging.getLogger(__name__)


def user_avatar_url(user: Optional[User]) -> Optional[str]:
    if not user or not user.avatar:
        return None
    return f"{API_PREFIX}/users/{user.id}/avatar"


def conversation_avatar_url(conversation: Conversation) -> Optional[str]:
    if not conversation.avatar:
        return None
    return f"{API_PREFIX}/conversations/{conversation.id}/avatar"


def message_attachment_url(message: ChatMessage) -> Optional[str]:
    """Stable relative URL; never a presigned storage URL, so it does not expire."""
    if not message.attachment:
        return None
    if message.message_type == MessageType.LINK:
        return message.attachment
    return f"{API_PREFIX}/conversations/{message.conversation_id}/messages/{message.id}/file"


def serialize_user(user: Optional[User]) -> Optional[UserBrief]:
    if user is None:
        return None
    return UserBrief(
        id=user.id,
        name=user.name,
        username=user.username,
        position=user.position,
        avatar_url=user_avatar_url(user),
    )


def serialize_reaction(reaction: ChatMessageReaction) -> ReactionResponse:
    return ReactionResponse(
        id=reaction.id,
        message_id=reaction.message_id,
        user_id=reaction.user_id,
        emoji=reaction.emoji,
        created_at=reaction.created_at,
        user=serialize_user(reaction.user),
    )


def serialize_message(message: ChatMessage) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        content=message.content,
        message_type=message.message_type,
        attachment_url=message_attachment_url(message),
        created_at=message.created_at,
        sender=serialize_user(message.sender),
        reactions=[serialize_reaction(r) for r in message.reactions],
    )


def serialize_conversation(
    conversation: Conversation,
    viewer_id: int,
    unread_count: int = 0,
    last_message: Optional[ChatMessage] = None,
) -> ConversationResponse:
    display_name = conversation.name
    display_avatar = conversation_avatar_url(conversation)
    if conversation.type == ConversationType.PRIVATE:
        other = next((m.user for m in conversation.members if m.user_id != viewer_id), None)
        display_name = other.name if other else "Unknown"
        display_avatar = user_avatar_url(other)

    return ConversationResponse(
        id=conversation.id,
        type=conversation.type,
        name=conversation.name,
        description=conversation.description,
        avatar_url=conversation_avatar_url(conversation),
        created_by_id=conversation.created_by_id,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        members=[
            MemberResponse(
                user_id=m.user_id,
                is_admin=m.is_admin,
                last_read=m.last_read,
                user=serialize_user(m.user),
            )
            for m in conversation.members
        ],
        display_name=display_name,
        display_avatar=display_avatar,
        unread_count=unread_count,
        last_message=serialize_message(last_message) if last_message else None,
    )


def advance_last_read_quietly(conversation_id: int, user_id: int):
    """Fire-and-forget read marker used after a history fetch."""
    db = SessionLocal()
    try:
        crud.advance_last_read(db, conversation_id, user_id)
    except Exception:
        logger.exception("Could not advance last_read for user %s in conversation %s", user_id, conversation_id)
    finally:
        db.close()


class ChatService:
    def __init__(self, db: Session, store: ObjectStore, broadcaster: Broadcaster):
        self.db = db
        self.store = store
        self.broadcaster = broadcaster

    # ---- guards ---------------------------------------------------------

    def _require_member(self, conversation_id: int, user_id: int):
        membership = crud.get_membership(self.db, conversation_id, user_id)
        if not membership:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
        return membership

    def _require_admin(self, conversation_id: int, user_id: int, detail: str):
        membership = crud.get_membership(self.db, conversation_id, user_id)
        if not membership or not membership.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
        return membership

    def _require_message(self, message_id: int) -> ChatMessage:
        message = crud.get_message(self.db, message_id)
        if not message:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
        return message

    def _require_users(self, user_ids: List[int]):
        found = {user.id for user in crud.get_users(self.db, user_ids)}
        missing = [uid for uid in user_ids if uid not in found]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown user ids: {', '.join(str(uid) for uid in missing)}"
            )

    async def _store_avatar(self, avatar: Optional[UploadFile]) -> Optional[str]:
        if avatar is None or not avatar.filename:
            return None
        filename = normalize_filename(avatar.filename) or "avatar"
        data = await avatar.read()
        key = unique_object_name("chat-avatars", filename)
        return await run_in_threadpool(self.store.put, key, data, avatar.content_type, original_filename=filename)

    async def _emit_to_members(self, conversation: Conversation, event: str, user_ids: Optional[List[int]] = None):
        targets = user_ids if user_ids is not None else [m.user_id for m in conversation.members]
        for user_id in targets:
            payload = serialize_conversation(conversation, user_id).model_dump(mode="json")
            await self.broadcaster.emit(
                user_room(user_id), event, {"conversation_id": conversation.id, "conversation": payload}
            )

    # ---- conversations --------------------------------------------------

    def list_conversations(self, user: User) -> List[ConversationResponse]:
        conversations = crud.list_user_conversations(self.db, user.id)
        unread = crud.count_unread_by_conversation(self.db, user.id)
        latest = crud.latest_messages(self.db, [c.id for c in conversations])
        return [
            serialize_conversation(c, user.id, unread.get(c.id, 0), latest.get(c.id))
            for c in conversations
        ]

    async def create_conversation(
        self,
        user: User,
        conversation_type: str,
        member_ids: Optional[List[int]],
        name: Optional[str] = None,
        description: Optional[str] = None,
        avatar: Optional[UploadFile] = None,
    ) -> Tuple[ConversationResponse, bool]:
        """Returns the conversation and whether it was newly created."""
        try:
            kind = ConversationType((conversation_type or "PRIVATE").upper())
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid conversation type")

        others = []
        for member_id in member_ids or []:
            if member_id != user.id and member_id not in others:
                others.append(member_id)
        if not others:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Member IDs are required")
        await run_in_threadpool(self._require_users, others)

        if kind == ConversationType.PRIVATE:
            if len(others) != 1:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Private conversations need exactly one other member"
                )
            existing = await run_in_threadpool(crud.find_private_conversation, self.db, user.id, others[0])
            if existing:
                return serialize_conversation(existing, user.id), False
        elif not (name or "").strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Group name is required")

        avatar_key = await self._store_avatar(avatar) if kind == ConversationType.GROUP else None
        conversation = await run_in_threadpool(
            crud.create_conversation,
            self.db,
            creator_id=user.id,
            conversation_type=kind,
            member_ids=others,
            name=(name or "").strip() or None,
            description=description,
            avatar=avatar_key,
        )
        logger.info("User %s created %s conversation %s", user.id, kind.value, conversation.id)
        await self._emit_to_members(conversation, NEW_CONVERSATION)
        return serialize_conversation(conversation, user.id), True

    def get_conversation(self, user: User, conversation_id: int) -> ConversationResponse:
        conversation = crud.get_conversation_for_member(self.db, conversation_id, user.id)
        if not conversation:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
        unread = crud.count_unread_by_conversation(self.db, user.id)
        latest = crud.latest_messages(self.db, [conversation_id])
        return serialize_conversation(conversation, user.id, unread.get(conversation_id, 0), latest.get(conversation_id))

    async def update_conversation(
        self,
        user: User,
        conversation_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        avatar: Optional[UploadFile] = None,
    ) -> ConversationResponse:
        await run_in_threadpool(self._require_admin, conversation_id, user.id, "Only admin can update conversation")
        conversation = await run_in_threadpool(crud.get_conversation, self.db, conversation_id)
        if name is not None and conversation.type == ConversationType.GROUP and not name.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Group name is required")

        avatar_key = await self._store_avatar(avatar)
        conversation = await run_in_threadpool(
            crud.update_conversation,
            self.db,
            conversation,
            name=name.strip() if name is not None and conversation.type == ConversationType.GROUP else None,
            description=description,
            avatar=avatar_key,
        )
        await self._emit_to_members(conversation, CONVERSATION_UPDATED)
        return serialize_conversation(conversation, user.id)

    async def add_members(self, user: User, conversation_id: int, member_ids: List[int]) -> ConversationResponse:
        await run_in_threadpool(self._require_admin, conversation_id, user.id, "Only admin can add members")
        conversation = await run_in_threadpool(crud.get_conversation, self.db, conversation_id)
        if conversation.type != ConversationType.GROUP:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot add members to private chat")
        await run_in_threadpool(self._require_users, member_ids)

        added = await run_in_threadpool(crud.add_members, self.db, conversation_id, member_ids)
        conversation = await run_in_threadpool(crud.get_conversation, self.db, conversation_id)
        if added:
            existing = [m.user_id for m in conversation.members if m.user_id not in added]
            await self._emit_to_members(conversation, CONVERSATION_UPDATED, existing)
            await self._emit_to_members(conversation, NEW_CONVERSATION, added)
        return serialize_conversation(conversation, user.id)

    async def leave_conversation(self, user: User, conversation_id: int) -> StatusMessage:
        membership = await run_in_threadpool(crud.get_membership, self.db, conversation_id, user.id)
        if not membership:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="You are not a member of this conversation")
        promoted = await run_in_threadpool(crud.remove_member, self.db, membership)
        if promoted:
            logger.info("User %s is now admin of conversation %s after user %s left", promoted, conversation_id, user.id)

        conversation = await run_in_threadpool(crud.get_conversation, self.db, conversation_id)
        if conversation and conversation.members:
            await self._emit_to_members(conversation, CONVERSATION_UPDATED)
        return StatusMessage(message="Left conversation successfully")

    async def delete_conversation(self, user: User, conversation_id: int) -> StatusMessage:
        conversation = await run_in_threadpool(crud.get_conversation, self.db, conversation_id)
        if not conversation:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
        membership = next((m for m in conversation.members if m.user_id == user.id), None)
        if not membership:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
        if conversation.type == ConversationType.GROUP and not membership.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admin can delete this conversation")

        member_ids = [m.user_id for m in conversation.members]
        await run_in_threadpool(crud.delete_conversation, self.db, conversation_id)
        logger.info("User %s deleted conversation %s", user.id, conversation_id)
        for member_id in member_ids:
            await self.broadcaster.emit(
                user_room(member_id), CONVERSATION_DELETED, {"conversation_id": conversation_id}
            )
        return StatusMessage(message="Conversation deleted successfully")

    def search_conversations(self, user: User, q: Optional[str]) -> List[ConversationResponse]:
        q = (q or "").strip()
        if not q:
            return []
        conversations = crud.search_conversations(self.db, user.id, q)
        unread = crud.count_unread_by_conversation(self.db, user.id)
        latest = crud.latest_messages(self.db, [c.id for c in conversations])
        return [serialize_conversation(c, user.id, unread.get(c.id, 0), latest.get(c.id)) for c in conversations]

    def search_users(self, user: User, q: Optional[str]) -> List[UserBrief]:
        q = (q or "").strip()
        if not q:
            return []
        return [serialize_user(u) for u in crud.search_users(self.db, user.id, q)]

    # ---- messages -------------------------------------------------------

    def get_messages(self, user: User, conversation_id: int, cursor: Optional[int] = None, limit: int = 50) -> MessagePage:
        self._require_member(conversation_id, user.id)
        messages = crud.get_messages(self.db, conversation_id, cursor, limit + 1)
        has_more = len(messages) > limit
        messages = messages[:limit]
        messages.reverse()
        return MessagePage(messages=[serialize_message(m) for m in messages], has_more=has_more)

    async def _publish_message(self, message: ChatMessage) -> MessageResponse:
        payload = serialize_message(message)
        await self.broadcaster.emit(
            conversation_room(message.conversation_id),
            NEW_MESSAGE,
            {"conversation_id": message.conversation_id, "message": payload.model_dump(mode="json")},
        )
        return payload

    async def send_message(
        self, user: User, conversation_id: int, request: SendMessageRequest
    ) -> Tuple[MessageResponse, Optional[int]]:
        """Returns the message and the id of its queued notification."""
        content = (request.content or "").strip()
        attachment = (request.attachment or "").strip()
        if request.message_type == MessageType.TEXT:
            if not content:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Content is required")
        elif request.message_type == MessageType.LINK:
            if not attachment:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Attachment is required for link messages"
                )
        else:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Use the file or voice endpoint for this message type"
            )

        await run_in_threadpool(self._require_member, conversation_id, user.id)
        message, outbox_id = await run_in_threadpool(
            crud.create_message,
            self.db,
            conversation_id=conversation_id,
            sender_id=user.id,
            content=content or None,
            message_type=request.message_type,
            attachment=attachment or None,
        )
        return await self._publish_message(message), outbox_id

    async def send_file_message(
        self, user: User, conversation_id: int, upload: Optional[UploadFile], content: Optional[str] = None
    ) -> Tuple[MessageResponse, Optional[int]]:
        if upload is None or not upload.filename:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is required")
        await run_in_threadpool(self._require_member, conversation_id, user.id)

        filename = normalize_filename(upload.filename) or "file"
        data = await upload.read()
        key = attachment_object_name(conversation_id, user.id, filename)
        await run_in_threadpool(self.store.put, key, data, upload.content_type, original_filename=filename)

        text = (content or "").strip()
        message, outbox_id = await run_in_threadpool(
            crud.create_message,
            self.db,
            conversation_id=conversation_id,
            sender_id=user.id,
            content=text or None,
            message_type=classify_message_type(upload.content_type, bool(text)),
            attachment=key,
        )
        return await self._publish_message(message), outbox_id

    async def send_voice_message(
        self, user: User, conversation_id: int, upload: Optional[UploadFile]
    ) -> Tuple[MessageResponse, Optional[int]]:
        if upload is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Audio file is required")
        await run_in_threadpool(self._require_member, conversation_id, user.id)

        content_type = upload.content_type if (upload.content_type or "").startswith("audio/") else "audio/webm"
        extension = mimetypes.guess_extension(content_type.split(";")[0]) or ".webm"
        data = await upload.read()
        key = attachment_object_name(conversation_id, user.id, f"voice{extension}")
        await run_in_threadpool(self.store.put, key, data, content_type)

        message, outbox_id = await run_in_threadpool(
            crud.create_message,
            self.db,
            conversation_id=conversation_id,
            sender_id=user.id,
            content=None,
            message_type=MessageType.VOICE,
            attachment=key,
        )
        return await self._publish_message(message), outbox_id

    async def delete_message(self, user: User, message_id: int) -> StatusMessage:
        message = await run_in_threadpool(self._require_message, message_id)
        conversation_id = message.conversation_id
        if message.sender_id != user.id:
            membership = await run_in_threadpool(crud.get_membership, self.db, conversation_id, user.id)
            if not membership or not membership.is_admin:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Only the sender or an admin can delete this message"
                )

        await run_in_threadpool(crud.delete_message, self.db, message_id)
        await self.broadcaster.emit(
            conversation_room(conversation_id),
            MESSAGE_DELETED,
            {"conversation_id": conversation_id, "message_id": message_id},
        )
        return StatusMessage(message="Message deleted successfully")

    async def mark_as_read(self, user: User, conversation_id: int) -> ReadReceiptResponse:
        await run_in_threadpool(self._require_member, conversation_id, user.id)
        membership = await run_in_threadpool(crud.advance_last_read, self.db, conversation_id, user.id)
        receipt = ReadReceiptResponse(
            conversation_id=conversation_id, user_id=user.id, last_read=membership.last_read
        )
        await self.broadcaster.emit(
            conversation_room(conversation_id), CONVERSATION_READ, receipt.model_dump(mode="json")
        )
        return receipt

    # ---- reactions ------------------------------------------------------

    async def _reaction_snapshot(self, message_id: int, conversation_id: int, event: str) -> ReactionListResponse:
        reactions = await run_in_threadpool(crud.get_reactions, self.db, message_id)
        snapshot = ReactionListResponse(
            message_id=message_id,
            conversation_id=conversation_id,
            reactions=[serialize_reaction(r) for r in reactions],
        )
        await self.broadcaster.emit(conversation_room(conversation_id), event, snapshot.model_dump(mode="json"))
        return snapshot

    async def add_reaction(self, user: User, message_id: int, emoji: str) -> ReactionListResponse:
        emoji = (emoji or "").strip()
        if not emoji:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Emoji is required")
        message = await run_in_threadpool(self._require_message, message_id)
        conversation_id = message.conversation_id
        await run_in_threadpool(self._require_member, conversation_id, user.id)
        await run_in_threadpool(crud.upsert_reaction, self.db, message_id, user.id, emoji)
        return await self._reaction_snapshot(message_id, conversation_id, REACTION_ADDED)

    async def remove_reaction(self, user: User, message_id: int, emoji: str) -> ReactionListResponse:
        message = await run_in_threadpool(self._require_message, message_id)
        conversation_id = message.conversation_id
        await run_in_threadpool(self._require_member, conversation_id, user.id)
        await run_in_threadpool(crud.delete_reaction, self.db, message_id, user.id, emoji)
        return await self._reaction_snapshot(message_id, conversation_id, REACTION_REMOVED)

    # ---- public file serving --------------------------------------------

    def open_message_attachment(self, conversation_id: int, message_id: int) -> Tuple[StoredObject, str]:
        message = crud.get_message(self.db, message_id)
        if (
            not message
            or message.conversation_id != conversation_id
            or not message.attachment
            or message.message_type == MessageType.LINK
        ):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found")
        return self._open(message.attachment, f" for message {message_id}", "File not found")

    def open_conversation_avatar(self, conversation_id: int) -> Tuple[StoredObject, str]:
        conversation = crud.get_conversation(self.db, conversation_id)
        if not conversation or not conversation.avatar:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Avatar not found")
        return self._open(conversation.avatar, f" for conversation {conversation_id}", "Avatar not found")

    def get_user_avatar(self, user_id: int) -> str:
        user = crud.get_user(self.db, user_id)
        if not user or not user.avatar:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Avatar not found")
        return user.avatar

    def open_object(self, key: str, context: str = "") -> Tuple[StoredObject, str]:
        return self._open(key, context, "Avatar not found")

    def _open(self, key: str, context: str, not_found: str) -> Tuple[StoredObject, str]:
        try:
            return self.store.fetch(key, context=context), display_filename(key)
        except ObjectNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=not_found)
