from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from models import ConversationType, MessageType


class UserBrief(BaseModel):
    id: int
    name: str
    username: Optional[str] = None
    position: Optional[str] = None
    avatar_url: Optional[str] = None


class ReactionResponse(BaseModel):
    id: int
    message_id: int
    user_id: int
    emoji: str
    created_at: datetime
    user: Optional[UserBrief] = None


class MessageResponse(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    content: Optional[str]
    message_type: MessageType
    attachment_url: Optional[str] = None
    created_at: datetime
    sender: Optional[UserBrief] = None
    reactions: List[ReactionResponse] = []


class MessagePage(BaseModel):
    messages: List[MessageResponse]
    has_more: bool


class MemberResponse(BaseModel):
    user_id: int
    is_admin: bool
    last_read: Optional[datetime]
    user: Optional[UserBrief] = None


class ConversationResponse(BaseModel):
    id: int
    type: ConversationType
    name: Optional[str]
    description: Optional[str]
    avatar_url: Optional[str] = None
    created_by_id: Optional[int]
    created_at: datetime
    updated_at: datetime
    members: List[MemberResponse] = []
    display_name: Optional[str] = None
    display_avatar: Optional[str] = None
    unread_count: int = 0
    last_message: Optional[MessageResponse] = None


class SendMessageRequest(BaseModel):
    content: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    attachment: Optional[str] = None


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=64)


class AddMembersRequest(BaseModel):
    member_ids: List[int] = Field(..., min_length=1)


class ReactionListResponse(BaseModel):
    message_id: int
    conversation_id: int
    reactions: List[ReactionResponse]


class ReadReceiptResponse(BaseModel):
    conversation_id: int
    user_id: int
    last_read: datetime


class StatusMessage(BaseModel):
    message: str
