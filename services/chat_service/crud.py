from sqlalchemy.orm import Session, joinedload, selectinload, aliased
from sqlalchemy import and_, or_, func, select
from sqlalchemy.exc import IntegrityError
from models import (
    User, Conversation, ConversationMember, ChatMessage, ChatMessageReaction,
    ChatNotificationOutbox, ConversationType, MessageType, OutboxStatus, utcnow,
)
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple


def _conversation_query(db: Session):
    return db.query(Conversation).options(
        selectinload(Conversation.members).joinedload(ConversationMember.user)
    )


def _message_query(db: Session):
    return db.query(ChatMessage).options(
        joinedload(ChatMessage.sender),
        selectinload(ChatMessage.reactions).joinedload(ChatMessageReaction.user),
    )


def get_users(db: Session, user_ids: List[int]) -> List[User]:
    if not user_ids:
        return []
    return db.query(User).filter(User.id.in_(user_ids)).all()


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_membership(db: Session, conversation_id: int, user_id: int) -> Optional[ConversationMember]:
    return db.query(ConversationMember).filter(
        ConversationMember.conversation_id == conversation_id,
        ConversationMember.user_id == user_id
    ).first()


def get_conversation(db: Session, conversation_id: int) -> Optional[Conversation]:
    return _conversation_query(db).filter(Conversation.id == conversation_id).first()


def get_conversation_for_member(db: Session, conversation_id: int, user_id: int) -> Optional[Conversation]:
    if not get_membership(db, conversation_id, user_id):
        return None
    return get_conversation(db, conversation_id)


def find_private_conversation(db: Session, user_a: int, user_b: int) -> Optional[Conversation]:
    """PRIVATE conversation whose only two members are user_a and user_b."""
    member_a = aliased(ConversationMember)
    member_b = aliased(ConversationMember)
    member_counts = (
        db.query(
            ConversationMember.conversation_id.label("conversation_id"),
            func.count(ConversationMember.id).label("total")
        )
        .group_by(ConversationMember.conversation_id)
        .subquery()
    )
    match = (
        db.query(Conversation.id)
        .join(member_a, and_(member_a.conversation_id == Conversation.id, member_a.user_id == user_a))
        .join(member_b, and_(member_b.conversation_id == Conversation.id, member_b.user_id == user_b))
        .join(member_counts, member_counts.c.conversation_id == Conversation.id)
        .filter(Conversation.type == ConversationType.PRIVATE, member_counts.c.total == 2)
        .order_by(Conversation.id)
        .first()
    )
    return get_conversation(db, match[0]) if match else None


def create_conversation(
    db: Session,
    creator_id: int,
    conversation_type: ConversationType,
    member_ids: List[int],
    name: Optional[str] = None,
    description: Optional[str] = None,
    avatar: Optional[str] = None,
) -> Conversation:
    conversation = Conversation(
        type=conversation_type,
        name=name if conversation_type == ConversationType.GROUP else None,
        description=description,
        avatar=avatar,
        created_by_id=creator_id,
    )
    conversation.members.append(ConversationMember(user_id=creator_id, is_admin=True))
    for member_id in member_ids:
        conversation.members.append(ConversationMember(user_id=member_id, is_admin=False))
    db.add(conversation)
    db.commit()
    return get_conversation(db, conversation.id)


def add_members(db: Session, conversation_id: int, member_ids: List[int]) -> List[int]:
    existing = {
        row[0] for row in db.query(ConversationMember.user_id)
        .filter(ConversationMember.conversation_id == conversation_id).all()
    }
    added = []
    for member_id in member_ids:
        if member_id in existing or member_id in added:
            continue
        db.add(ConversationMember(conversation_id=conversation_id, user_id=member_id, is_admin=False))
        added.append(member_id)
    if added:
        db.query(Conversation).filter(Conversation.id == conversation_id).update(
            {"updated_at": utcnow()}, synchronize_session=False
        )
    db.commit()
    return added


def update_conversation(
    db: Session,
    conversation: Conversation,
    name: Optional[str] = None,
    description: Optional[str] = None,
    avatar: Optional[str] = None,
) -> Conversation:
    if name is not None:
        conversation.name = name
    if description is not None:
        conversation.description = description
    if avatar is not None:
        conversation.avatar = avatar
    conversation.updated_at = utcnow()
    db.commit()
    return get_conversation(db, conversation.id)


def remove_member(db: Session, membership: ConversationMember) -> Optional[int]:
    """Remove a member; a group left without an admin gets its oldest member promoted.

    Returns the promoted user id, if any.
    """
    conversation_id = membership.conversation_id
    db.delete(membership)
    db.flush()

    promoted = None
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation and conversation.type == ConversationType.GROUP:
        remaining = db.query(ConversationMember).filter(ConversationMember.conversation_id == conversation_id)
        if not remaining.filter(ConversationMember.is_admin.is_(True)).first():
            oldest = remaining.order_by(ConversationMember.joined_at.asc(), ConversationMember.id.asc()).first()
            if oldest:
                oldest.is_admin = True
                promoted = oldest.user_id
    db.commit()
    return promoted


def list_user_conversations(db: Session, user_id: int) -> List[Conversation]:
    return (
        _conversation_query(db)
        .join(ConversationMember, ConversationMember.conversation_id == Conversation.id)
        .filter(ConversationMember.user_id == user_id)
        .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        .all()
    )


def count_unread_by_conversation(db: Session, user_id: int) -> Dict[int, int]:
    """Unread counts for every conversation of the user in a single query."""
    rows = (
        db.query(ConversationMember.conversation_id, func.count(ChatMessage.id))
        .join(
            ChatMessage,
            and_(
                ChatMessage.conversation_id == ConversationMember.conversation_id,
                ChatMessage.sender_id != user_id,
                or_(
                    ConversationMember.last_read.is_(None),
                    ChatMessage.created_at > ConversationMember.last_read
                )
            )
        )
        .filter(ConversationMember.user_id == user_id)
        .group_by(ConversationMember.conversation_id)
        .all()
    )
    return {conversation_id: count for conversation_id, count in rows}


def latest_messages(db: Session, conversation_ids: List[int]) -> Dict[int, ChatMessage]:
    if not conversation_ids:
        return {}
    latest = (
        db.query(func.max(ChatMessage.id).label("id"))
        .filter(ChatMessage.conversation_id.in_(conversation_ids))
        .group_by(ChatMessage.conversation_id)
        .subquery()
    )
    messages = _message_query(db).join(latest, ChatMessage.id == latest.c.id).all()
    return {message.conversation_id: message for message in messages}


def get_message(db: Session, message_id: int) -> Optional[ChatMessage]:
    return _message_query(db).filter(ChatMessage.id == message_id).first()


def get_messages(db: Session, conversation_id: int, cursor: Optional[int] = None, limit: int = 50) -> List[ChatMessage]:
    query = _message_query(db).filter(ChatMessage.conversation_id == conversation_id)
    if cursor:
        query = query.filter(ChatMessage.id < cursor)
    return query.order_by(ChatMessage.id.desc()).limit(limit).all()


def create_message(
    db: Session,
    conversation_id: int,
    sender_id: int,
    content: Optional[str],
    message_type: MessageType,
    attachment: Optional[str] = None,
    notify: bool = True,
) -> Tuple[ChatMessage, Optional[int]]:
    """Insert a message, bump the conversation and queue its notification atomically."""
    message = ChatMessage(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        message_type=message_type,
        attachment=attachment,
    )
    db.add(message)

    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation:
        conversation.updated_at = utcnow()

    db.flush()
    outbox_id = None
    if notify:
        entry = ChatNotificationOutbox(message_id=message.id)
        db.add(entry)
        db.flush()
        outbox_id = entry.id

    db.commit()
    return get_message(db, message.id), outbox_id


def advance_last_read(db: Session, conversation_id: int, user_id: int,
                      at: Optional[datetime] = None) -> Optional[ConversationMember]:
    at = at or utcnow()
    db.query(ConversationMember).filter(
        ConversationMember.conversation_id == conversation_id,
        ConversationMember.user_id == user_id,
        or_(ConversationMember.last_read.is_(None), ConversationMember.last_read < at)
    ).update({"last_read": at}, synchronize_session=False)
    db.commit()
    return get_membership(db, conversation_id, user_id)


def get_reactions(db: Session, message_id: int) -> List[ChatMessageReaction]:
    return (
        db.query(ChatMessageReaction)
        .options(joinedload(ChatMessageReaction.user))
        .filter(ChatMessageReaction.message_id == message_id)
        .order_by(ChatMessageReaction.id)
        .all()
    )


def _find_reaction(db: Session, message_id: int, user_id: int, emoji: str):
    return db.query(ChatMessageReaction).filter(
        ChatMessageReaction.message_id == message_id,
        ChatMessageReaction.user_id == user_id,
        ChatMessageReaction.emoji == emoji
    ).first()


def upsert_reaction(db: Session, message_id: int, user_id: int, emoji: str) -> ChatMessageReaction:
    existing = _find_reaction(db, message_id, user_id, emoji)
    if existing:
        return existing
    reaction = ChatMessageReaction(message_id=message_id, user_id=user_id, emoji=emoji)
    db.add(reaction)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent identical request inserted it first
        db.rollback()
        return _find_reaction(db, message_id, user_id, emoji)
    db.refresh(reaction)
    return reaction


def delete_reaction(db: Session, message_id: int, user_id: int, emoji: str) -> int:
    deleted = db.query(ChatMessageReaction).filter(
        ChatMessageReaction.message_id == message_id,
        ChatMessageReaction.user_id == user_id,
        ChatMessageReaction.emoji == emoji
    ).delete(synchronize_session=False)
    db.commit()
    return deleted


def delete_message(db: Session, message_id: int):
    db.query(ChatMessageReaction).filter(
        ChatMessageReaction.message_id == message_id
    ).delete(synchronize_session=False)
    db.query(ChatNotificationOutbox).filter(
        ChatNotificationOutbox.message_id == message_id
    ).delete(synchronize_session=False)
    db.query(ChatMessage).filter(ChatMessage.id == message_id).delete(synchronize_session=False)
    db.commit()


def delete_conversation(db: Session, conversation_id: int):
    message_ids = select(ChatMessage.id).where(ChatMessage.conversation_id == conversation_id)
    db.query(ChatMessageReaction).filter(
        ChatMessageReaction.message_id.in_(message_ids)
    ).delete(synchronize_session=False)
    db.query(ChatNotificationOutbox).filter(
        ChatNotificationOutbox.message_id.in_(message_ids)
    ).delete(synchronize_session=False)
    db.query(ChatMessage).filter(
        ChatMessage.conversation_id == conversation_id
    ).delete(synchronize_session=False)
    db.query(ConversationMember).filter(
        ConversationMember.conversation_id == conversation_id
    ).delete(synchronize_session=False)
    db.query(Conversation).filter(Conversation.id == conversation_id).delete(synchronize_session=False)
    db.commit()


def search_conversations(db: Session, user_id: int, q: str, limit: int = 10) -> List[Conversation]:
    pattern = f"%{q}%"
    own_conversations = select(ConversationMember.conversation_id).where(ConversationMember.user_id == user_id)
    return (
        _conversation_query(db)
        .filter(
            Conversation.id.in_(own_conversations),
            or_(
                Conversation.name.ilike(pattern),
                Conversation.members.any(and_(
                    ConversationMember.user_id != user_id,
                    ConversationMember.user.has(User.name.ilike(pattern))
                ))
            )
        )
        .order_by(Conversation.updated_at.desc())
        .limit(limit)
        .all()
    )


def search_users(db: Session, user_id: int, q: str, limit: int = 10) -> List[User]:
    pattern = f"%{q}%"
    return (
        db.query(User)
        .filter(
            User.id != user_id,
            or_(User.name.ilike(pattern), User.username.ilike(pattern))
        )
        .order_by(User.name)
        .limit(limit)
        .all()
    )


def claim_outbox_entry(db: Session, entry_id: int, now: Optional[datetime] = None) -> Optional[ChatNotificationOutbox]:
    """Move a due pending entry to processing; None if another worker has it."""
    now = now or utcnow()
    claimed = db.query(ChatNotificationOutbox).filter(
        ChatNotificationOutbox.id == entry_id,
        ChatNotificationOutbox.status == OutboxStatus.PENDING,
        ChatNotificationOutbox.next_attempt_at <= now
    ).update({
        "status": OutboxStatus.PROCESSING,
        "locked_at": now,
        "attempts": ChatNotificationOutbox.attempts + 1,
    }, synchronize_session=False)
    db.commit()
    if not claimed:
        return None
    return db.query(ChatNotificationOutbox).filter(ChatNotificationOutbox.id == entry_id).first()


def due_outbox_ids(db: Session, now: Optional[datetime] = None, limit: int = 100) -> List[int]:
    now = now or utcnow()
    rows = (
        db.query(ChatNotificationOutbox.id)
        .filter(
            ChatNotificationOutbox.status == OutboxStatus.PENDING,
            ChatNotificationOutbox.next_attempt_at <= now
        )
        .order_by(ChatNotificationOutbox.id)
        .limit(limit)
        .all()
    )
    return [row[0] for row in rows]


def reclaim_stale_outbox(db: Session, lease_seconds: int, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    reclaimed = db.query(ChatNotificationOutbox).filter(
        ChatNotificationOutbox.status == OutboxStatus.PROCESSING,
        ChatNotificationOutbox.locked_at < now - timedelta(seconds=lease_seconds)
    ).update({"status": OutboxStatus.PENDING, "locked_at": None}, synchronize_session=False)
    db.commit()
    return reclaimed


def complete_outbox_entry(db: Session, entry: ChatNotificationOutbox):
    entry.status = OutboxStatus.DONE
    entry.locked_at = None
    entry.last_error = None
    db.commit()


def fail_outbox_entry(db: Session, entry: ChatNotificationOutbox, error: str,
                      max_attempts: int, backoff_seconds: int, now: Optional[datetime] = None):
    now = now or utcnow()
    entry.locked_at = None
    entry.last_error = error[:2000]
    if entry.attempts >= max_attempts:
        entry.status = OutboxStatus.FAILED
    else:
        entry.status = OutboxStatus.PENDING
        entry.next_attempt_at = now + timedelta(seconds=backoff_seconds * 2 ** (entry.attempts - 1))
    db.commit()
