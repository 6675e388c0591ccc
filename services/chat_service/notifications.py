"""Push notifications for new chat messages.

Sending a message writes a ``ChatNotificationOutbox`` row in the same
transaction. ``process_outbox_entry`` turns that row into ``chat.message`` and
``chat.mention`` events on the RabbitMQ events queue, where the push service
picks them up. The request handler runs it as a background task right after
responding; ``worker.py`` retries whatever that attempt left behind.
"""
import json
import logging
from typing import List, Protocol

import pika
from sqlalchemy.orm import Session

import crud
from config import RABBITMQ_URL, EVENTS_QUEUE, OUTBOX_MAX_ATTEMPTS, OUTBOX_BACKOFF_SECONDS
from database import SessionLocal
from models import ConversationType
from text_utils import decode_content, extract_mentions, match_mentions, message_preview

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    def notify_chat_message(self, recipient_ids: List[int], payload: dict) -> None:
        ...

    def notify_mention(self, user_id: int, payload: dict) -> None:
        ...


class RabbitDispatcher:
    """Publishes notification events to the shared durable events queue."""

    def __init__(self, url: str = RABBITMQ_URL, queue: str = EVENTS_QUEUE):
        self.url = url
        self.queue = queue

    def publish(self, event_type: str, data: dict):
        connection = pika.BlockingConnection(pika.URLParameters(self.url))
        try:
            channel = connection.channel()
            channel.queue_declare(queue=self.queue, durable=True)
            channel.basic_publish(
                exchange="",
                routing_key=self.queue,
                body=json.dumps({"type": event_type, "data": data}),
                properties=pika.BasicProperties(delivery_mode=2),
            )
        finally:
            connection.close()

    def notify_chat_message(self, recipient_ids: List[int], payload: dict):
        self.publish("chat.message", {"recipient_ids": recipient_ids, **payload})

    def notify_mention(self, user_id: int, payload: dict):
        self.publish("chat.mention", {"recipient_id": user_id, **payload})


def deliver_message_notifications(db: Session, message_id: int, dispatcher: NotificationDispatcher):
    message = crud.get_message(db, message_id)
    if not message:
        logger.info("Message %s was deleted before its notification went out", message_id)
        return
    conversation = crud.get_conversation(db, message.conversation_id)
    recipients = [m.user for m in conversation.members if m.user_id != message.sender_id]
    if not recipients:
        return

    sender_name = message.sender.name if message.sender else "Someone"
    preview = message_preview(message.message_type, message.content)
    is_group = conversation.type == ConversationType.GROUP
    data = {
        "type": "chat",
        "conversation_id": conversation.id,
        "message_id": message.id,
        "sender_id": message.sender_id,
        "sender_name": sender_name,
    }

    dispatcher.notify_chat_message([user.id for user in recipients], {
        "title": (conversation.name or sender_name) if is_group else sender_name,
        "body": f"{sender_name}: {preview}" if is_group else preview,
        "tag": f"chat-{conversation.id}",
        "data": data,
    })

    tokens = extract_mentions(decode_content(message.content))
    for user_id in match_mentions(tokens, recipients):
        dispatcher.notify_mention(user_id, {
            "title": f"{sender_name} mentioned you",
            "body": preview,
            "tag": f"mention-{message.id}",
            "data": {**data, "type": "mention"},
        })


def process_outbox_entry(db: Session, entry_id: int, dispatcher: NotificationDispatcher) -> bool:
    entry = crud.claim_outbox_entry(db, entry_id)
    if not entry:
        return False
    try:
        deliver_message_notifications(db, entry.message_id, dispatcher)
    except Exception as exc:
        db.rollback()
        logger.exception("Notification for message %s failed (attempt %s)", entry.message_id, entry.attempts)
        crud.fail_outbox_entry(db, entry, str(exc), OUTBOX_MAX_ATTEMPTS, OUTBOX_BACKOFF_SECONDS)
        return False
    crud.complete_outbox_entry(db, entry)
    return True


def run_outbox_entry(entry_id: int, dispatcher: NotificationDispatcher):
    """Background-task entry point; never raises into the request."""
    db = SessionLocal()
    try:
        process_outbox_entry(db, entry_id, dispatcher)
    except Exception:
        logger.exception("Outbox entry %s could not be processed", entry_id)
    finally:
        db.close()
