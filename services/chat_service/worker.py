import logging
import time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import OUTBOX_POLL_INTERVAL, OUTBOX_LEASE_SECONDS
from crud import due_outbox_ids, reclaim_stale_outbox
from database import SessionLocal, init_db
from logging_config import setup_logging
from notifications import NotificationDispatcher, RabbitDispatcher, process_outbox_entry

logger = logging.getLogger(__name__)


def drain_outbox(db: Session, dispatcher: NotificationDispatcher) -> int:
    """Process every due outbox entry once; returns how many were delivered."""
    reclaimed = reclaim_stale_outbox(db, OUTBOX_LEASE_SECONDS)
    if reclaimed:
        logger.warning("Reclaimed %d outbox entries stuck in processing", reclaimed)

    delivered = 0
    for entry_id in due_outbox_ids(db):
        if process_outbox_entry(db, entry_id, dispatcher):
            delivered += 1
    return delivered


def start_worker():
    """Poll the notification outbox forever"""
    setup_logging()
    init_db()
    dispatcher = RabbitDispatcher()
    logger.info("Chat notification worker started. Polling every %ss...", OUTBOX_POLL_INTERVAL)
    while True:
        db = SessionLocal()
        try:
            delivered = drain_outbox(db, dispatcher)
            if delivered:
                logger.info("Delivered %d chat notifications", delivered)
        except SQLAlchemyError as e:
            logger.error("Outbox poll failed: %s", e)
        finally:
            db.close()
        time.sleep(OUTBOX_POLL_INTERVAL)


if __name__ == "__main__":
    start_worker()
