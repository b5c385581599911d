"""
Inbox query service over the message store.

list_inbox() favours availability: without read access it answers with an
empty page. The point operations fail explicitly instead.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sms_gateway import storage
from sms_gateway.config import settings
from sms_gateway.errors import CapabilityUnavailable, NotFoundError
from sms_gateway.models import MessageKind
from sms_gateway.schemas import InboxResponse, MessageResponse

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50


def has_read_permission() -> bool:
    return settings.READ_PERMISSION


def read_capable() -> bool:
    """Read permission granted and the store reachable."""
    return has_read_permission() and storage.check_db_health()


def _require_read_access() -> None:
    if not has_read_permission():
        raise CapabilityUnavailable()


def list_inbox(
    db: Session,
    limit: int = DEFAULT_LIMIT,
    only_unread: bool = False,
    from_address: Optional[str] = None,
) -> InboxResponse:
    """
    Newest-first inbox page plus counts over the whole inbox.

    Args:
        db: Database session
        limit: Maximum messages returned, no upper bound enforced
        only_unread: Keep unread messages only
        from_address: Keep addresses containing this substring
    """
    if not has_read_permission():
        logger.warning("Inbox listed without read permission, returning empty result")
        return InboxResponse(messages=[], total_count=0, unread_count=0)

    try:
        rows = storage.query_messages(
            db,
            limit=limit,
            only_unread=only_unread,
            address_contains=from_address,
            kind=MessageKind.INBOX.value,
        )
        total, unread = storage.count_messages(db, kind=MessageKind.INBOX.value)
    except SQLAlchemyError as e:
        logger.error(f"Inbox query failed, returning empty result: {e}")
        return InboxResponse(messages=[], total_count=0, unread_count=0)

    logger.info(f"Inbox listed: {len(rows)} of {total} messages ({unread} unread)")
    return InboxResponse(
        messages=[MessageResponse.from_row(row) for row in rows],
        total_count=total,
        unread_count=unread,
    )


def get_message(db: Session, message_id: str) -> MessageResponse:
    _require_read_access()
    try:
        row = storage.get_message_by_id(db, message_id)
    except SQLAlchemyError as e:
        logger.error(f"Message lookup failed: {e}")
        raise CapabilityUnavailable("Message store unavailable")
    if row is None:
        raise NotFoundError(f"Message '{message_id}' not found", id=message_id)
    return MessageResponse.from_row(row)


def mark_read(db: Session, message_id: str) -> bool:
    """
    Mark a message read. Idempotent: an already-read message still
    counts as affected.

    Returns:
        True if the message exists
    """
    _require_read_access()
    try:
        rows = storage.mark_message_read(db, message_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Mark read failed: {e}")
        raise CapabilityUnavailable("Message store unavailable")
    logger.info(f"Mark read {message_id}: {rows} rows")
    return rows > 0


def delete(db: Session, message_id: str) -> int:
    """
    Delete a message.

    Returns:
        Rows removed, 0 when the id does not exist
    """
    _require_read_access()
    try:
        rows = storage.delete_message(db, message_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Delete failed: {e}")
        raise CapabilityUnavailable("Message store unavailable")
    logger.info(f"Delete {message_id}: {rows} rows")
    return rows
