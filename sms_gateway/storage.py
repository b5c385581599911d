import logging
import threading
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, text, func
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from sms_gateway.config import settings
from sms_gateway.utils import now_millis

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

# Largest value a 64-bit INTEGER column can hold
MAX_INTEGER = 2**63 - 1

# Serializes thread lookup/allocation with the insert that uses it
_thread_allocation_lock = threading.Lock()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from sms_gateway.models import Message  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the store is reachable and the messages table exists.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            result = db.execute(text(
                "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='messages'"
            )).scalar() if engine.dialect.name == "sqlite" else 1
            if result == 0:
                logger.error("Database schema not applied: 'messages' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def _parse_id(message_id: str) -> Optional[int]:
    """Store ids are 64-bit integers; anything else cannot exist."""
    try:
        key = int(message_id)
    except (TypeError, ValueError):
        return None
    if not -MAX_INTEGER - 1 <= key <= MAX_INTEGER:
        return None
    return key


# =============================================================================
# Message Repository Functions
# =============================================================================

def resolve_thread_id(db: Session, address: str) -> int:
    """
    Return the thread of an existing conversation with address,
    or allocate the next thread id.
    """
    from sms_gateway.models import Message

    existing = (
        db.query(Message.thread_id)
        .filter(Message.address == address)
        .order_by(Message.date.desc())
        .first()
    )
    if existing is not None:
        return existing.thread_id
    highest = db.query(func.max(Message.thread_id)).scalar()
    return (highest or 0) + 1


def insert_message(
    db: Session,
    address: str,
    body: str,
    kind: str,
    read: bool = False,
    date: Optional[int] = None,
):
    """
    Store a new message and return it with its store-assigned id.

    Args:
        db: Database session
        address: Sender (inbox) or recipient (sent) address
        body: Message text
        kind: Folder, one of MessageKind values
        read: Initial read flag
        date: Epoch milliseconds, defaults to now
    """
    from sms_gateway.models import Message

    with _thread_allocation_lock:
        message = Message(
            thread_id=resolve_thread_id(db, address),
            address=address,
            body=body,
            date=date if date is not None else now_millis(),
            read=read,
            kind=kind,
        )
        db.add(message)
        db.commit()
    db.refresh(message)
    logger.info(f"Stored {kind} message: id={message.id}, thread={message.thread_id}")
    return message


def query_messages(
    db: Session,
    limit: int = 50,
    only_unread: bool = False,
    address_contains: Optional[str] = None,
    kind: str = "inbox",
) -> list:
    """
    Retrieve messages of one folder, newest first.

    Args:
        db: Database session
        limit: Maximum number of messages to return
        only_unread: Only messages with read=False
        address_contains: Substring of the address (collation decides case)
        kind: Folder to read

    Returns:
        List of Message rows, at most limit long
    """
    from sms_gateway.models import Message

    query = db.query(Message).filter(Message.kind == kind)

    if address_contains:
        query = query.filter(Message.address.contains(address_contains, autoescape=True))
        logger.debug(f"Applied address filter: {address_contains}")

    if only_unread:
        query = query.filter(Message.read.is_(False))

    query = query.order_by(Message.date.desc(), Message.id.desc())
    return query.limit(min(limit, MAX_INTEGER)).all()


def count_messages(db: Session, kind: str = "inbox") -> Tuple[int, int]:
    """
    Count every message of a folder, ignoring filters.

    Returns:
        Tuple of (total, unread)
    """
    from sms_gateway.models import Message

    total = db.query(func.count(Message.id)).filter(Message.kind == kind).scalar() or 0
    unread = (
        db.query(func.count(Message.id))
        .filter(Message.kind == kind, Message.read.is_(False))
        .scalar()
    ) or 0
    return total, unread


def get_message_by_id(db: Session, message_id: str):
    """
    Retrieve a message by its ID.

    Returns:
        Message object if found, None otherwise
    """
    from sms_gateway.models import Message

    key = _parse_id(message_id)
    if key is None:
        return None
    result = db.query(Message).filter(Message.id == key).first()
    logger.debug(f"Message lookup {message_id}: {'found' if result else 'not found'}")
    return result


def mark_message_read(db: Session, message_id: str) -> int:
    """
    Set read=True on a message.

    Returns:
        Number of rows matched; an already-read message still counts.
    """
    from sms_gateway.models import Message

    key = _parse_id(message_id)
    if key is None:
        return 0
    rows = (
        db.query(Message)
        .filter(Message.id == key)
        .update({Message.read: True}, synchronize_session=False)
    )
    db.commit()
    return rows


def delete_message(db: Session, message_id: str) -> int:
    """
    Delete a message.

    Returns:
        Number of rows deleted
    """
    from sms_gateway.models import Message

    key = _parse_id(message_id)
    if key is None:
        return 0
    rows = db.query(Message).filter(Message.id == key).delete(synchronize_session=False)
    db.commit()
    return rows
