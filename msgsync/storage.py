import logging
from datetime import datetime, timedelta
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from msgsync.config import settings
from msgsync.utils import format_ts, utc_now

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
# and with the background sync tasks
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from msgsync import models  # noqa: F401

        logger.debug("Creating database tables...")
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
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

        inspector = inspect(engine)
        for table in ("received_messages", "sent_messages", "provider_settings"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Received Message Repository Functions
# =============================================================================

def list_received(db: Session, user_id: str) -> list:
    """
    Retrieve a user's received messages, newest first.

    Ordering: ts DESC, created_at DESC
    """
    from msgsync.models import ReceivedMessage

    logger.info(f"Listing received messages for user {user_id}")
    messages = (
        db.query(ReceivedMessage)
        .filter(ReceivedMessage.user_id == user_id)
        .order_by(ReceivedMessage.ts.desc(), ReceivedMessage.created_at.desc())
        .all()
    )
    logger.debug(f"Found {len(messages)} received messages")
    return messages


def insert_received(
    db: Session,
    user_id: str,
    sender: str,
    message: str,
    ts: Optional[datetime] = None,
):
    """
    Store a received message with status unread.

    Args:
        db: Database session
        user_id: Owner of the inbox
        sender: Counterparty phone number or contact
        message: Message body
        ts: Provider-reported time; defaults to server time

    Returns:
        The created ReceivedMessage
    """
    from msgsync.models import ReceivedMessage, STATUS_UNREAD

    created_at = format_ts(utc_now())
    received = ReceivedMessage(
        user_id=user_id,
        sender=sender,
        message=message,
        status=STATUS_UNREAD,
        ts=format_ts(ts) if ts is not None else created_at,
        created_at=created_at,
    )
    db.add(received)
    db.commit()
    db.refresh(received)
    logger.info(f"Received message stored: id={received.id}, from={sender}")
    return received


def insert_received_if_absent(
    db: Session,
    user_id: str,
    sender: str,
    message: str,
    ts: datetime,
    window_seconds: Optional[int] = None,
) -> Tuple[bool, bool]:
    """
    Store a received message unless an equivalent one already exists.

    A stored message is equivalent when it belongs to the same user and has
    the same sender and body. With window_seconds set, its ts must also lie
    within +/- window_seconds of the incoming ts; with None the time is
    ignored. Stored times are truncated to whole seconds, so the bounds are
    inclusive: a true gap just under the window still matches.

    The existence check is a fresh query on every call.

    Returns:
        Tuple of (success: bool, is_duplicate: bool)
        - (True, False): Message created
        - (True, True): Equivalent message already stored
        - (False, False): Error occurred
    """
    from msgsync.models import ReceivedMessage

    try:
        query = db.query(ReceivedMessage.id).filter(
            ReceivedMessage.user_id == user_id,
            ReceivedMessage.sender == sender,
            ReceivedMessage.message == message,
        )
        if window_seconds is not None:
            window = timedelta(seconds=window_seconds)
            query = query.filter(
                ReceivedMessage.ts >= format_ts(ts - window),
                ReceivedMessage.ts <= format_ts(ts + window),
            )

        if query.first() is not None:
            logger.debug(f"Duplicate received message from {sender} at {format_ts(ts)}")
            return (True, True)

        insert_received(db, user_id=user_id, sender=sender, message=message, ts=ts)
        return (True, False)

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to store received message from {sender}: {e}")
        return (False, False)


def get_received(db: Session, message_id: str, user_id: Optional[str] = None):
    from msgsync.models import ReceivedMessage

    query = db.query(ReceivedMessage).filter(ReceivedMessage.id == message_id)
    if user_id is not None:
        query = query.filter(ReceivedMessage.user_id == user_id)
    return query.first()


def mark_read(db: Session, message_id: str, user_id: Optional[str] = None):
    """
    Mark a received message as read.

    Idempotent: marking an already-read message returns it unchanged.

    Returns:
        ReceivedMessage if found, None otherwise
    """
    from msgsync.models import STATUS_READ

    logger.info(f"Marking message as read: {message_id}")
    received = get_received(db, message_id, user_id=user_id)
    if received is None:
        logger.info(f"Message not found: {message_id}")
        return None

    if received.status != STATUS_READ:
        received.status = STATUS_READ
        db.commit()
        db.refresh(received)
    else:
        logger.debug(f"Message already read: {message_id}")
    return received


def mark_all_read(db: Session, user_id: str) -> int:
    """
    Mark every unread message of a user as read.

    Returns:
        Number of messages updated (0 when nothing was unread)
    """
    from msgsync.models import ReceivedMessage, STATUS_READ, STATUS_UNREAD

    updated = (
        db.query(ReceivedMessage)
        .filter(
            ReceivedMessage.user_id == user_id,
            ReceivedMessage.status == STATUS_UNREAD,
        )
        .update({ReceivedMessage.status: STATUS_READ}, synchronize_session=False)
    )
    db.commit()
    logger.info(f"Marked {updated} messages as read for user {user_id}")
    return updated


# =============================================================================
# Sent Message Repository Functions
# =============================================================================

def list_sent(db: Session, user_id: str) -> list:
    """Retrieve a user's sent messages, newest first."""
    from msgsync.models import SentMessage

    logger.info(f"Listing sent messages for user {user_id}")
    return (
        db.query(SentMessage)
        .filter(SentMessage.user_id == user_id)
        .order_by(SentMessage.ts.desc(), SentMessage.created_at.desc())
        .all()
    )


def insert_sent(
    db: Session,
    user_id: str,
    recipient: str,
    message: str,
    status: Optional[str] = None,
):
    """
    Store a sent message.

    Args:
        db: Database session
        user_id: Sending user
        recipient: Destination phone number
        message: Message body as sent
        status: sent, delivered or failed (default sent)

    Returns:
        The created SentMessage
    """
    from msgsync.models import SentMessage, STATUS_SENT

    now = format_ts(utc_now())
    sent = SentMessage(
        user_id=user_id,
        recipient=recipient,
        message=message,
        status=status or STATUS_SENT,
        ts=now,
        created_at=now,
    )
    db.add(sent)
    db.commit()
    db.refresh(sent)
    logger.info(f"Sent message stored: id={sent.id}, to={recipient}, status={sent.status}")
    return sent


# =============================================================================
# Provider Settings Repository Functions
# =============================================================================

def get_provider_settings(db: Session):
    """Return the provider settings row, or None if never saved."""
    from msgsync.models import ProviderSettings

    return db.query(ProviderSettings).first()


def update_provider_settings(
    db: Session,
    token: Optional[str],
    phone_number: Optional[str],
):
    """Create or replace the single provider settings row."""
    from msgsync.models import ProviderSettings

    row = get_provider_settings(db)
    if row is None:
        row = ProviderSettings()
        db.add(row)
    row.token = token
    row.phone_number = phone_number
    row.updated_at = format_ts(utc_now())
    db.commit()
    db.refresh(row)
    logger.info("Provider settings updated")
    return row
