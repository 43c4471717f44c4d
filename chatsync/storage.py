import logging
from typing import Generator, Iterable, Optional

from sqlalchemy import and_, create_engine, event, func, or_, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from chatsync.config import settings
from chatsync.utils import utc_now_iso

logger = logging.getLogger(__name__)

# Create SQLAlchemy engine with SQLite-specific settings
# check_same_thread=False is required for SQLite to work with FastAPI's async
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)


@event.listens_for(engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # ON DELETE CASCADE is a no-op in SQLite unless enabled per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("sessions", "contacts", "messages", "quick_replies")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chatsync import models  # noqa: F401

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
        True if DB is healthy and every table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            for table in REQUIRED_TABLES:
                found = db.execute(
                    text("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=:name"),
                    {"name": table},
                ).scalar()
                if not found:
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Session Repository Functions
# =============================================================================

def get_session_by_name(db: Session, name: str):
    """Return the SessionRecord for *name*, or None."""
    from chatsync.models import SessionRecord

    return db.query(SessionRecord).filter(SessionRecord.name == name).first()


def ensure_session(db: Session, name: str, owner_id: Optional[str], status: str):
    """
    Create the session row if missing, then reset it for a new pairing cycle.

    Args:
        db: Database session
        name: Unique session name
        owner_id: Owning dashboard user, kept if not given
        status: Entry status written to the row

    Returns:
        The SessionRecord (committed)
    """
    from chatsync.models import SessionRecord

    record = get_session_by_name(db, name)
    if record is None:
        logger.info(f"Creating session row: {name}")
        record = SessionRecord(name=name, owner_id=owner_id, created_at=utc_now_iso())
        db.add(record)
    elif owner_id is not None:
        record.owner_id = owner_id

    record.status = status
    record.pairing_payload = None
    db.commit()
    db.refresh(record)
    return record


_UNSET = object()


def update_session_status(db: Session, name: str, status: str, pairing_payload=_UNSET) -> bool:
    """
    Persist a status change; pairing_payload is only touched when passed.

    Returns:
        True if a row was updated, False if the session no longer exists
    """
    from chatsync.models import SessionRecord

    values = {"status": status}
    if pairing_payload is not _UNSET:
        values["pairing_payload"] = pairing_payload

    updated = (
        db.query(SessionRecord)
        .filter(SessionRecord.name == name)
        .update(values, synchronize_session=False)
    )
    db.commit()
    logger.debug(f"Session {name} status -> {status} ({updated} row)")
    return updated > 0


def list_sessions(db: Session, statuses: Optional[Iterable[str]] = None) -> list:
    """List sessions ordered by creation time, optionally filtered by status."""
    from chatsync.models import SessionRecord

    query = db.query(SessionRecord)
    if statuses is not None:
        query = query.filter(SessionRecord.status.in_(list(statuses)))
    return query.order_by(SessionRecord.created_at.asc(), SessionRecord.id.asc()).all()


def delete_session(db: Session, name: str) -> bool:
    """
    Delete a session row; contacts and messages go with it (ON DELETE CASCADE).

    Returns:
        True if a row was deleted
    """
    record = get_session_by_name(db, name)
    if record is None:
        logger.info(f"Session {name} not in store, nothing to delete")
        return False
    db.delete(record)
    db.commit()
    logger.info(f"Session {name} deleted from store")
    return True


# =============================================================================
# Contact Repository Functions
# =============================================================================

def upsert_contact(db: Session, session_id: int, phone_number: str, display_name: Optional[str]) -> int:
    """
    Insert or update the contact for (session_id, phone_number).

    A None display_name keeps whatever name is already stored.
    Does not commit.

    Returns:
        The contact id
    """
    from chatsync.models import Contact

    stmt = sqlite_insert(Contact).values(
        session_id=session_id,
        phone_number=phone_number,
        display_name=display_name,
        tags=[],
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Contact.session_id, Contact.phone_number],
        set_={"display_name": func.coalesce(stmt.excluded.display_name, Contact.display_name)},
    ).returning(Contact.id)
    return db.execute(stmt).scalar_one()


def get_contact(db: Session, session_id: int, phone_number: str):
    """Return the Contact for (session_id, phone_number), or None."""
    from chatsync.models import Contact

    return (
        db.query(Contact)
        .filter(Contact.session_id == session_id, Contact.phone_number == phone_number)
        .first()
    )


def update_contact(db: Session, contact, fields: dict):
    """Apply an explicit edit from the dashboard and commit."""
    for key, value in fields.items():
        setattr(contact, key, value)
    db.commit()
    db.refresh(contact)
    logger.info(f"Contact {contact.phone_number} updated: {sorted(fields)}")
    return contact


# =============================================================================
# Message Repository Functions
# =============================================================================

def upsert_message(
    db: Session,
    external_id: str,
    session_id: int,
    contact_id: int,
    direction: str,
    type: str,
    body: Optional[str],
    timestamp: int,
) -> None:
    """
    Insert a message, or overwrite the stored one with the same external id.

    This is the only write path for messages, so replaying a live event
    or a backfilled batch never creates a second row. Does not commit.
    """
    from chatsync.models import Message

    logger.debug(f"Upserting message: id={external_id}, session={session_id}, contact={contact_id}")
    stmt = sqlite_insert(Message).values(
        external_id=external_id,
        session_id=session_id,
        contact_id=contact_id,
        direction=direction,
        type=type,
        body=body,
        timestamp=timestamp,
        created_at=utc_now_iso(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Message.external_id],
        set_={
            "session_id": stmt.excluded.session_id,
            "contact_id": stmt.excluded.contact_id,
            "direction": stmt.excluded.direction,
            "type": stmt.excluded.type,
            "body": stmt.excluded.body,
            "timestamp": stmt.excluded.timestamp,
        },
    )
    db.execute(stmt)


def get_contact_messages(
    db: Session,
    session_id: int,
    contact_id: int,
    limit: int,
    before_id: Optional[str] = None,
) -> list:
    """
    Retrieve up to *limit* messages for one contact, newest first.

    Args:
        before_id: external id cursor; only strictly older messages
            (timestamp, then external id) are returned

    Returns:
        List of Message rows ordered by timestamp DESC, external_id DESC
    """
    from chatsync.models import Message

    query = db.query(Message).filter(
        Message.session_id == session_id,
        Message.contact_id == contact_id,
    )

    if before_id:
        anchor = db.query(Message).filter(Message.external_id == before_id).first()
        if anchor is not None:
            query = query.filter(
                or_(
                    Message.timestamp < anchor.timestamp,
                    and_(
                        Message.timestamp == anchor.timestamp,
                        Message.external_id < anchor.external_id,
                    ),
                )
            )
        else:
            logger.debug(f"Cursor message {before_id} not found, ignoring cursor")

    messages = (
        query.order_by(Message.timestamp.desc(), Message.external_id.desc())
        .limit(limit)
        .all()
    )
    logger.debug(f"Retrieved {len(messages)} messages for contact {contact_id}")
    return messages


def get_latest_timestamp(db: Session, session_id: int) -> int:
    """Most recent message timestamp stored for a session, 0 if none."""
    from chatsync.models import Message

    latest = db.query(func.max(Message.timestamp)).filter(Message.session_id == session_id).scalar()
    return latest or 0


# =============================================================================
# Quick Reply Repository Functions
# =============================================================================

def list_quick_replies(db: Session) -> list:
    from chatsync.models import QuickReply

    return db.query(QuickReply).order_by(QuickReply.id.asc()).all()


def create_quick_reply(db: Session, title: str, message: str):
    from chatsync.models import QuickReply

    reply = QuickReply(title=title, message=message, created_at=utc_now_iso())
    db.add(reply)
    db.commit()
    db.refresh(reply)
    logger.info(f"Quick reply created: id={reply.id}")
    return reply


def delete_quick_reply(db: Session, reply_id: int) -> bool:
    from chatsync.models import QuickReply

    deleted = db.query(QuickReply).filter(QuickReply.id == reply_id).delete(synchronize_session=False)
    db.commit()
    logger.info(f"Quick reply {reply_id} delete: {'removed' if deleted else 'not found'}")
    return deleted > 0
