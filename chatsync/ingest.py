"""
Message ingest pipeline.

Every message a client handle surfaces (live event, on-demand backfill,
bulk import, startup catch-up) passes through MessageIngestor.ingest,
which is the single write path for messages.
"""

import logging
from typing import Optional

from sqlalchemy.orm import sessionmaker

from chatsync.handles import RawMessage
from chatsync.metrics import record_ingest_outcome
from chatsync.storage import SessionLocal, get_session_by_name, upsert_contact, upsert_message
from chatsync.utils import is_group_or_broadcast, normalize_phone

logger = logging.getLogger(__name__)

INBOUND = "inbound"
OUTBOUND = "outbound"

# Only plain text one-to-one messages are mirrored
TEXT_TYPE = "chat"


class MessageIngestor:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def ingest(self, session_name: str, raw: RawMessage, direction: Optional[str] = None) -> bool:
        """
        Normalize, filter and persist one message event.

        Args:
            session_name: Session the handle belongs to
            raw: Message event from the handle
            direction: "inbound"/"outbound"; derived from raw.from_me if None

        Returns:
            True if the message was written, False if it was dropped or
            failed. Never raises.
        """
        try:
            stored = self._ingest(session_name, raw, direction)
        except Exception:
            logger.exception(f"[{session_name}] Failed to ingest message {getattr(raw, 'id', None)}")
            record_ingest_outcome("error")
            return False

        record_ingest_outcome("stored" if stored else "skipped")
        return stored

    def _ingest(self, session_name: str, raw: RawMessage, direction: Optional[str]) -> bool:
        if raw.type != TEXT_TYPE:
            logger.debug(f"[{session_name}] Skipping non-text message {raw.id} ({raw.type})")
            return False

        if direction is None:
            direction = OUTBOUND if raw.from_me else INBOUND
        remote = raw.recipient if direction == OUTBOUND else raw.sender

        if is_group_or_broadcast(raw.sender) or is_group_or_broadcast(remote):
            logger.debug(f"[{session_name}] Skipping group/broadcast message {raw.id}")
            return False

        phone_number = normalize_phone(remote)
        if not raw.id or phone_number is None or raw.timestamp is None:
            logger.warning(
                f"[{session_name}] Dropping malformed message event: "
                f"id={raw.id!r}, remote={remote!r}, timestamp={raw.timestamp!r}"
            )
            return False

        timestamp = int(raw.timestamp)
        # Our own push name rides on outbound events, never use it for the contact
        display_name = (raw.notify_name or None) if direction == INBOUND else None

        with self._session_factory() as db:
            record = get_session_by_name(db, session_name)
            if record is None:
                logger.info(f"[{session_name}] Session not in store, dropping message {raw.id}")
                return False
            try:
                contact_id = upsert_contact(db, record.id, phone_number, display_name)
                upsert_message(
                    db,
                    external_id=raw.id,
                    session_id=record.id,
                    contact_id=contact_id,
                    direction=direction,
                    type=raw.type,
                    body=raw.body,
                    timestamp=timestamp,
                )
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.debug(f"[{session_name}] Stored {direction} message {raw.id} for {phone_number}")
        return True
