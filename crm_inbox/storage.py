import json
import logging
from functools import wraps
from typing import Generator, Iterable, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, or_, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from crm_inbox.config import settings
from crm_inbox.errors import StoreUnavailable
from crm_inbox.utils import utc_now_iso

logger = logging.getLogger(__name__)

# check_same_thread=False lets FastAPI hand a SQLite session across threads
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Create all tables. Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from crm_inbox.models import Lead, Message  # noqa: F401

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
    Check that the database is reachable and both inbox tables exist.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in ("messages", "leads"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def store_operation(operation):
    """
    Roll back and re-raise any SQLAlchemy failure as StoreUnavailable.

    The wrapped function must take the session as its first argument.
    """
    @wraps(operation)
    def wrapper(db: Session, *args, **kwargs):
        try:
            return operation(db, *args, **kwargs)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Store call {operation.__name__} failed: {e}")
            raise StoreUnavailable(f"Message store unavailable during {operation.__name__}") from e
    return wrapper


# =============================================================================
# Message Store
# =============================================================================

def create_message(db: Session, **fields) -> Tuple[bool, bool]:
    """
    Insert a message row (idempotent on channel + provider_message_id).

    Returns:
        Tuple of (success: bool, is_duplicate: bool)
        - (True, False): Message created
        - (True, True): Same provider message already stored
        - (False, False): Error occurred
    """
    from crm_inbox.models import Message

    fields.setdefault("created_at", utc_now_iso())
    provider_id = fields.get("provider_message_id")
    logger.info(f"Creating {fields.get('channel')} message for entity {fields.get('entity_id')}")

    try:
        db.add(Message(**fields))
        db.commit()
        return (True, False)

    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate provider message ignored: {provider_id}")
        return (True, True)

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create message {provider_id}: {e}")
        return (False, False)


@store_operation
def get_message(db: Session, message_id: str):
    from crm_inbox.models import Message

    return db.query(Message).filter(Message.id == message_id).first()


@store_operation
def list_messages(db: Session, entity_ids: Optional[Iterable[str]] = None) -> list:
    """
    All message rows, newest first, optionally narrowed to some entities.
    """
    from crm_inbox.models import Message

    query = db.query(Message)
    if entity_ids is not None:
        query = query.filter(Message.entity_id.in_(list(entity_ids)))
    rows = query.order_by(Message.created_at.desc()).all()
    logger.debug(f"Loaded {len(rows)} message rows")
    return rows


@store_operation
def count_messages(db: Session) -> int:
    from crm_inbox.models import Message

    return db.query(func.count(Message.id)).scalar() or 0


@store_operation
def update_message(db: Session, message_id: str, **patch) -> bool:
    """
    Apply a column patch to one message. Returns False when the row is gone.
    """
    from crm_inbox.models import Message

    updated = (
        db.query(Message)
        .filter(Message.id == message_id)
        .update(patch, synchronize_session=False)
    )
    db.commit()
    return updated > 0


@store_operation
def delete_messages(
    db: Session,
    ids: Optional[Iterable[str]] = None,
    entity_id: Optional[str] = None,
    channel: Optional[str] = None,
    content: Optional[str] = None,
) -> int:
    """
    Delete message rows either by id, or by entity (+ channel, + content).

    Content is compared against every column a body may live in.
    Returns the number of rows removed; zero is not an error.
    """
    from crm_inbox.models import Message

    query = db.query(Message)
    if ids is not None:
        id_list = list(ids)
        if not id_list:
            return 0
        query = query.filter(Message.id.in_(id_list))
    elif entity_id is not None:
        query = query.filter(Message.entity_id == entity_id)
        if channel:
            query = query.filter(Message.channel == channel)
        if content:
            query = query.filter(or_(
                Message.content == content,
                Message.sms_body == content,
                Message.email_body == content,
                Message.subject == content,
            ))
    else:
        raise ValueError("delete_messages needs ids or entity_id")

    deleted = query.delete(synchronize_session=False)
    db.commit()
    return deleted


@store_operation
def list_orphaned_message_ids(db: Session) -> list:
    """Ids of message rows with no lead, or whose lead no longer exists."""
    from crm_inbox.models import Lead, Message

    known = select(Lead.id)
    rows = (
        db.query(Message.id)
        .filter(or_(Message.entity_id.is_(None), Message.entity_id.not_in(known)))
        .all()
    )
    return [row.id for row in rows]


# =============================================================================
# Entity Store
# =============================================================================

def decode_history(lead) -> list:
    """
    Parse a lead's booking_history into a list.

    Accepts a JSON string or an already-decoded list; anything else, including
    corrupt JSON, is logged and treated as an empty history.
    """
    raw = lead.booking_history
    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return raw
    try:
        history = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(
            "Invalid JSON in booking_history",
            extra={"entity_id": lead.id, "sample": str(raw)[:100]},
        )
        return []
    if not isinstance(history, list):
        logger.warning("booking_history is not a list", extra={"entity_id": lead.id})
        return []
    return history


@store_operation
def create_entity(db: Session, history: Optional[list] = None, **fields):
    """Insert a lead, keeping the newest HISTORY_MAX_ENTRIES of history."""
    from crm_inbox.models import Lead

    if history is not None:
        kept = history[-settings.HISTORY_MAX_ENTRIES:]
        if len(kept) < len(history):
            logger.info(f"Truncated booking_history for new lead from {len(history)} to {len(kept)} entries")
        fields["booking_history"] = json.dumps(kept)
    fields.setdefault("updated_at", utc_now_iso())
    lead = Lead(**fields)
    db.add(lead)
    db.commit()
    db.refresh(lead)
    return lead


@store_operation
def get_entity(db: Session, entity_id: str):
    from crm_inbox.models import Lead

    return db.query(Lead).filter(Lead.id == entity_id).first()


@store_operation
def list_entities(db: Session, ids: Optional[Iterable[str]] = None) -> list:
    from crm_inbox.models import Lead

    query = db.query(Lead)
    if ids is not None:
        id_list = list(ids)
        if not id_list:
            return []
        query = query.filter(Lead.id.in_(id_list))
    return query.all()


@store_operation
def get_entity_history(db: Session, entity_id: str) -> Optional[list]:
    """
    The lead's decoded history list, or None when the lead does not exist.
    """
    from crm_inbox.models import Lead

    lead = db.query(Lead).filter(Lead.id == entity_id).first()
    if lead is None:
        return None
    return decode_history(lead)


@store_operation
def put_entity_history(db: Session, entity_id: str, entries: list) -> bool:
    """
    Write back a lead's history exactly as given.

    Only create_entity caps the list; a read or delete write-back never
    drops entries. Returns False when the lead does not exist.
    """
    from crm_inbox.models import Lead

    updated = (
        db.query(Lead)
        .filter(Lead.id == entity_id)
        .update(
            {"booking_history": json.dumps(list(entries)), "updated_at": utc_now_iso()},
            synchronize_session=False,
        )
    )
    db.commit()
    return updated > 0
