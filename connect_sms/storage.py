import logging
from typing import Generator, Iterable, Optional, Set, Tuple

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from connect_sms.config import settings

logger = logging.getLogger(__name__)

# The store accepts at most this many values in a single IN filter
IN_QUERY_LIMIT = 10

# Tables the readiness probe expects to find
REQUIRED_TABLES = ("churches", "users", "visitors", "messages", "admin_connect")


def _connect_args(database_url: str) -> dict:
    # SQLite connections are shared with FastAPI's threadpool
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)

if engine.dialect.name == "sqlite":
    # pysqlite issues BEGIN only before the first write; every transaction
    # here starts holding the write lock instead, so reads see no concurrent writer
    @event.listens_for(engine, "connect")
    def _sqlite_manual_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """Create any missing tables. Runs once from the application lifespan."""
    from connect_sms import models  # noqa: F401  registers the tables on Base

    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        logger.error(f"Could not create tables on {engine.url.render_as_string(hide_password=True)}: {e}")
        raise
    logger.info("Database schema ready")


def close_db() -> None:
    """Release pooled connections. Called during application shutdown."""
    engine.dispose()
    logger.info("Database connections released")


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session, closed once the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """True when the database answers and every table in REQUIRED_TABLES exists."""
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))

        inspector = inspect(engine)
        missing = [table for table in REQUIRED_TABLES if not inspector.has_table(table)]
    except Exception as e:
        logger.error(f"Database unreachable: {e}")
        return False

    if missing:
        logger.error(f"Database schema incomplete, missing tables: {', '.join(missing)}")
        return False
    return True


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(db: Session, collection: str, **fields):
    """
    Add one message document to a collection and commit it.

    Args:
        db: Database session
        collection: Collection path the document belongs to
        **fields: Message columns

    Returns:
        The stored Message

    Raises:
        IntegrityError: the global collection already holds this twilio_sid,
            or the document would carry both member_id and visitor_id.
            The session is rolled back before the error propagates.
    """
    from connect_sms.models import Message

    message = Message(collection=collection, **fields)
    logger.debug(f"Writing message to {collection}: twilio_sid={fields.get('twilio_sid')}")

    try:
        db.add(message)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Message stored in {collection}: {message.id}")
    return message


def get_message_by_id(db: Session, collection: str, message_id: str):
    """
    Retrieve a message document by its ID within a collection.

    Returns:
        Message object if found, None otherwise
    """
    from connect_sms.models import Message

    result = (
        db.query(Message)
        .filter(Message.collection == collection, Message.id == message_id)
        .first()
    )
    logger.debug(f"Message lookup {collection}/{message_id}: {'found' if result else 'not found'}")
    return result


def find_existing_sids(db: Session, collection: str, sids: Iterable[str]) -> Set[str]:
    """
    Return the subset of ``sids`` already stored in ``collection``.

    Membership is checked with IN filters of at most IN_QUERY_LIMIT values.
    """
    from connect_sms.models import Message

    pending = [sid for sid in dict.fromkeys(sids) if sid]
    existing: Set[str] = set()

    for start in range(0, len(pending), IN_QUERY_LIMIT):
        chunk = pending[start:start + IN_QUERY_LIMIT]
        rows = (
            db.query(Message.twilio_sid)
            .filter(Message.collection == collection, Message.twilio_sid.in_(chunk))
            .all()
        )
        existing.update(row.twilio_sid for row in rows)

    logger.debug(f"Existing sids in {collection}: {len(existing)} of {len(pending)}")
    return existing


def get_messages(
    db: Session,
    collection: str,
    limit: int = 50,
    offset: int = 0,
    member_id: Optional[str] = None,
    visitor_id: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve messages of one collection with pagination and filtering.

    Args:
        db: Database session
        collection: Collection path to read
        limit: Maximum number of messages to return (1-100)
        offset: Number of messages to skip
        member_id: Only messages attributed to this member
        visitor_id: Only messages attributed to this visitor

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from connect_sms.models import Message

    logger.info(f"Querying {collection}: limit={limit}, offset={offset}")
    logger.debug(f"Filters: member_id={member_id}, visitor_id={visitor_id}")

    query = db.query(Message).filter(Message.collection == collection)

    if member_id:
        query = query.filter(Message.member_id == member_id)

    if visitor_id:
        query = query.filter(Message.visitor_id == visitor_id)

    # Get total count before pagination
    total = query.count()

    # Apply ordering: timestamp ASC, id ASC (deterministic)
    query = query.order_by(Message.timestamp.asc(), Message.id.asc())

    messages = query.offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(messages)} of {total} total messages")

    return messages, total
