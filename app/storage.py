import logging
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, text, func, inspect, or_
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import IntegrityError, OperationalError

from app.config import settings
from app.exceptions import DuplicateKeyError, StaleRecordError, TransientStoreError
from app.utils import utc_now_iso

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "wa_messages"

# check_same_thread=False is required for SQLite because background tasks
# run in the threadpool, not on the thread that created the connection
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
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
        from app.models import WhatsAppMessage  # noqa: F401

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
        if not inspect(engine).has_table(MESSAGES_TABLE):
            logger.error(f"Database schema not applied: '{MESSAGES_TABLE}' table not found")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Record Store Adapter
# =============================================================================

class MessageStore:
    """
    Lookup, create and update of message records keyed by wa_message_id.

    Uniqueness of wa_message_id is enforced by the table, and every update is
    a compare-and-set on the record's version_id, so two workers doing
    read-modify-write on the same message can never silently overwrite each
    other. Storage failures surface as:

    - DuplicateKeyError: create() lost a race with another writer
    - StaleRecordError: update() lost a race with another writer
    - TransientStoreError: the database could not be reached
    """

    def __init__(self, db: Session):
        self.db = db

    def find_by_provider_id(self, wa_message_id: str):
        from app.models import WhatsAppMessage

        try:
            record = (
                self.db.query(WhatsAppMessage)
                .filter(WhatsAppMessage.wa_message_id == wa_message_id)
                .first()
            )
        except OperationalError as e:
            self.db.rollback()
            raise TransientStoreError(f"Lookup of {wa_message_id} failed: {e}") from e

        logger.debug(f"Message lookup {wa_message_id}: {'found' if record else 'not found'}")
        return record

    def create(self, fields: dict):
        """
        Insert a new record.

        Raises:
            DuplicateKeyError: a record with the same wa_message_id already exists
            TransientStoreError: the database could not be reached
        """
        from app.models import WhatsAppMessage

        wa_message_id = fields.get("wa_message_id")
        now = utc_now_iso()
        record = WhatsAppMessage(created_at=now, updated_at=now, **fields)

        try:
            self.db.add(record)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Duplicate key on create: {wa_message_id}")
            raise DuplicateKeyError(wa_message_id)
        except OperationalError as e:
            self.db.rollback()
            raise TransientStoreError(f"Create of {wa_message_id} failed: {e}") from e

        self.db.refresh(record)
        logger.info(f"Message record created: {wa_message_id}")
        return record

    def update(self, record, fields: dict):
        """
        Apply fields to a previously loaded record.

        Raises:
            StaleRecordError: the row changed since it was loaded
            TransientStoreError: the database could not be reached
        """
        wa_message_id = record.wa_message_id
        for key, value in fields.items():
            setattr(record, key, value)
        record.updated_at = utc_now_iso()

        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise StaleRecordError(wa_message_id) from e
        except OperationalError as e:
            self.db.rollback()
            raise TransientStoreError(f"Update of {wa_message_id} failed: {e}") from e

        self.db.refresh(record)
        logger.info(f"Message record updated: {wa_message_id}")
        return record

    # =========================================================================
    # Read-side queries
    # =========================================================================

    def list_messages(
        self,
        limit: int = 50,
        offset: int = 0,
        direction: Optional[str] = None,
        status: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Tuple[list, int]:
        """
        Retrieve records with pagination and filtering.

        Args:
            limit: Maximum number of records to return (1-100)
            offset: Number of records to skip
            direction: incoming or outgoing
            status: exact status match
            phone: matches either from_phone or to_phone

        Returns:
            Tuple of (records list, total count matching filters)
        """
        from app.models import WhatsAppMessage

        query = self.db.query(WhatsAppMessage)

        if direction:
            query = query.filter(WhatsAppMessage.direction == direction)
        if status:
            query = query.filter(WhatsAppMessage.status == status)
        if phone:
            query = query.filter(
                or_(WhatsAppMessage.from_phone == phone, WhatsAppMessage.to_phone == phone)
            )

        total = query.count()
        records = query.order_by(WhatsAppMessage.id.asc()).offset(offset).limit(limit).all()
        logger.info(f"Retrieved {len(records)} of {total} total messages")

        return records, total

    def get_stats(self) -> dict:
        """
        Compute record counts for the /stats endpoint.

        Placeholders are records created by a status event whose message
        event has not been reconciled yet (message_type still NULL).
        """
        from app.models import WhatsAppMessage

        total_messages = self.db.query(func.count(WhatsAppMessage.id)).scalar() or 0

        by_status = dict(
            self.db.query(WhatsAppMessage.status, func.count(WhatsAppMessage.id))
            .group_by(WhatsAppMessage.status)
            .all()
        )
        by_direction = dict(
            self.db.query(WhatsAppMessage.direction, func.count(WhatsAppMessage.id))
            .group_by(WhatsAppMessage.direction)
            .all()
        )
        placeholders = (
            self.db.query(func.count(WhatsAppMessage.id))
            .filter(WhatsAppMessage.message_type.is_(None))
            .scalar()
            or 0
        )

        logger.info(f"Stats computed: {total_messages} messages, {placeholders} placeholders")

        return {
            "total_messages": total_messages,
            "by_status": by_status,
            "by_direction": by_direction,
            "placeholders": placeholders,
        }
