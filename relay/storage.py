import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from starlette.concurrency import run_in_threadpool

from relay.errors import ConfigurationError, StoreError
from relay.schemas import IncomingMessage, StageOutcome

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def create_db_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine for the configured store.

    check_same_thread=False is required for SQLite because writes run in the
    Starlette thread pool.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True,
        echo=False,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database on dialect: {engine.dialect.name}")
    try:
        # Import models to register them with Base.metadata
        from relay.models import Exchange  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(session_factory: sessionmaker) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the exchanges table exists, False otherwise.
    """
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            if not inspect(db.get_bind()).has_table("exchanges"):
                logger.error("Database schema not applied: 'exchanges' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def received_at(timestamp: Optional[str]) -> str:
    """
    Convert the provider's epoch-seconds timestamp to ISO-8601 UTC.

    Falls back to the current server time when the timestamp is missing or
    not numeric.
    """
    if timestamp:
        try:
            seconds = float(timestamp)
            return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime(ISO_FORMAT)
        except (TypeError, ValueError, OverflowError, OSError):
            logger.warning(f"Unparseable message timestamp: {timestamp!r}, using server time")
    return utc_now()


def _upsert_statement(dialect_name: str, values: dict):
    """Build INSERT ... ON CONFLICT DO UPDATE for dialects that support it."""
    from relay.models import Exchange

    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        return None

    stmt = insert(Exchange).values(**values)
    # created_at keeps the first write; everything else is last-write-wins
    overwrite = {
        key: getattr(stmt.excluded, key)
        for key in values
        if key not in ("message_id", "created_at")
    }
    return stmt.on_conflict_do_update(
        index_elements=[Exchange.message_id],
        set_=overwrite,
    )


# =============================================================================
# Exchange Recorder
# =============================================================================

class ExchangeRecorder:
    """
    Persists one row per inbound message, keyed by message id.

    A recorder built without a session factory has persistence disabled:
    record() skips and upsert() raises ConfigurationError.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    @property
    def enabled(self) -> bool:
        return self.session_factory is not None

    def _upsert(self, values: dict) -> None:
        from relay.models import Exchange

        with self.session_factory() as db:
            try:
                stmt = _upsert_statement(db.get_bind().dialect.name, values)
                if stmt is not None:
                    db.execute(stmt)
                else:
                    db.merge(Exchange(**values))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(f"Failed to upsert exchange {values['message_id']}: {e}") from e

    async def upsert(self, message: IncomingMessage, reply: Optional[str]) -> None:
        """
        Insert or overwrite the exchange row for this message.

        Args:
            message: The inbound message
            reply: Generated reply text

        Raises:
            ConfigurationError: Persistence is disabled
            StoreError: The database write failed
        """
        if not self.enabled:
            raise ConfigurationError("DATABASE_URL is not configured")

        now = utc_now()
        values = {
            "message_id": message.message_id,
            "from_number": message.from_number,
            "received_text": message.text,
            "received_at": received_at(message.timestamp),
            "reply": reply,
            "created_at": now,
            "updated_at": now,
        }

        logger.debug(f"Upserting exchange: id={message.message_id}")
        await run_in_threadpool(self._upsert, values)
        logger.info(f"Exchange stored: {message.message_id}")

    async def record(self, message: IncomingMessage, reply: Optional[str]) -> StageOutcome:
        """Best-effort upsert: failures are logged and returned, never raised."""
        if not self.enabled:
            logger.debug("Persistence disabled, not recording exchange")
            return StageOutcome(stage="record", status="skipped", error="persistence disabled")

        try:
            await self.upsert(message, reply)
        except StoreError as e:
            logger.error(str(e))
            return StageOutcome(stage="record", status="failed", error=str(e))
        return StageOutcome(stage="record", status="ok")

    def get_exchange(self, message_id: str):
        """
        Retrieve an exchange by its message ID.

        Returns:
            Exchange object if found, None otherwise
        """
        from relay.models import Exchange

        if not self.enabled:
            return None
        with self.session_factory() as db:
            return db.query(Exchange).filter(Exchange.message_id == message_id).first()

    def count(self) -> int:
        from relay.models import Exchange

        if not self.enabled:
            return 0
        with self.session_factory() as db:
            return db.query(Exchange).count()
