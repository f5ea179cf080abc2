import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from errors import translate_db_errors

logger = logging.getLogger(__name__)

# ── Base class ───────────────────────────────────────────────
# All models inherit from this
Base = declarative_base()


class Database:
    """
    Connection/transaction provider.

    Built once on startup from a URL, handed to repositories and services,
    and closed on shutdown. There is no module-level engine.
    """

    def __init__(self, url: str, echo: bool = False, **engine_kwargs):
        self.url = url
        connect_args = engine_kwargs.pop("connect_args", {})

        # check_same_thread=False is required for SQLite + FastAPI
        # because requests may be handled on different threads
        if url.startswith("sqlite"):
            connect_args.setdefault("check_same_thread", False)

        self.engine = create_engine(url, echo=echo, connect_args=connect_args, **engine_kwargs)

        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False
        )

    # ── Lifecycle ────────────────────────────────────────────

    def init(self):
        """Create all tables. Safe to call on every startup."""
        import models  # noqa: F401  (registers tables on Base.metadata)

        Base.metadata.create_all(bind=self.engine)

    def close(self):
        """Release every pooled connection."""
        self.engine.dispose()

    # ── Sessions ─────────────────────────────────────────────

    @contextmanager
    def session(self):
        """Scoped session; always closed, never committed implicitly."""
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    @contextmanager
    def transaction(self):
        """
        Scoped session inside BEGIN / COMMIT / ROLLBACK.

        Any exception raised in the block rolls back every statement
        issued so far and propagates unchanged; driver errors raised by
        the block or the commit come out as Conflict / TransactionFailure.
        """
        db = self.SessionLocal()
        try:
            with translate_db_errors("transaction"):
                yield db
                db.commit()
        except Exception as e:
            db.rollback()
            logger.warning("Transaction rolled back: %s", e)
            raise
        finally:
            db.close()

    def get_db(self):
        """FastAPI dependency: one session per request."""
        with self.session() as db:
            yield db


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


