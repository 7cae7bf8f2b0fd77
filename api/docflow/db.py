import logging
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import text
from .config import DATABASE_URL

logger = logging.getLogger(__name__)

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True, connect_args=_connect_args)


def init_db():
    from . import models  # noqa: F401  registers the tables
    SQLModel.metadata.create_all(engine)
    _ensure_event_append_only()


def get_session():
    with Session(engine) as session:
        yield session


def new_session() -> Session:
    # for workers, which run outside the request scope
    return Session(engine)


def _ensure_event_append_only():
    if engine.dialect.name != "postgresql":
        return
    with engine.begin() as conn:
        conn.execute(text(
            """
            CREATE OR REPLACE FUNCTION event_append_only() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'event table is append-only';
            END;
            $$ LANGUAGE plpgsql
            """
        ))
        exists = conn.execute(
            text("SELECT 1 FROM pg_trigger WHERE tgname = 'event_no_update_delete'")
        ).first()
        if exists:
            return
        conn.execute(text(
            "CREATE TRIGGER event_no_update_delete BEFORE UPDATE OR DELETE ON event "
            "FOR EACH ROW EXECUTE FUNCTION event_append_only()"
        ))
        logger.info("installed append-only trigger on event table")
