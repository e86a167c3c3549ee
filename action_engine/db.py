from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from action_engine.settings import settings


class Base(DeclarativeBase):
    pass


def get_engine(url: str | None = None):
    return create_engine(url or settings.DATABASE_URL, pool_pre_ping=True)


def make_session_factory(bind: Engine | Connection) -> sessionmaker:
    """Session factory for *bind*; worker threads each open their own session from it."""
    return sessionmaker(bind=bind, autoflush=False, autocommit=False)


engine = get_engine()
SessionLocal = make_session_factory(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
