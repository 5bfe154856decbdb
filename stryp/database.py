"""SQLAlchemy engine, session factory, and init."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from stryp.config import DATABASE_URL

engine = create_engine(DATABASE_URL, echo=False, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(bind=engine)


def get_session() -> Session:
    return SessionLocal()


def init_db():
    from stryp.models import Base
    Base.metadata.create_all(engine)
