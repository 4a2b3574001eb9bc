import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

DB_URL = os.getenv("DATABASE_URL", "sqlite:////tmp/supplychain.db")

class Base(DeclarativeBase):
    pass

def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # in-memory sqlite lives on one connection; share it across sessions
        return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)

def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)

def init_db(bind=None):
    import models  # noqa: F401  tables register on import
    Base.metadata.create_all(bind=bind or engine)

engine = make_engine(DB_URL)
SessionLocal = make_session_factory(engine)
