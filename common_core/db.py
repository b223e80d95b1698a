from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from common_core.config import settings


class Base(DeclarativeBase):
    pass


def make_engine(db_url: str):
    kwargs = {"pool_pre_ping": True, "future": True}
    if db_url.startswith("sqlite"):
        # sessions are handed across threadpool workers by FastAPI
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(db_url, **kwargs)


def make_session(engine):
    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True
    )


fleet_engine = make_engine(settings.fleet_db_url)

FleetSessionLocal = make_session(fleet_engine)
