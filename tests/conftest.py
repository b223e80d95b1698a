import os
import tempfile
from datetime import timedelta

import pytest

# Ensure required secrets are present before any app/settings import during test collection.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "dev_jwt_secret_32_chars_minimum__123456")

_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _run_alembic_upgrade_head() -> None:
    from alembic import command
    from alembic.config import Config

    # no ini file: env.py would otherwise reset logging for the whole test run
    cfg = Config()
    cfg.set_main_option("script_location", os.path.join(_ROOT, "alembic"))
    command.upgrade(cfg, "head")


def pytest_configure():
    fd, path = tempfile.mkstemp(prefix="fleettrack_test_", suffix=".db")
    os.close(fd)
    os.environ["FLEET_DB_URL"] = f"sqlite+pysqlite:///{path}"

    _run_alembic_upgrade_head()


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    from common_core.db import Base, fleet_engine

    with fleet_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db():
    from common_core.db import FleetSessionLocal

    session = FleetSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def now():
    from apps.fleet_backend.events import utcnow

    return utcnow().replace(microsecond=0)


@pytest.fixture
def days_ago(now):
    def _at(n: float):
        return now - timedelta(days=n)

    return _at


@pytest.fixture
def add_unit(db, now):
    from apps.fleet_backend.models import Unit

    def _add(unit_id: str = "U1", unit_number: str | None = None, **kw):
        u = Unit(id=unit_id, unit_number=unit_number or f"M-{unit_id}", created_at_utc=now, **kw)
        db.add(u)
        db.commit()
        return u

    return _add


@pytest.fixture
def add_extension(db, now):
    from apps.fleet_backend.models import Extension

    def _add(extension_id: str = "X1", unit_number: str | None = None, **kw):
        x = Extension(id=extension_id, unit_number=unit_number or f"EXT-{extension_id}", created_at_utc=now, **kw)
        db.add(x)
        db.commit()
        return x

    return _add


@pytest.fixture
def add_event(db, now):
    """Insert an allocation_events row directly, bypassing validation."""
    from apps.fleet_backend.models import AllocationEvent

    counter = {"n": 0}

    def _add(event_type: str, event_date, unit_id: str | None = "U1", status: str = "approved", **kw):
        counter["n"] += 1
        ev = AllocationEvent(
            id=kw.pop("id", f"evt_{counter['n']:04d}"),
            event_type=event_type,
            unit_id=unit_id,
            event_date=event_date,
            status=status,
            created_by="seed",
            created_at_utc=kw.pop("created_at_utc", now + timedelta(seconds=counter["n"])),
            **kw,
        )
        db.add(ev)
        db.commit()
        return ev

    return _add


@pytest.fixture
def auth_headers():
    from common_core.security import issue_jwt

    def _headers(*roles: str, sub: str = "user-1") -> dict:
        return {"Authorization": f"Bearer {issue_jwt(sub, list(roles))}"}

    return _headers
