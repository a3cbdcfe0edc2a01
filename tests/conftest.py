import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

# Settings are read at import time, so they have to be in place before any backend import
os.environ.setdefault("LICENSE_SECRET_KEY", "test-license-secret")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from activation import ActivationCodec
from license_cache import LicenseStatusCache
from license_service import LicenseService
from models import Base


class FakeClock:
    """Wall clock for expiry decisions"""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class FakeTicker:
    """Monotonic clock for cache ages"""

    def __init__(self, start: float = 1000.0):
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float):
        self.current += seconds


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0))


@pytest.fixture
def ticker():
    return FakeTicker()


@pytest.fixture
def codec():
    return ActivationCodec("unit-test-secret")


@pytest.fixture
def cache(ticker):
    return LicenseStatusCache(ttl=300, clock=ticker)


@pytest.fixture
def service(codec, cache, clock):
    return LicenseService(codec, cache, clock=clock)
