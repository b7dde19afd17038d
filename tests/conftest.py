"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any application import,
so the cached settings and the module-level engine pick them up.
"""

import os

os.environ["DATABASE_URL"] = "sqlite:///./test_social_sync.db"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["WEBHOOK_VERIFY_TOKEN"] = "verify-me"
os.environ["ADMIN_UI_URL"] = "http://admin.test/admin"
os.environ.pop("FACEBOOK_APP_ID", None)
os.environ.pop("FACEBOOK_APP_SECRET", None)
os.environ.pop("ALERT_WEBHOOK_URL", None)

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from social_sync.config import get_settings
get_settings.cache_clear()

from social_sync.main import build_services  # noqa: E402
from social_sync.storage import Base, SessionLocal, engine  # noqa: E402
from social_sync import models  # noqa: E402,F401
from tests.fakes import FakePlatform  # noqa: E402


@pytest.fixture(autouse=True)
def tables():
    """Fresh schema for every test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def services(fake_platform):
    """Service graph wired to the demo platform."""
    return build_services(get_settings(), {"demo": fake_platform}, SessionLocal)
