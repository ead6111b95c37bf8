"""
Pytest configuration and shared fixtures for PinGate tests.
"""

import os
from datetime import timedelta

import pytest

# Set test environment before importing the package
os.environ["FLASK_ENV"] = "testing"
os.environ["FLASK_SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["PRESENCE_TOKEN_SECRET"] = "test-presence-secret"
os.environ["LIGHTNING_PROVIDER"] = "dev"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PUBLIC_BASE_URL"] = "http://localhost:5000"
for _name in ("REDIS_URL", "REDIS_DSN", "REDIS_HOST"):
    os.environ.pop(_name, None)

from pingate.config import get_config  # noqa: E402
from pingate.database import close_all, get_session, init_all  # noqa: E402
from pingate.models import DeviceSession, Location, Pin, utc_now  # noqa: E402

AUSTIN = (30.2672, -97.7431)


@pytest.fixture
def config():
    """Application config for tests: in-memory SQLite, dev payments, no rate limits."""
    cfg = get_config()
    cfg.update(
        {
            "DATABASE_URL": "sqlite:///:memory:",
            "LIGHTNING_PROVIDER": "dev",
            "PRESENCE_TOKEN_SECRET": "test-presence-secret",
            "RATE_LIMIT_ENABLED": False,
            "FORCE_HTTPS": False,
            "FEATURE_DEV_PAYMENTS": True,
            "REDIS_URL": None,
            "REDIS_HOST": None,
        }
    )
    return cfg


@pytest.fixture
def db(config):
    """Fresh in-memory database; yields a session."""
    init_all(config)
    session = get_session()
    yield session
    session.close()
    close_all()


@pytest.fixture
def app(config):
    """Create and configure a test Flask application instance."""
    from pingate.factory import create_app

    flask_app = create_app(config)
    flask_app.config.update({"TESTING": True})

    with flask_app.app_context():
        yield flask_app

    close_all()


@pytest.fixture
def client(app):
    """Create a test client for the Flask application."""
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["pingate"]


def _seed(session, *objects):
    session.add_all(objects)
    session.commit()
    return objects


@pytest.fixture
def location(db):
    """The Austin board: radius 200m."""
    (loc,) = _seed(db, Location(slug="austin-congress", name="Congress Ave", lat=AUSTIN[0], lng=AUSTIN[1], radius_m=200))
    return loc


@pytest.fixture
def device_session(db):
    (device,) = _seed(db, DeviceSession())
    return device


@pytest.fixture
def other_device_session(db):
    (device,) = _seed(db, DeviceSession())
    return device


@pytest.fixture
def pin(db, location, device_session):
    """A pin old enough that the free deletion window has passed."""
    (p,) = _seed(
        db,
        Pin(
            location_id=location.id,
            device_session_id=device_session.id,
            body="hello",
            created_at=utc_now() - timedelta(hours=1),
        ),
    )
    return p


@pytest.fixture
def seeded(app):
    """Location, device session and pin created through the app's own database."""
    session = get_session()
    loc = Location(
        slug="austin-congress",
        name="Congress Ave",
        lat=AUSTIN[0],
        lng=AUSTIN[1],
        radius_m=200,
        is_bitcoin_merchant=True,
    )
    device = DeviceSession()
    session.add_all([loc, device])
    session.flush()
    p = Pin(location_id=loc.id, device_session_id=device.id, body="hi", created_at=utc_now() - timedelta(hours=1))
    session.add(p)
    session.commit()
    ids = {"location_id": loc.id, "location_slug": loc.slug, "device_session_id": device.id, "pin_id": p.id}
    session.close()
    return ids


# Pytest configuration hooks
def pytest_collection_modifyitems(config, items):
    """Add markers automatically from the test directory."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
