import logging

import pytest

from nurseshift.app import create_app
from nurseshift.models import db

# ---------------------------------------------------------------------------
# Global logging config for verbose, readable test output
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
)
logger = logging.getLogger("tests")


# ---------------------------------------------------------------------------
# Pytest fixtures: app, app context with a clean DB, test client
# ---------------------------------------------------------------------------
@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "GENERATION_TIMEOUT_SECONDS": 60,
        "OPTIMIZER_MAX_SECONDS": 5,
        "ROSTER_LOCK_TIMEOUT_SECONDS": 1,
    })
    return app


@pytest.fixture
def app_ctx(app):
    """
    - Uses an in-memory SQLite database.
    - Creates all tables for the test and drops them afterwards.
    """
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app_ctx):
    return app_ctx.test_client()
