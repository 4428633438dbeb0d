"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["RIPPLE_ADMIN_TOKEN"] = "test-admin-token"
os.environ["RIPPLE_DB"] = ":memory:"
# Ensure external auth is NOT used in tests
os.environ.pop("RIPPLE_AUTH_URL", None)
os.environ.pop("RIPPLE_AUTH_MODULE", None)
os.environ.pop("RIPPLE_REDIS_URL", None)


import pytest

from ripple import db
from ripple.metrics import metrics

pytest_plugins = ["ripple.testing"]


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset the thread-local database and metrics before each test.

    The shared-cache in-memory database survives close_db(), so tables are
    dropped and recreated.
    """
    conn = db.get_connection()
    db.reset_db(conn)
    metrics.reset()
    yield
    db.close_db()
