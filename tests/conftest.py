"""
Shared fixtures: a throwaway SQLite store per test and a Flask client bound to it.
"""

import pytest

from app import create_app
from db import SqliteStore


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite store in a temporary directory."""
    return SqliteStore(str(tmp_path / "data" / "survey.db"))


@pytest.fixture
def app(store):
    """Flask app wired to the temporary store."""
    return create_app(store=store, settings={"TESTING": True})


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client):
    """Client whose session already carries the dashboard login."""
    with client.session_transaction() as sess:
        sess["auth"] = True
    return client
