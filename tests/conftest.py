"""
Pytest configuration and fixtures
"""
import os
import sys
import tempfile
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Keep the import-time store and admin password away from real settings.
os.environ.setdefault("TORA_DATA_DIR", tempfile.mkdtemp(prefix="tora-test-"))
os.environ["ADMIN_PASSWORD"] = "test-admin-password"
os.environ.pop("ADMIN_PASSWORD_HASH", None)
os.environ.pop("GEMINI_API_KEY", None)

import app as app_module  # noqa: E402
from store import DocumentStore  # noqa: E402

NATIONAL_ID = "1199080012345671"
ADMIN_PASSWORD = "test-admin-password"


@pytest.fixture
def store(tmp_path, monkeypatch):
    """A fresh document store wired into the app for each test."""
    db = DocumentStore(str(tmp_path / "data"))
    monkeypatch.setattr(app_module, "db", db)
    return db


@pytest.fixture
def client(store):
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as client:
        yield client


@pytest.fixture
def voter_client(client):
    with client.session_transaction() as sess:
        sess["national_id"] = NATIONAL_ID
    return client


@pytest.fixture
def admin_client(client):
    with client.session_transaction() as sess:
        sess["admin_logged_in"] = True
    return client


@pytest.fixture
def ballot(store):
    """Two groups with candidates; returns the created IDs."""
    presidential = store.add("groups", {"name": "Presidential", "description": ""})
    senate = store.add("groups", {"name": "Senate", "description": ""})
    alice = store.add("candidates", {
        "name": "Alice", "description": "", "imageUrl": "https://example.com/a.png", "groupId": presidential,
    })
    bob = store.add("candidates", {
        "name": "Bob", "description": "", "imageUrl": "https://example.com/b.png", "groupId": presidential,
    })
    carol = store.add("candidates", {
        "name": "Carol", "description": "", "imageUrl": "https://example.com/c.png", "groupId": senate,
    })
    return {
        "presidential": presidential,
        "senate": senate,
        "alice": alice,
        "bob": bob,
        "carol": carol,
    }
