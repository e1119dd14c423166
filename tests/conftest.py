"""Shared test fixtures for boardsync tests."""

import sys
from pathlib import Path

import pytest

# Ensure board_server.py at the repo root is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from boardsync.feed import ChangeFeed
from boardsync.schema import Profile
from boardsync.store import BoardStore


@pytest.fixture
def store(tmp_path):
    """A fresh store on a temporary SQLite file."""
    return BoardStore(str(tmp_path / "board.db"), feed=ChangeFeed())


@pytest.fixture
def admin(store):
    return store.register_profile(Profile(id="admin-1", full_name="Ada Admin", email="ada@example.com", is_admin=True))


@pytest.fixture
def alice(store):
    return store.register_profile(Profile(id="alice", full_name="Alice", email="alice@example.com"))


@pytest.fixture
def bob(store):
    return store.register_profile(Profile(id="bob", full_name="Bob", email="bob@example.com"))


@pytest.fixture
def board(store, admin):
    """A project with three columns: backlog, doing, done."""
    project = store.create_project(admin, "Website", description="Relaunch")
    columns = {
        name: store.create_column(admin, project.id, name)
        for name in ("backlog", "doing", "done")
    }
    return project, columns
