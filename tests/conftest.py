"""Shared fixtures: a throwaway SQLite store, config, services and a Flask client."""

import sys
from pathlib import Path

import pytest

# Ensure the repository root is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from huntly.auth import AuthGate
from huntly.board import KanbanBoard
from huntly.config import Config
from huntly.store import CrmStore

TEST_SECRET = "test-secret-do-not-use-in-production"


@pytest.fixture
def config(tmp_path):
    return Config(db_path=str(tmp_path / "huntly.db"), jwt_secret=TEST_SECRET)


@pytest.fixture
def store(config):
    return CrmStore(config.db_path)


@pytest.fixture
def board(store):
    return KanbanBoard(store)


@pytest.fixture
def gate(store, config):
    gate = AuthGate(store, config)
    yield gate
    gate.close()


@pytest.fixture
def app(config, store):
    from crm_server import create_app

    app = create_app(config, store)
    app.config["TESTING"] = True
    yield app
    app.extensions["huntly"]["gate"].close()


@pytest.fixture
def client(app):
    return app.test_client()
