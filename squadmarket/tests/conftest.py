"""
Shared fixtures: a temporary database and fast retry settings per test.
"""
from __future__ import annotations

from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from squadmarket.config import get_settings, reset_settings
from squadmarket.persistence.db import get_connection, init_db, set_db_path
from squadmarket.persistence.repositories import SquadRepository
from squadmarket.services.provisioning import Provisioner


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Use a temporary DB for each test; no in-process consumer, near-zero backoff."""
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("SQUADMARKET_DB_PATH", str(db_path))
    monkeypatch.setenv("SQUADMARKET_TX_BACKOFF", "0.001")
    monkeypatch.setenv("SQUADMARKET_POLL_INTERVAL", "0.01")
    monkeypatch.setenv("SQUADMARKET_RUN_CONSUMER", "0")
    monkeypatch.setenv("SQUADMARKET_ADMIN_USERNAMES", "ops")
    reset_settings()
    set_db_path(db_path)
    init_db(db_path=db_path)
    yield db_path
    reset_settings()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def db_conn(isolated_db):
    conn = get_connection()
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def make_squad(db_conn, settings):
    """Provision a ready squad for a fresh account; returns the Squad."""
    provisioner = Provisioner(settings)
    counter = {"n": 0}

    def _make(account_ref: str | None = None, seed: int | None = None):
        counter["n"] += 1
        ref = account_ref or f"account-{counter['n']}"
        outcome = provisioner.handle_account_created(db_conn, ref, seed=seed if seed is not None else counter["n"])
        assert outcome.squad is not None
        return SquadRepository().get(db_conn, outcome.squad.id)

    return _make
