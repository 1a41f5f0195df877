"""
Tests for transaction boundaries, transient-error retries and schema guards.
"""
from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from squadmarket.persistence.db import StoreUnavailable, run_in_transaction, transaction
from squadmarket.persistence.repositories import AccountRepository, SquadRepository


def test_transaction_commits(db_conn):
    with transaction(db_conn):
        AccountRepository().create(db_conn, "alice", "h")
    assert AccountRepository().get_by_username(db_conn, "alice") is not None


def test_transaction_rolls_back_on_error(db_conn):
    with pytest.raises(RuntimeError):
        with transaction(db_conn):
            AccountRepository().create(db_conn, "alice", "h")
            raise RuntimeError("abort")
    assert AccountRepository().get_by_username(db_conn, "alice") is None
    assert not db_conn.in_transaction


def test_nested_transaction_rolls_back_inner_only(db_conn):
    with transaction(db_conn):
        AccountRepository().create(db_conn, "outer", "h")
        with pytest.raises(RuntimeError):
            with transaction(db_conn):
                AccountRepository().create(db_conn, "inner", "h")
                raise RuntimeError("inner abort")
    assert AccountRepository().get_by_username(db_conn, "outer") is not None
    assert AccountRepository().get_by_username(db_conn, "inner") is None


def test_run_in_transaction_retries_transient(db_conn):
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        if calls["n"] < 3:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert run_in_transaction(db_conn, fn, attempts=3, backoff=0) == "ok"
    assert calls["n"] == 3


def test_run_in_transaction_gives_up(db_conn):
    def fn():
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(StoreUnavailable):
        run_in_transaction(db_conn, fn, attempts=2, backoff=0)


def test_non_transient_operational_error_propagates(db_conn):
    def fn():
        db_conn.execute("SELECT * FROM no_such_table")

    with pytest.raises(sqlite3.OperationalError):
        run_in_transaction(db_conn, fn, attempts=3, backoff=0)


def test_business_errors_not_retried(db_conn):
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        raise ValueError("rule")

    with pytest.raises(ValueError):
        run_in_transaction(db_conn, fn, attempts=3, backoff=0)
    assert calls["n"] == 1


def test_one_squad_per_account_enforced_by_store(db_conn):
    SquadRepository().create_claim(db_conn, "acc-1")
    with pytest.raises(sqlite3.IntegrityError):
        SquadRepository().create_claim(db_conn, "acc-1")


def test_budget_can_never_go_negative(db_conn, make_squad):
    a = make_squad()
    with pytest.raises(sqlite3.IntegrityError):
        db_conn.execute("UPDATE squads SET budget = -1 WHERE id = ?", (a.id,))
    with transaction(db_conn):
        assert SquadRepository().adjust_budget(db_conn, a.id, a.version, -(a.budget + 1), a.updated_at) is False
