"""Tests for company-scoped database helpers."""

from dataclasses import dataclass, field

import psycopg
import pytest
from app.core.auth import AuthContext
from app.core.company_context import reset_company_context, set_company_context
from app.core.db import apply_company_settings, connection_from_dsn, storage_call
from app.core.errors import StorageError


@dataclass
class DummyCursor:
    statements: list

    def execute(self, statement, params=None):
        self.statements.append((statement, params))

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@dataclass
class DummyConnection:
    statements: list = field(default_factory=list)

    def cursor(self):
        return DummyCursor(self.statements)


def test_apply_company_settings_explicit_company():
    conn = DummyConnection()

    apply_company_settings(conn, "acme")

    assert conn.statements == [("SELECT set_config('app.company_id', %s, false)", ("acme",))]


def test_apply_company_settings_from_context():
    conn = DummyConnection()
    token = set_company_context(AuthContext(user_id="user-1", company_id="globex"))
    try:
        apply_company_settings(conn)
    finally:
        reset_company_context(token)

    assert conn.statements[0][1] == ("globex",)


def test_apply_company_settings_without_company_raises():
    with pytest.raises(RuntimeError):
        apply_company_settings(DummyConnection())


def test_storage_call_wraps_driver_errors():
    @storage_call
    def broken():
        raise psycopg.OperationalError("connection reset")

    with pytest.raises(StorageError, match="broken failed"):
        broken()


def test_storage_call_passes_other_errors_through():
    @storage_call
    def broken():
        raise KeyError("id")

    with pytest.raises(KeyError):
        broken()


def test_connection_from_dsn_reports_connect_failure(monkeypatch):
    def refuse(*args, **kwargs):
        raise psycopg.OperationalError("refused")

    monkeypatch.setattr(psycopg, "connect", refuse)

    with pytest.raises(StorageError, match="Could not connect"):
        with connection_from_dsn("postgresql://localhost/none"):
            pass


class _TrackedConnection:
    def __init__(self):
        self.calls = []

    def commit(self):
        self.calls.append("commit")

    def rollback(self):
        self.calls.append("rollback")

    def close(self):
        self.calls.append("close")


def test_connection_from_dsn_commits_and_rolls_back(monkeypatch):
    conns = []

    def connect(dsn, autocommit=False):
        conns.append(_TrackedConnection())
        return conns[-1]

    monkeypatch.setattr(psycopg, "connect", connect)

    with connection_from_dsn("postgresql://db"):
        pass
    with pytest.raises(ValueError):
        with connection_from_dsn("postgresql://db"):
            raise ValueError("boom")

    assert conns[0].calls == ["commit", "close"]
    assert conns[1].calls == ["rollback", "close"]
