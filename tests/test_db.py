import pytest

import app.db as db_module
from app.db import (
    DatabaseConfigurationError,
    apply_schema_bootstrap,
    classify_connection_error,
    get_connection,
    is_schema_mismatch_sqlstate,
)
from app.config import get_settings


class _FakePsycopgError(Exception):
    def __init__(self, message: str, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (_FakePsycopgError("password authentication failed", "28P01"), "auth_failed"),
        (_FakePsycopgError("server is down", "08006"), "network_error"),
        (_FakePsycopgError('could not translate host name "bad" to address'), "invalid_host"),
        (_FakePsycopgError("connection refused"), "connection_refused"),
        (_FakePsycopgError("timeout expired"), "network_timeout"),
        (_FakePsycopgError("some other message"), "unknown"),
    ],
)
def test_classify_connection_error(error, expected):  # noqa: ANN001
    assert classify_connection_error(error) == expected


@pytest.mark.parametrize(("sqlstate", "expected"), [("42P01", True), ("42703", True), ("23505", False), (None, False)])
def test_is_schema_mismatch_sqlstate(sqlstate, expected):  # noqa: ANN001
    assert is_schema_mismatch_sqlstate(sqlstate) is expected


def test_get_connection_requires_database_url(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "")
    get_settings.cache_clear()
    try:
        with pytest.raises(DatabaseConfigurationError):
            with get_connection():
                pass
    finally:
        get_settings.cache_clear()


def test_schema_bootstrap_disabled_does_not_touch_database(monkeypatch):
    def _fail():
        raise AssertionError("schema should not be applied")

    monkeypatch.setattr(db_module, "run_schema", _fail)
    state = apply_schema_bootstrap(False)

    assert state["enabled"] is False
    assert state["attempted"] is False
    assert state["detail"] == "disabled"


def test_schema_bootstrap_records_failure(monkeypatch):
    def _fail():
        raise DatabaseConfigurationError("DATABASE_URL is empty")

    monkeypatch.setattr(db_module, "run_schema", _fail)
    state = apply_schema_bootstrap(True)

    assert state["attempted"] is True
    assert state["ok"] is False
    assert state["detail"] == "DatabaseConfigurationError: DATABASE_URL is empty"


def test_schema_bootstrap_records_success(monkeypatch):
    monkeypatch.setattr(db_module, "run_schema", lambda: None)
    state = apply_schema_bootstrap(True)

    assert state["ok"] is True
    assert state["detail"] == "schema applied"


def test_schema_file_defines_both_tables():
    sql = db_module.SCHEMA_PATH.read_text(encoding="utf-8")
    assert "CREATE TABLE IF NOT EXISTS raw_payloads" in sql
    assert "CREATE TABLE IF NOT EXISTS marriage_summaries" in sql
