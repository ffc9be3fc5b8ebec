from contextlib import contextmanager
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

from app.config import get_settings

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

# undefined_table, undefined_column
_SCHEMA_MISMATCH_SQLSTATE = {"42P01", "42703"}

SCHEMA_BOOTSTRAP_STATE: dict[str, object] = {
    "enabled": False,
    "attempted": False,
    "ok": None,
    "detail": None,
}


class DatabaseConfigurationError(RuntimeError):
    """Raised when DB settings are missing or invalid."""


class DatabaseConnectionError(RuntimeError):
    """Raised when a DB connection cannot be established."""


def classify_connection_error(exc: psycopg.Error) -> str:
    sqlstate = str(getattr(exc, "sqlstate", "") or "").upper()
    if sqlstate.startswith("28"):
        return "auth_failed"
    if sqlstate in {"08001", "08006"}:
        return "network_error"

    message = str(exc).lower()
    if "could not translate host name" in message:
        return "invalid_host"
    if "connection refused" in message:
        return "connection_refused"
    if "timeout expired" in message or "timed out" in message:
        return "network_timeout"
    return "unknown"


def is_schema_mismatch_sqlstate(sqlstate: str | None) -> bool:
    return sqlstate in _SCHEMA_MISMATCH_SQLSTATE


@contextmanager
def get_connection():
    try:
        settings = get_settings()
    except Exception as exc:  # noqa: BLE001
        raise DatabaseConfigurationError("database settings are not configured") from exc

    database_url = str(settings.database_url or "").strip()
    if not database_url:
        raise DatabaseConfigurationError("DATABASE_URL is empty")

    try:
        conn = psycopg.connect(database_url, row_factory=dict_row)
    except psycopg.Error as exc:
        reason = classify_connection_error(exc)
        raise DatabaseConnectionError(f"database connection failed ({reason})") from exc

    try:
        yield conn
    finally:
        conn.close()


def run_schema(schema_path: str | Path = SCHEMA_PATH) -> None:
    sql = Path(schema_path).read_text(encoding="utf-8")
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(sql)
        conn.commit()


def apply_schema_bootstrap(enabled: bool) -> dict[str, object]:
    SCHEMA_BOOTSTRAP_STATE["enabled"] = enabled
    if not enabled:
        SCHEMA_BOOTSTRAP_STATE.update(attempted=False, ok=None, detail="disabled")
        return SCHEMA_BOOTSTRAP_STATE

    SCHEMA_BOOTSTRAP_STATE["attempted"] = True
    try:
        run_schema()
    except Exception as exc:  # noqa: BLE001
        SCHEMA_BOOTSTRAP_STATE.update(ok=False, detail=f"{type(exc).__name__}: {exc}")
        return SCHEMA_BOOTSTRAP_STATE

    SCHEMA_BOOTSTRAP_STATE.update(ok=True, detail="schema applied")
    return SCHEMA_BOOTSTRAP_STATE
