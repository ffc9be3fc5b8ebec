import copy
import time
from datetime import datetime
from threading import Lock
from typing import Any

from psycopg.types.json import Jsonb

from app.config import get_settings
from app.models.schemas import NormalizedSummary, StoredSummary
from app.services.summary_view import stored_summaries_from_rows

ENTRY_PREVIEW_CHARS = 120

_API_READ_CACHE: dict[str, tuple[float, Any]] = {}
_API_READ_CACHE_LOCK = Lock()


def clear_api_read_cache() -> None:
    with _API_READ_CACHE_LOCK:
        _API_READ_CACHE.clear()


def _api_read_cache_ttl_sec() -> float:
    try:
        ttl = float(get_settings().api_read_cache_ttl_sec)
    except Exception:  # noqa: BLE001
        return 0.0
    return max(ttl, 0.0)


def _api_read_cache_get(cache_key: str) -> Any | None:
    ttl = _api_read_cache_ttl_sec()
    if ttl <= 0:
        return None
    now = time.monotonic()
    with _API_READ_CACHE_LOCK:
        item = _API_READ_CACHE.get(cache_key)
        if item is None:
            return None
        expire_at, payload = item
        if expire_at <= now:
            _API_READ_CACHE.pop(cache_key, None)
            return None
        return copy.deepcopy(payload)


def _api_read_cache_set(cache_key: str, payload: Any) -> None:
    ttl = _api_read_cache_ttl_sec()
    if ttl <= 0:
        return
    with _API_READ_CACHE_LOCK:
        _API_READ_CACHE[cache_key] = (time.monotonic() + ttl, copy.deepcopy(payload))


def _api_read_cache_key(*parts: object) -> str:
    return "|".join(str(part) for part in parts)


class PostgresRepository:
    """Raw payload archive plus the append-only summary log.

    Write methods do not commit; the caller commits once both the raw
    payload and its summary are staged so a failed ingestion leaves nothing
    behind.
    """

    def __init__(self, conn):
        self.conn = conn

    def commit(self) -> None:
        self.conn.commit()
        clear_api_read_cache()

    def rollback(self) -> None:
        self.conn.rollback()

    def insert_raw_payload(self, source_url: str, raw_json: str, retrieved_at: datetime) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO raw_payloads (source_url, raw_json, retrieved_at)
                VALUES (%s, %s::jsonb, %s)
                RETURNING id
                """,
                (source_url, raw_json, retrieved_at),
            )
            return cur.fetchone()["id"]

    def append_summary(self, summary: NormalizedSummary, raw_payload_id: int | None, created_at: datetime) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO marriage_summaries (raw_payload_id, source, summary, created_at)
                VALUES (%s, %s, %s, %s)
                RETURNING id
                """,
                (raw_payload_id, summary.source, Jsonb(summary.to_document()), created_at),
            )
            return cur.fetchone()["id"]

    def list_recent_summaries(self, limit: int) -> list[StoredSummary]:
        cache_key = _api_read_cache_key("recent_summaries", limit)
        rows = _api_read_cache_get(cache_key)
        if rows is None:
            with self.conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, source, summary, created_at
                    FROM marriage_summaries
                    ORDER BY created_at DESC, id DESC
                    LIMIT %s
                    """,
                    (max(limit, 0),),
                )
                rows = cur.fetchall() or []
            _api_read_cache_set(cache_key, rows)
        return stored_summaries_from_rows(rows)

    def fetch_last_update(self) -> datetime | None:
        cache_key = _api_read_cache_key("last_update")
        cached = _api_read_cache_get(cache_key)
        if cached is not None:
            return cached

        with self.conn.cursor() as cur:
            cur.execute("SELECT MAX(retrieved_at) AS last_update FROM raw_payloads")
            row = cur.fetchone() or {}
        last_update = row.get("last_update")
        if last_update is not None:
            _api_read_cache_set(cache_key, last_update)
        return last_update

    def fetch_entries(self) -> list[dict]:
        cache_key = _api_read_cache_key("entries")
        cached = _api_read_cache_get(cache_key)
        if cached is not None:
            return cached

        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, source_url AS source, retrieved_at AS timestamp
                FROM raw_payloads
                ORDER BY retrieved_at DESC, id DESC
                """
            )
            rows = [dict(row) for row in cur.fetchall() or []]
        _api_read_cache_set(cache_key, rows)
        return rows

    def fetch_entry(self, entry_id: int) -> dict | None:
        cache_key = _api_read_cache_key("entry", entry_id)
        cached = _api_read_cache_get(cache_key)
        if cached is not None:
            return cached

        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, source_url AS source, raw_json::text AS raw_text, retrieved_at AS timestamp
                FROM raw_payloads
                WHERE id = %s
                """,
                (entry_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None

        raw_text = row["raw_text"] or ""
        entry = {
            "id": row["id"],
            "source": row["source"],
            "timestamp": row["timestamp"],
            "file_name": f"data_{row['id']}.json",
            "summary": raw_text[:ENTRY_PREVIEW_CHARS] + "..." if len(raw_text) > ENTRY_PREVIEW_CHARS else raw_text,
        }
        _api_read_cache_set(cache_key, entry)
        return entry

    def fetch_raw_payload(self, entry_id: int) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute(
                "SELECT id, raw_json::text AS raw_text FROM raw_payloads WHERE id = %s",
                (entry_id,),
            )
            row = cur.fetchone()
        return dict(row) if row else None
