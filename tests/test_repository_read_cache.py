from datetime import datetime, timezone

import app.services.repository as repository_module
from app.models.schemas import NormalizedSummary
from app.services.repository import PostgresRepository, clear_api_read_cache

CREATED_AT = datetime(2025, 11, 7, 8, 0, tzinfo=timezone.utc)


class _FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self._query = ""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query, params=None):
        self._query = query
        self.conn.executed.append((query, params))
        if "FROM marriage_summaries" in query:
            self.conn.summary_query_count += 1

    def fetchall(self):
        if "FROM marriage_summaries" in self._query:
            return [
                {
                    "id": 2,
                    "source": "b.json",
                    "summary": {
                        "source": "b.json",
                        "total": 12,
                        "totalSameGenderPairing": 2,
                        "totalDifferentGenderPairing": 10,
                        "byRegion": [{"region": "East", "total": 12}],
                        "nationalityBreakdown": {"Japan": {"same": 1, "different": 0}},
                    },
                    "created_at": CREATED_AT,
                },
                {"id": 1, "source": "a.json", "summary": None, "created_at": CREATED_AT},
            ]
        return []

    def fetchone(self):
        if "INSERT INTO" in self._query:
            return {"id": 7}
        if "MAX(retrieved_at)" in self._query:
            return {"last_update": CREATED_AT}
        if "FROM raw_payloads" in self._query:
            return {"id": 3, "source": "https://x/y.json", "raw_text": "[" + "1," * 100 + "1]", "timestamp": CREATED_AT}
        return None


class _FakeConn:
    def __init__(self):
        self.summary_query_count = 0
        self.commit_count = 0
        self.rollback_count = 0
        self.executed = []

    def cursor(self):
        return _FakeCursor(self)

    def commit(self):
        self.commit_count += 1

    def rollback(self):
        self.rollback_count += 1


def test_recent_summaries_are_coerced_and_unreadable_rows_skipped(monkeypatch):
    clear_api_read_cache()
    monkeypatch.setattr(repository_module, "_api_read_cache_ttl_sec", lambda: 0.0)

    entries = PostgresRepository(_FakeConn()).list_recent_summaries(12)

    assert len(entries) == 1
    assert entries[0].summary.total == 12
    assert entries[0].summary.nationality_breakdown["Japan"].same == 1
    assert entries[0].created_at == CREATED_AT


def test_recent_summaries_use_ttl_cache(monkeypatch):
    clear_api_read_cache()
    monkeypatch.setattr(repository_module, "_api_read_cache_ttl_sec", lambda: 30.0)

    conn = _FakeConn()
    repo = PostgresRepository(conn)

    first = repo.list_recent_summaries(12)
    second = repo.list_recent_summaries(12)

    assert conn.summary_query_count == 1
    assert first == second
    assert first[0] is not second[0]
    assert second[0].summary.nationality_breakdown["Japan"].same == 1


def test_cache_disabled_when_ttl_zero(monkeypatch):
    clear_api_read_cache()
    monkeypatch.setattr(repository_module, "_api_read_cache_ttl_sec", lambda: 0.0)

    conn = _FakeConn()
    repo = PostgresRepository(conn)
    repo.list_recent_summaries(12)
    repo.list_recent_summaries(12)

    assert conn.summary_query_count == 2


def test_commit_invalidates_cache(monkeypatch):
    clear_api_read_cache()
    monkeypatch.setattr(repository_module, "_api_read_cache_ttl_sec", lambda: 30.0)

    conn = _FakeConn()
    repo = PostgresRepository(conn)
    repo.list_recent_summaries(12)

    raw_id = repo.insert_raw_payload("https://x/y.json", "[]", CREATED_AT)
    summary_id = repo.append_summary(NormalizedSummary(source="y.json"), raw_id, CREATED_AT)
    repo.commit()
    repo.list_recent_summaries(12)

    assert (raw_id, summary_id) == (7, 7)
    assert conn.commit_count == 1
    assert conn.summary_query_count == 2


def test_writes_do_not_commit_on_their_own(monkeypatch):
    clear_api_read_cache()
    monkeypatch.setattr(repository_module, "_api_read_cache_ttl_sec", lambda: 0.0)

    conn = _FakeConn()
    repo = PostgresRepository(conn)
    repo.insert_raw_payload("https://x/y.json", "[]", CREATED_AT)
    repo.rollback()

    assert conn.commit_count == 0
    assert conn.rollback_count == 1


def test_fetch_entry_truncates_preview(monkeypatch):
    clear_api_read_cache()
    monkeypatch.setattr(repository_module, "_api_read_cache_ttl_sec", lambda: 0.0)

    entry = PostgresRepository(_FakeConn()).fetch_entry(3)

    assert entry["file_name"] == "data_3.json"
    assert entry["summary"].endswith("...")
    assert len(entry["summary"]) == repository_module.ENTRY_PREVIEW_CHARS + 3


def test_fetch_last_update(monkeypatch):
    clear_api_read_cache()
    monkeypatch.setattr(repository_module, "_api_read_cache_ttl_sec", lambda: 0.0)

    assert PostgresRepository(_FakeConn()).fetch_last_update() == CREATED_AT
