import json
import sys
import threading

import httpx
import pytest

import app.jobs.fetch_runner as fetch_runner_module
from app.config import get_settings
from app.jobs.fetch_runner import (
    FetchResult,
    _classify_failure,
    fetch_with_retry,
    run_fetch_once,
    run_periodic_fetch,
)
from app.services.country_resolver import CountryResolver

FEED_URL = "https://example.gov.tw/opendata/marriage.json"
PAYLOAD = [
    {"region": "Hsinchu", "total_all": 5, "same_foreign_Japan": 1, "different_foreign_Japan": 4},
]


class FakeRepo:
    def __init__(self):
        self.raw_payloads = []
        self.summaries = []
        self.commits = 0

    def insert_raw_payload(self, source_url, raw_json, retrieved_at):
        self.raw_payloads.append((source_url, raw_json, retrieved_at))
        return len(self.raw_payloads)

    def append_summary(self, summary, raw_payload_id, created_at):
        self.summaries.append(summary)
        return len(self.summaries)

    def commit(self):
        self.commits += 1

    def rollback(self):
        pass


def _scripted(responses):
    calls = []

    def request_fn(url, timeout):
        calls.append((url, timeout))
        item = responses[len(calls) - 1]
        if isinstance(item, Exception):
            raise item
        return item

    return request_fn, calls


@pytest.mark.parametrize(
    "http_status, error, body, expected",
    [
        (200, None, b"[]", None),
        (200, None, b"  ", "empty_body"),
        (404, None, b"", "http_4xx"),
        (429, None, b"", "http_429"),
        (503, None, b"", "http_5xx"),
        (None, "ReadTimeout: timed out", None, "timeout"),
        (None, "ConnectError: refused", None, "request_error"),
    ],
)
def test_classify_failure(http_status, error, body, expected):
    assert _classify_failure(http_status, error, body) == expected


def test_fetch_retries_with_exponential_backoff_then_succeeds():
    request_fn, calls = _scripted(
        [
            httpx.Response(503),
            httpx.ReadTimeout("timed out"),
            httpx.Response(200, content=b"[]"),
        ]
    )
    sleeps = []

    result = fetch_with_retry(
        FEED_URL,
        max_retries=2,
        backoff_seconds=0.5,
        request_fn=request_fn,
        sleep_fn=sleeps.append,
    )

    assert result.success is True
    assert result.body == b"[]"
    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]
    assert [item.failure_class for item in result.attempts] == ["http_5xx", "timeout", None]


def test_fetch_does_not_retry_client_errors():
    request_fn, calls = _scripted([httpx.Response(404)])
    sleeps = []

    result = fetch_with_retry(FEED_URL, max_retries=3, request_fn=request_fn, sleep_fn=sleeps.append)

    assert result.success is False
    assert len(calls) == 1
    assert sleeps == []
    assert result.failure_reason == "http_4xx: http_status=404"


def test_fetch_gives_up_after_max_retries():
    request_fn, calls = _scripted([httpx.Response(500), httpx.Response(500)])

    result = fetch_with_retry(FEED_URL, max_retries=1, backoff_seconds=0, request_fn=request_fn, sleep_fn=lambda _: None)

    assert result.success is False
    assert len(calls) == 2
    assert result.attempts[-1].next_backoff_seconds is None


def test_run_fetch_once_stores_summary():
    repo = FakeRepo()
    body = json.dumps(PAYLOAD).encode("utf-8")

    def fetch_fn(url):
        request_fn, _ = _scripted([httpx.Response(200, content=body)])
        return fetch_with_retry(url, request_fn=request_fn, sleep_fn=lambda _: None)

    report = run_fetch_once(url=FEED_URL, repo=repo, resolver=CountryResolver.with_fallback(), fetch_fn=fetch_fn)

    assert report["fetch"]["success"] is True
    assert report["ingest"]["source"] == "marriage.json"
    assert report["ingest"]["total"] == 5
    assert repo.commits == 1
    assert repo.raw_payloads[0][0] == FEED_URL
    assert repo.summaries[0].nationality_breakdown["Japan"].total == 5


def test_run_fetch_once_skips_ingest_when_fetch_fails():
    repo = FakeRepo()

    def fetch_fn(url):
        return FetchResult(success=False, url=url, attempts=[], failure_reason="http_5xx: http_status=502")

    report = run_fetch_once(url=FEED_URL, repo=repo, resolver=CountryResolver.with_fallback(), fetch_fn=fetch_fn)

    assert report["ingest"] is None
    assert report["fetch"]["failure_reason"] == "http_5xx: http_status=502"
    assert repo.raw_payloads == []
    assert repo.commits == 0


def test_periodic_fetch_keeps_running_after_failure():
    calls = []

    def run_once():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("feed down")

    runs = run_periodic_fetch(run_once, interval_seconds=0, stop_event=threading.Event(), max_runs=3)

    assert runs == 3
    assert len(calls) == 3


def test_periodic_fetch_stops_when_event_set():
    stop_event = threading.Event()
    calls = []

    def run_once():
        calls.append(1)
        stop_event.set()

    runs = run_periodic_fetch(run_once, interval_seconds=60, stop_event=stop_event)

    assert runs == 1
    assert calls == [1]


class _CountingResolverFactory:
    def __init__(self):
        self.calls = 0

    def from_file(self, path=None):  # noqa: ANN001
        self.calls += 1
        return CountryResolver.with_fallback()


def test_main_builds_resolver_once_for_all_periodic_runs(monkeypatch):
    factory = _CountingResolverFactory()
    seen = []

    def fake_periodic(run_once, *, interval_seconds, stop_event, max_runs=None):  # noqa: ANN001
        for _ in range(3):
            run_once()
        return 3

    monkeypatch.setattr(fetch_runner_module, "CountryResolver", factory)
    monkeypatch.setattr(fetch_runner_module, "_run_with_settings", lambda resolver: seen.append(resolver) or {})
    monkeypatch.setattr(fetch_runner_module, "run_periodic_fetch", fake_periodic)
    monkeypatch.setattr(sys, "argv", ["fetch_runner"])
    get_settings.cache_clear()
    try:
        fetch_runner_module.main()
    finally:
        get_settings.cache_clear()

    assert factory.calls == 1
    assert len(seen) == 3
    assert seen[0] is seen[1] is seen[2]
