from __future__ import annotations

import argparse
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from app.config import get_settings
from app.db import get_connection
from app.services.country_resolver import CountryResolver
from app.services.ingest_service import ingest_payload
from app.services.repository import PostgresRepository

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FetchAttempt:
    attempt: int
    http_status: int | None
    failure_class: str | None
    retryable: bool
    error: str | None = None
    duration_seconds: float | None = None
    next_backoff_seconds: float | None = None


@dataclass
class FetchResult:
    success: bool
    url: str
    attempts: list[FetchAttempt]
    body: bytes | None = None
    retrieved_at: datetime | None = None
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "url": self.url,
            "attempts": [asdict(item) for item in self.attempts],
            "bytes": len(self.body) if self.body is not None else 0,
            "retrieved_at": self.retrieved_at.isoformat() if self.retrieved_at else None,
            "failure_reason": self.failure_reason,
        }


RequestFn = Callable[[str, float], httpx.Response]


def default_request_fn(url: str, timeout: float) -> httpx.Response:
    return httpx.get(url, timeout=timeout, follow_redirects=True)


def _classify_failure(http_status: int | None, error: str | None, body: bytes | None) -> str | None:
    if error is not None:
        return "timeout" if "timeout" in error.lower() else "request_error"
    if http_status is None:
        return "request_error"
    if http_status in {408, 429}:
        return f"http_{http_status}"
    if 400 <= http_status < 500:
        return "http_4xx"
    if http_status >= 500:
        return "http_5xx"
    if not body or not body.strip():
        return "empty_body"
    return None


def _is_retryable(failure_class: str | None) -> bool:
    return failure_class not in {None, "http_4xx"}


def _next_backoff_seconds(base_backoff_seconds: float, attempt: int) -> float:
    return max(0.0, base_backoff_seconds) * (2 ** (attempt - 1))


def fetch_with_retry(
    url: str,
    *,
    max_retries: int = 2,
    backoff_seconds: float = 1.0,
    request_timeout: float = 30.0,
    request_fn: RequestFn = default_request_fn,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> FetchResult:
    max_attempts = max(1, max_retries + 1)
    attempts: list[FetchAttempt] = []

    for attempt in range(1, max_attempts + 1):
        started = time.monotonic()
        http_status: int | None = None
        error: str | None = None
        body: bytes | None = None
        try:
            response = request_fn(url, request_timeout)
            http_status = response.status_code
            body = response.content
        except Exception as exc:  # noqa: BLE001
            error = f"{exc.__class__.__name__}: {exc}"

        failure_class = _classify_failure(http_status, error, body)
        retryable = _is_retryable(failure_class)
        next_backoff = (
            _next_backoff_seconds(backoff_seconds, attempt) if failure_class and retryable and attempt < max_attempts else None
        )
        attempts.append(
            FetchAttempt(
                attempt=attempt,
                http_status=http_status,
                failure_class=failure_class,
                retryable=retryable,
                error=error,
                duration_seconds=round(time.monotonic() - started, 3),
                next_backoff_seconds=next_backoff,
            )
        )

        if failure_class is None:
            logger.info("fetch_succeeded url=%s attempt=%s bytes=%s", url, attempt, len(body or b""))
            return FetchResult(success=True, url=url, attempts=attempts, body=body, retrieved_at=utc_now())

        logger.warning(
            "fetch_attempt_failed url=%s attempt=%s failure_class=%s http_status=%s error=%s",
            url,
            attempt,
            failure_class,
            http_status,
            error,
        )
        if next_backoff is None:
            break
        sleep_fn(next_backoff)

    last = attempts[-1]
    reason = f"{last.failure_class}: {last.error}" if last.error else f"{last.failure_class}: http_status={last.http_status}"
    return FetchResult(success=False, url=url, attempts=attempts, failure_reason=reason)


def run_fetch_once(
    *,
    url: str,
    repo,
    resolver: CountryResolver,
    source_id: str | None = None,
    fetch_fn: Callable[[str], FetchResult] | None = None,
) -> dict[str, Any]:
    """Fetch the configured payload and store at most one summary for it."""
    fetched = fetch_fn(url) if fetch_fn is not None else fetch_with_retry(url)
    report: dict[str, Any] = {"fetch": fetched.to_dict(), "ingest": None}
    if not fetched.success:
        logger.warning("fetch_abandoned url=%s reason=%s", url, fetched.failure_reason)
        return report

    result = ingest_payload(
        fetched.body,
        url,
        repo,
        resolver=resolver,
        source_id=source_id,
        retrieved_at=fetched.retrieved_at,
    )
    report["ingest"] = {
        "raw_payload_id": result.raw_payload_id,
        "summary_id": result.summary_id,
        "source": result.summary.source,
        "total": result.summary.total,
        "created_at": result.created_at.isoformat(),
    }
    return report


def run_periodic_fetch(
    run_once: Callable[[], Any],
    *,
    interval_seconds: float,
    stop_event: threading.Event,
    max_runs: int | None = None,
) -> int:
    """Call ``run_once`` every ``interval_seconds`` until ``stop_event`` is set.

    A failing run is logged and the loop continues. Returns the number of runs.
    """
    runs = 0
    while not stop_event.is_set():
        try:
            run_once()
        except Exception:  # noqa: BLE001
            logger.exception("periodic_fetch_run_failed run=%s", runs + 1)
        runs += 1
        if max_runs is not None and runs >= max_runs:
            break
        if stop_event.wait(interval_seconds):
            break
    logger.info("periodic_fetch_stopped runs=%s", runs)
    return runs


def _run_with_settings(resolver: CountryResolver) -> dict[str, Any]:
    settings = get_settings()

    def _fetch(url: str) -> FetchResult:
        return fetch_with_retry(
            url,
            max_retries=settings.fetch_max_retries,
            backoff_seconds=settings.fetch_backoff_sec,
            request_timeout=settings.fetch_timeout_sec,
        )

    with get_connection() as conn:
        return run_fetch_once(
            url=settings.fetch_url,
            repo=PostgresRepository(conn),
            resolver=resolver,
            source_id=settings.fetch_source_id,
            fetch_fn=_fetch,
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Fetch the marriage statistics feed and store its summary")
    parser.add_argument("--once", action="store_true", help="Run a single fetch and exit")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    settings = get_settings()
    resolver = CountryResolver.from_file(settings.country_mapping_path)

    if args.once:
        print(json.dumps(_run_with_settings(resolver), ensure_ascii=False, indent=2))
        return

    stop_event = threading.Event()
    logger.info(
        "periodic_fetch_started url=%s interval_minutes=%s countries=%s",
        settings.fetch_url,
        settings.fetch_interval_minutes,
        len(resolver),
    )
    try:
        run_periodic_fetch(
            lambda: _run_with_settings(resolver),
            interval_seconds=settings.fetch_interval_minutes * 60,
            stop_event=stop_event,
        )
    except KeyboardInterrupt:
        stop_event.set()


if __name__ == "__main__":
    main()
