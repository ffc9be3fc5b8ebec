from functools import lru_cache
from secrets import compare_digest

from fastapi import Header, HTTPException
import psycopg

from app.config import get_settings
from app.db import DatabaseConfigurationError, DatabaseConnectionError, get_connection, is_schema_mismatch_sqlstate
from app.services.country_resolver import CountryResolver
from app.services.repository import PostgresRepository


def get_repository():
    try:
        with get_connection() as conn:
            yield PostgresRepository(conn)
    except DatabaseConfigurationError as exc:
        raise HTTPException(status_code=503, detail="database is not configured") from exc
    except DatabaseConnectionError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except psycopg.Error as exc:
        if is_schema_mismatch_sqlstate(getattr(exc, "sqlstate", None)):
            raise HTTPException(status_code=503, detail="database schema mismatch detected") from exc
        raise HTTPException(status_code=503, detail=f"database query failed ({exc.sqlstate or 'unknown'})") from exc


@lru_cache(maxsize=1)
def get_country_resolver() -> CountryResolver:
    return CountryResolver.from_file(get_settings().country_mapping_path)


def require_internal_job_token(
    authorization: str | None = Header(default=None),
):
    settings = get_settings()
    expected = settings.internal_job_token
    if not expected:
        raise HTTPException(status_code=503, detail="internal job token is not configured")

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")

    token = authorization.removeprefix("Bearer ").strip()
    if not compare_digest(token, expected):
        raise HTTPException(status_code=403, detail="invalid bearer token")
