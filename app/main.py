import os
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import psycopg

from app.api.routes import router as api_router
from app.config import get_settings
from app.db import (
    SCHEMA_BOOTSTRAP_STATE,
    DatabaseConfigurationError,
    DatabaseConnectionError,
    apply_schema_bootstrap,
    get_connection,
    is_schema_mismatch_sqlstate,
)

DEFAULT_CORS_ALLOW_ORIGINS = "http://127.0.0.1:3000,http://localhost:3000"

logger = logging.getLogger(__name__)


def _resolve_cors_allow_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", DEFAULT_CORS_ALLOW_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(title="Marriage Statistics Backend", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=_resolve_cors_allow_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)


@app.on_event("startup")
def startup_schema_bootstrap():
    state = apply_schema_bootstrap(get_settings().auto_apply_schema_on_startup)
    logger.info(
        "startup_schema_bootstrap enabled=%s attempted=%s ok=%s detail=%s",
        state.get("enabled"),
        state.get("attempted"),
        state.get("ok"),
        state.get("detail"),
    )


@app.exception_handler(psycopg.Error)
def handle_psycopg_error(_, exc: psycopg.Error):  # noqa: ANN001
    sqlstate = getattr(exc, "sqlstate", None)
    if is_schema_mismatch_sqlstate(sqlstate):
        detail = "database schema mismatch detected"
    elif sqlstate:
        detail = f"database query failed ({sqlstate})"
    else:
        detail = "database query failed"
    return JSONResponse(status_code=503, content={"detail": detail})


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/health/db")
def health_db_check():
    try:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                row = cur.fetchone() or {}
    except DatabaseConfigurationError as exc:
        reason, detail = "database_not_configured", str(exc)
    except DatabaseConnectionError as exc:
        reason, detail = "database_connection_failed", str(exc)
    except psycopg.Error as exc:
        reason, detail = "database_query_failed", exc.sqlstate
    else:
        return {"status": "ok", "db": "ok", "ping": row.get("ok") == 1, "bootstrap": SCHEMA_BOOTSTRAP_STATE}

    return JSONResponse(
        status_code=503,
        content={
            "status": "degraded",
            "db": "error",
            "reason": reason,
            "detail": detail,
            "bootstrap": SCHEMA_BOOTSTRAP_STATE,
        },
    )
