import logging
import math
import os
from typing import Any, Callable, Sequence

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend import app_context
from backend.app.billing import metrics
from backend.app.billing.repository import SCHEMA_STATEMENTS
from backend.app.routes.billing import router as billing_router

load_dotenv()


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "billing_db"),
    user=os.getenv("DB_USER", "billing_user"),
    password=os.getenv("DB_PASSWORD", "billing_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

logger = logging.getLogger("billing")


def get_conn():
    return psycopg2.connect(**DB_CFG)


def ensure_schema() -> None:
    """Create billing tables and counters if they are missing."""

    conn = get_conn()
    try:
        with conn.cursor() as cur:
            for statement in (*SCHEMA_STATEMENTS, *metrics.SCHEMA_STATEMENTS):
                cur.execute(statement)
        conn.commit()
    finally:
        conn.close()
    logger.info("Billing schema ensured on %s/%s", DB_CFG["host"], DB_CFG["dbname"])


def create_app(
    *,
    get_current_user: Callable[..., Any],
    usage_reader: Any,
    allow_origins: Sequence[str] = (),
) -> FastAPI:
    """Build the billing API.

    ``get_current_user`` is the host's authentication dependency; it receives
    the session token and returns an object exposing ``tenant_id``, ``email``,
    ``name`` and optionally ``is_admin``. ``usage_reader`` reports tenant
    usage for downgrade checks.
    """

    app_context.configure(
        get_conn=get_conn,
        get_current_user=get_current_user,
        usage_reader=usage_reader,
    )

    app = FastAPI(title="Billing API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(allow_origins or CORS_ALLOW_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(billing_router)

    if os.getenv("BILLING_AUTO_MIGRATE", "").strip().lower() in {"1", "true", "yes", "on"}:
        ensure_schema()

    return app
