"""Persistent counters for billing observability."""
from __future__ import annotations

from typing import Optional, Protocol

from psycopg2.extensions import connection as PgConnection

from .repository import managed_connection

PAYMENT_SUCCEEDED = "billing.invoice.payment_succeeded"
PAYMENT_FAILED = "billing.invoice.payment_failed"
WEBHOOK_IGNORED = "billing.webhook.ignored"
WEBHOOK_UNKNOWN_SUBSCRIPTION = "billing.webhook.unknown_subscription"
WEBHOOK_MALFORMED = "billing.webhook.malformed"

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS billing_counters (
        name TEXT PRIMARY KEY,
        value BIGINT NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
)


class CounterStore(Protocol):
    """Externally owned store of monotonically increasing counters."""

    def increment(self, name: str, amount: int = 1) -> int:
        ...

    def get(self, name: str) -> int:
        ...


class PostgresCounterStore:
    """:class:`CounterStore` persisted in the ``billing_counters`` table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def increment(self, name: str, amount: int = 1) -> int:
        with managed_connection(self._conn) as (connection, _managed):
            with connection.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO billing_counters (name, value)
                    VALUES (%s, %s)
                    ON CONFLICT (name) DO UPDATE SET
                        value = billing_counters.value + EXCLUDED.value,
                        updated_at = NOW()
                    RETURNING value
                    """,
                    (name, amount),
                )
                row = cursor.fetchone()
        return int(row[0])

    def get(self, name: str) -> int:
        with managed_connection(self._conn) as (connection, _managed):
            with connection.cursor() as cursor:
                cursor.execute("SELECT value FROM billing_counters WHERE name = %s", (name,))
                row = cursor.fetchone()
        return int(row[0]) if row else 0


__all__ = [
    "CounterStore",
    "PAYMENT_FAILED",
    "PAYMENT_SUCCEEDED",
    "PostgresCounterStore",
    "SCHEMA_STATEMENTS",
    "WEBHOOK_IGNORED",
    "WEBHOOK_MALFORMED",
    "WEBHOOK_UNKNOWN_SUBSCRIPTION",
]
