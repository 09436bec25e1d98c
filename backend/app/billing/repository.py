"""PostgreSQL persistence for billing accounts and the subscription ledger."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional
from uuid import uuid4

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from backend.app_context import get_conn

from .exceptions import BillingBadRequestError, BillingNotFoundError
from .models import (
    BLOCKING_STATUSES,
    BillingAccount,
    Subscription,
    SubscriptionStatus,
    SubscriptionUpdate,
)

logger = logging.getLogger(__name__)

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in SubscriptionStatus)
_BLOCKING_VALUES = ", ".join(f"'{status.value}'" for status in sorted(BLOCKING_STATUSES, key=lambda s: s.value))

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS billing_accounts (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL UNIQUE,
        external_customer_id TEXT NOT NULL,
        billing_email TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS billing_subscriptions (
        id TEXT PRIMARY KEY,
        billing_account_id TEXT NOT NULL REFERENCES billing_accounts (id),
        plan_id TEXT NOT NULL,
        external_subscription_id TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL CHECK (status IN ({_STATUS_VALUES})),
        current_period_start TIMESTAMPTZ,
        current_period_end TIMESTAMPTZ,
        cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS billing_subscriptions_one_blocking
        ON billing_subscriptions (billing_account_id)
        WHERE status IN ({_BLOCKING_VALUES})
    """,
    """
    CREATE INDEX IF NOT EXISTS billing_subscriptions_account_created
        ON billing_subscriptions (billing_account_id, created_at DESC)
    """,
)


def create_schema(conn: PgConnection) -> None:
    """Create the billing ledger tables on ``conn`` if they do not exist."""

    with conn.cursor() as cursor:
        for statement in SCHEMA_STATEMENTS:
            cursor.execute(statement)
    conn.commit()


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_account(row: dict) -> BillingAccount:
    return BillingAccount(
        id=row["id"],
        tenant_id=row["tenant_id"],
        external_customer_id=row["external_customer_id"],
        billing_email=row.get("billing_email"),
        created_at=row["created_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        id=row["id"],
        billing_account_id=row["billing_account_id"],
        plan_id=row["plan_id"],
        external_subscription_id=row["external_subscription_id"],
        status=SubscriptionStatus(row["status"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _duplicate_subscription_error(billing_account_id: str) -> BillingBadRequestError:
    return BillingBadRequestError(
        code="subscription_exists",
        message="An active subscription already exists for this billing account",
        detail={"billingAccountId": billing_account_id},
    )


class PostgresSubscriptionLedger:
    """Billing account registry and subscription ledger stored in PostgreSQL.

    ``serialized`` takes a session-level advisory lock on a dedicated
    connection, so callers holding it can still run ledger statements that
    open and commit their own transactions.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None, lock_timeout_ms: int = 5000) -> None:
        self._conn = conn
        self._lock_timeout_ms = lock_timeout_ms

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    @contextmanager
    def serialized(self, key: str) -> Iterator[None]:
        with managed_connection(self._conn) as (connection, managed):
            with connection.cursor() as cursor:
                if self._lock_timeout_ms:
                    cursor.execute("SET LOCAL lock_timeout = %s", (f"{self._lock_timeout_ms}ms",))
                cursor.execute("SELECT pg_advisory_lock(hashtext(%s))", (key,))
            if managed:
                connection.commit()
            logger.debug("Acquired ledger lock %s", key)
            try:
                yield
            finally:
                with connection.cursor() as cursor:
                    cursor.execute("SELECT pg_advisory_unlock(hashtext(%s))", (key,))
                logger.debug("Released ledger lock %s", key)

    def get_billing_account(self, tenant_id: str) -> Optional[BillingAccount]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_accounts
                WHERE tenant_id = %s
                LIMIT 1
                """,
                (tenant_id,),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def create_billing_account(
        self,
        *,
        tenant_id: str,
        external_customer_id: str,
        billing_email: Optional[str],
    ) -> BillingAccount:
        """Insert the tenant's account, returning the existing row on conflict."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_accounts (id, tenant_id, external_customer_id, billing_email)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (tenant_id) DO NOTHING
                RETURNING *
                """,
                (str(uuid4()), tenant_id, external_customer_id, billing_email),
            )
            row = cursor.fetchone()
            if not row:
                cursor.execute("SELECT * FROM billing_accounts WHERE tenant_id = %s", (tenant_id,))
                row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist billing account")
            return _row_to_account(row)

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_subscriptions WHERE id = %s", (subscription_id,))
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_subscriptions WHERE external_subscription_id = %s",
                (external_subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_latest_subscription(
        self,
        billing_account_id: str,
        statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> Optional[Subscription]:
        params = [billing_account_id]
        status_clause = ""
        if statuses is not None:
            status_clause = "AND status = ANY(%s)"
            params.append([SubscriptionStatus(status).value for status in statuses])
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM billing_subscriptions
                WHERE billing_account_id = %s {status_clause}
                ORDER BY created_at DESC, updated_at DESC
                LIMIT 1
                """,
                params,
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO billing_subscriptions (
                        id,
                        billing_account_id,
                        plan_id,
                        external_subscription_id,
                        status,
                        current_period_start,
                        current_period_end,
                        cancel_at_period_end,
                        created_at,
                        updated_at
                    )
                    VALUES (%(id)s, %(billing_account_id)s, %(plan_id)s, %(external_subscription_id)s,
                            %(status)s, %(current_period_start)s, %(current_period_end)s,
                            %(cancel_at_period_end)s, %(created_at)s, %(updated_at)s)
                    RETURNING *
                    """,
                    {
                        "id": subscription.id,
                        "billing_account_id": subscription.billing_account_id,
                        "plan_id": subscription.plan_id,
                        "external_subscription_id": subscription.external_subscription_id,
                        "status": subscription.status.value,
                        "current_period_start": subscription.current_period_start,
                        "current_period_end": subscription.current_period_end,
                        "cancel_at_period_end": subscription.cancel_at_period_end,
                        "created_at": subscription.created_at,
                        "updated_at": subscription.updated_at,
                    },
                )
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            raise _duplicate_subscription_error(subscription.billing_account_id) from exc
        if not row:
            raise RuntimeError("Failed to persist subscription")
        return _row_to_subscription(row)

    def apply_update(self, subscription_id: str, update: SubscriptionUpdate) -> Subscription:
        """Apply one update command to a row locked ``FOR UPDATE``."""

        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_subscriptions WHERE id = %s FOR UPDATE",
                (subscription_id,),
            )
            row = cursor.fetchone()
            if not row:
                raise BillingNotFoundError(
                    code="subscription_not_found",
                    message="Subscription not found",
                    detail={"subscriptionId": subscription_id},
                )
            updated = update.apply(_row_to_subscription(row), now=datetime.now(timezone.utc))
            try:
                cursor.execute(
                    """
                    UPDATE billing_subscriptions
                    SET plan_id = %(plan_id)s,
                        status = %(status)s,
                        current_period_start = %(current_period_start)s,
                        current_period_end = %(current_period_end)s,
                        cancel_at_period_end = %(cancel_at_period_end)s,
                        updated_at = %(updated_at)s
                    WHERE id = %(id)s
                    RETURNING *
                    """,
                    {
                        "id": subscription_id,
                        "plan_id": updated.plan_id,
                        "status": updated.status.value,
                        "current_period_start": updated.current_period_start,
                        "current_period_end": updated.current_period_end,
                        "cancel_at_period_end": updated.cancel_at_period_end,
                        "updated_at": updated.updated_at,
                    },
                )
            except psycopg2.errors.UniqueViolation as exc:
                raise _duplicate_subscription_error(updated.billing_account_id) from exc
            row = cursor.fetchone()
        logger.debug("Applied %s to subscription %s", update.kind, subscription_id)
        return _row_to_subscription(row)


__all__ = [
    "PostgresSubscriptionLedger",
    "SCHEMA_STATEMENTS",
    "create_schema",
    "managed_connection",
]
