"""Application wiring for the billing service."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Dict, Optional
from uuid import uuid4

from backend.app_context import get_usage_reader

from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotFoundError,
    BillingService,
    PaymentGateway,
    StaticPlanCatalog,
    StripePaymentGateway,
    UsageLimitDowngradeGate,
    WebhookReconciler,
    build_default_plans,
)
from ..billing.config import STRIPE_GATEWAY, BillingConfig, load_billing_config
from ..billing.metrics import PostgresCounterStore
from ..billing.models import GatewayCustomer, GatewaySubscription, GatewaySubscriptionUpdate
from ..billing.repository import PostgresSubscriptionLedger


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s tenant=%s subscription=%s metadata=%s",
            event.event_type.value,
            event.tenant_id,
            event.subscription_id,
            event.metadata,
        )


class LocalSandboxPaymentGateway(PaymentGateway):
    """In-memory gateway for local development.

    Replaying a mutating call with the same idempotency key returns the first
    response without touching state again.
    """

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        period: timedelta = timedelta(days=30),
    ) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._period = period
        self._lock = threading.Lock()
        self._customers: Dict[str, GatewayCustomer] = {}
        self._subscriptions: Dict[str, GatewaySubscription] = {}
        self._replies: Dict[str, object] = {}

    def create_or_get_customer(
        self,
        tenant_id: str,
        email: Optional[str],
        name: Optional[str],
        *,
        idempotency_key: str,
    ) -> GatewayCustomer:
        with self._lock:
            customer = self._customers.get(tenant_id)
            if customer is None:
                customer = GatewayCustomer(external_customer_id=f"cus_{uuid4().hex[:14]}", email=email)
                self._customers[tenant_id] = customer
                logger.debug("Sandbox customer %s created for tenant %s", customer.external_customer_id, tenant_id)
            return customer

    def create_subscription(
        self,
        external_customer_id: str,
        external_price_id: str,
        payment_method_ref: Optional[str],
        *,
        idempotency_key: str,
    ) -> GatewaySubscription:
        with self._lock:
            replay = self._replies.get(idempotency_key)
            if replay is not None:
                return replay
            now = self._clock()
            subscription = GatewaySubscription(
                id=f"sub_{uuid4().hex[:14]}",
                status="active" if payment_method_ref else "incomplete",
                customer=external_customer_id,
                current_period_start=now,
                current_period_end=now + self._period,
                items=[{"id": f"si_{uuid4().hex[:14]}", "price_id": external_price_id}],
            )
            self._subscriptions[subscription.id] = subscription
            self._replies[idempotency_key] = subscription
            return subscription

    def get_subscription(self, external_subscription_id: str) -> GatewaySubscription:
        with self._lock:
            return self._require(external_subscription_id)

    def update_subscription(
        self,
        external_subscription_id: str,
        update: GatewaySubscriptionUpdate,
        *,
        idempotency_key: str,
    ) -> GatewaySubscription:
        with self._lock:
            replay = self._replies.get(idempotency_key)
            if replay is not None:
                return replay
            subscription = self._require(external_subscription_id)
            changes: Dict[str, object] = {}
            if update.new_price_id is not None:
                changes["items"] = [
                    item.model_copy(update={"price_id": update.new_price_id})
                    if item.id == update.item_id
                    else item
                    for item in subscription.items
                ]
            if update.cancel_at_period_end is not None:
                changes["cancel_at_period_end"] = update.cancel_at_period_end
            subscription = subscription.model_copy(update=changes)
            self._subscriptions[subscription.id] = subscription
            self._replies[idempotency_key] = subscription
            return subscription

    def cancel_subscription(
        self,
        external_subscription_id: str,
        *,
        at_period_end: bool,
        idempotency_key: str,
    ) -> None:
        with self._lock:
            if idempotency_key in self._replies:
                return
            subscription = self._require(external_subscription_id)
            if at_period_end:
                subscription = subscription.model_copy(update={"cancel_at_period_end": True})
            else:
                subscription = subscription.model_copy(
                    update={"status": "canceled", "cancel_at_period_end": False}
                )
            self._subscriptions[subscription.id] = subscription
            self._replies[idempotency_key] = subscription

    def _require(self, external_subscription_id: str) -> GatewaySubscription:
        subscription = self._subscriptions.get(external_subscription_id)
        if subscription is None:
            raise BillingNotFoundError(
                code="gateway_subscription_not_found",
                message=f"Unknown gateway subscription {external_subscription_id}",
            )
        return subscription


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


def build_payment_gateway(config: BillingConfig) -> PaymentGateway:
    if config.gateway_name == STRIPE_GATEWAY:
        return StripePaymentGateway(
            config.stripe_secret_key,
            max_network_retries=config.stripe_max_network_retries,
        )
    logger.warning("Billing is running against the local sandbox gateway")
    return LocalSandboxPaymentGateway()


def build_plan_catalog(config: BillingConfig) -> StaticPlanCatalog:
    price_ids = dict(config.price_ids)
    if config.gateway_name != STRIPE_GATEWAY:
        for plan in build_default_plans(currency=config.currency):
            if plan.price_minor_units:
                price_ids.setdefault(plan.key, f"price_sandbox_{plan.key}")
    return StaticPlanCatalog(build_default_plans(price_ids, currency=config.currency))


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway(get_billing_config())


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = get_billing_config()
    return BillingService(
        ledger=PostgresSubscriptionLedger(lock_timeout_ms=config.lock_timeout_ms),
        catalog=build_plan_catalog(config),
        gateway=get_payment_gateway(),
        downgrade_gate=UsageLimitDowngradeGate(get_usage_reader()),
        event_logger=LoggingBillingEventLogger(),
    )


@lru_cache(maxsize=1)
def get_webhook_reconciler() -> WebhookReconciler:
    config = get_billing_config()
    return WebhookReconciler(
        ledger=PostgresSubscriptionLedger(lock_timeout_ms=config.lock_timeout_ms),
        event_logger=LoggingBillingEventLogger(),
        counters=PostgresCounterStore(),
    )


__all__ = [
    "LocalSandboxPaymentGateway",
    "LoggingBillingEventLogger",
    "build_payment_gateway",
    "build_plan_catalog",
    "get_billing_config",
    "get_billing_service",
    "get_payment_gateway",
    "get_webhook_reconciler",
]
