"""Applies payment gateway webhook events to the subscription ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from . import metrics
from .metrics import CounterStore
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    CancellationChange,
    GatewaySubscription,
    GatewaySync,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    ReconciliationResult,
    ReconciliationWarning,
    SubscriptionDeleted,
    SubscriptionStatus,
    SubscriptionUpdate,
    SubscriptionUpdated,
    UnhandledEvent,
    map_gateway_status,
    parse_webhook_event,
)
from .service import BillingEventLogger, SubscriptionLedger, subscription_lock_key

logger = logging.getLogger(__name__)


@dataclass
class WebhookReconciler:
    """Reconciles the local ledger with at-least-once gateway notifications.

    Every handled event is a field overwrite keyed by the external
    subscription id, so redelivered events leave the ledger unchanged.
    Nothing here raises for unknown or malformed events; those come back as
    warnings on the :class:`ReconciliationResult`.
    """

    ledger: SubscriptionLedger
    event_logger: BillingEventLogger
    counters: CounterStore

    def handle_event(self, envelope: Mapping[str, Any]) -> ReconciliationResult:
        if not isinstance(envelope, Mapping):
            return self._malformed(None, "", "Webhook payload is not an object")

        try:
            event = parse_webhook_event(envelope)
        except ValidationError as exc:
            event_id = envelope.get("id")
            return self._malformed(
                str(event_id) if event_id is not None else None,
                str(envelope.get("type") or ""),
                f"Webhook object failed validation: {exc.error_count()} error(s)",
            )

        if isinstance(event, SubscriptionUpdated):
            return self._sync_subscription(event)
        if isinstance(event, SubscriptionDeleted):
            return self._sync_subscription(event)
        if isinstance(event, (InvoicePaymentSucceeded, InvoicePaymentFailed)):
            return self._record_payment(event)
        return self._ignore(event)

    def _sync_subscription(
        self, event: Union[SubscriptionUpdated, SubscriptionDeleted]
    ) -> ReconciliationResult:
        remote: GatewaySubscription = event.subscription
        existing = self.ledger.get_subscription_by_external_id(remote.id)
        if existing is None:
            self.counters.increment(metrics.WEBHOOK_UNKNOWN_SUBSCRIPTION)
            return self._warn(
                event.event_id,
                event.event_type,
                ReconciliationWarning(
                    code="unknown_subscription",
                    message=f"No local subscription for {remote.id}",
                    event_type=event.event_type,
                    external_subscription_id=remote.id,
                ),
            )

        command: SubscriptionUpdate
        if isinstance(event, SubscriptionDeleted):
            command = CancellationChange(cancel_at_period_end=False, status=SubscriptionStatus.CANCELED)
        else:
            command = GatewaySync(
                status=map_gateway_status(remote.status),
                cancel_at_period_end=remote.cancel_at_period_end,
                current_period_start=remote.current_period_start,
                current_period_end=remote.current_period_end,
            )

        with self.ledger.serialized(subscription_lock_key(existing.id)):
            subscription = self.ledger.apply_update(existing.id, command)

        logger.info(
            "Reconciled subscription %s from %s (status=%s, cancel_at_period_end=%s)",
            subscription.id,
            event.event_type,
            subscription.status.value,
            subscription.cancel_at_period_end,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_SYNCED,
                subscription_id=subscription.id,
                metadata={
                    "event_type": event.event_type,
                    "event_id": event.event_id or "",
                    "status": subscription.status.value,
                },
            )
        )
        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            applied=True,
            subscription_id=subscription.id,
        )

    def _record_payment(
        self, event: Union[InvoicePaymentSucceeded, InvoicePaymentFailed]
    ) -> ReconciliationResult:
        invoice = event.invoice
        succeeded = isinstance(event, InvoicePaymentSucceeded)
        if succeeded:
            self.counters.increment(metrics.PAYMENT_SUCCEEDED)
            logger.info("Invoice %s paid (%s %s)", invoice.id, invoice.amount_paid, invoice.currency)
        else:
            self.counters.increment(metrics.PAYMENT_FAILED)
            logger.warning(
                "Invoice %s payment failed for subscription %s (%s %s due)",
                invoice.id,
                invoice.subscription,
                invoice.amount_due,
                invoice.currency,
            )

        local = (
            self.ledger.get_subscription_by_external_id(invoice.subscription)
            if invoice.subscription
            else None
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=(
                    BillingAuditEventType.PAYMENT_SUCCEEDED
                    if succeeded
                    else BillingAuditEventType.PAYMENT_FAILED
                ),
                subscription_id=local.id if local else None,
                metadata={
                    "invoice_id": invoice.id,
                    "amount_due": str(invoice.amount_due),
                    "amount_paid": str(invoice.amount_paid),
                    "currency": invoice.currency or "",
                },
            )
        )
        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            subscription_id=local.id if local else None,
        )

    def _ignore(self, event: UnhandledEvent) -> ReconciliationResult:
        self.counters.increment(metrics.WEBHOOK_IGNORED)
        logger.debug("Ignoring webhook event %s of type %s", event.event_id, event.event_type)
        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            warnings=[
                ReconciliationWarning(
                    code="unhandled_event_type",
                    message=f"Event type {event.event_type!r} is not handled",
                    event_type=event.event_type,
                )
            ],
        )

    def _malformed(self, event_id: Optional[str], event_type: str, message: str) -> ReconciliationResult:
        self.counters.increment(metrics.WEBHOOK_MALFORMED)
        return self._warn(
            event_id,
            event_type,
            ReconciliationWarning(code="malformed_event", message=message, event_type=event_type or None),
        )

    def _warn(
        self,
        event_id: Optional[str],
        event_type: str,
        warning: ReconciliationWarning,
    ) -> ReconciliationResult:
        logger.warning(
            "Webhook %s (%s) not applied: %s",
            event_id,
            event_type or "unknown",
            warning.message,
            extra={"reconciliation_warning": warning.code},
        )
        return ReconciliationResult(event_id=event_id, event_type=event_type, warnings=[warning])


__all__ = ["WebhookReconciler"]
