"""Unit tests for the subscription change orchestrator."""
from __future__ import annotations

import threading

import pytest

from backend.app.billing.exceptions import (
    BillingBadRequestError,
    BillingNotFoundError,
    GatewayTimeoutError,
)
from backend.app.billing.models import (
    BillingAuditEventType,
    DowngradeVerdict,
    PaymentBehavior,
    PlanChangeRequest,
    ProrationPolicy,
    StatusOverrideRequest,
    SubscriptionStatus,
)
from backend.app.billing.reconciler import WebhookReconciler
from backend.app.billing.service import BillingService, make_idempotency_key
from billing_fakes import NOW, InMemoryLedger, subscription_envelope


def _subscribe(billing, tenant_id: str = "tenant-1", plan_key: str = "starter"):
    billing.service.initialize_billing_account(tenant_id, "owner@example.com", "Owner")
    return billing.service.create_subscription(tenant_id, plan_key, "pm_card_visa")


def test_create_subscription_requires_billing_account(billing):
    with pytest.raises(BillingNotFoundError):
        billing.service.create_subscription("tenant-1", "starter", "pm_card_visa")

    assert billing.gateway.calls == []
    assert billing.ledger.subscriptions == {}


def test_initialize_billing_account_is_idempotent(billing):
    first = billing.service.initialize_billing_account("tenant-1", "owner@example.com", "Owner")
    second = billing.service.initialize_billing_account("tenant-1", "other@example.com", "Other")

    assert first.id == second.id
    assert first.external_customer_id == "cus_tenant-1"
    assert first.billing_email == "owner@example.com"
    assert billing.gateway.calls == [("create_or_get_customer", "tenant-1")]
    assert [event.event_type for event in billing.events.events] == [BillingAuditEventType.ACCOUNT_INITIALIZED]


def test_get_billing_account_missing_raises_not_found(billing):
    with pytest.raises(BillingNotFoundError):
        billing.service.get_billing_account("tenant-1")


def test_get_subscription_returns_none_on_free_tier(billing):
    billing.service.initialize_billing_account("tenant-1")

    assert billing.service.get_subscription("tenant-1") is None


def test_create_subscription_persists_mapped_gateway_state(billing):
    billing.gateway.create_status = "trialing"

    subscription = _subscribe(billing)

    assert subscription.status == SubscriptionStatus.TRIALING
    assert subscription.plan_id == "plan_starter"
    assert subscription.current_period_start == NOW
    assert subscription.cancel_at_period_end is False
    assert billing.ledger.get_subscription(subscription.id) == subscription
    assert billing.service.get_subscription("tenant-1") == subscription
    assert "account:acct_1" in billing.ledger.lock_keys


def test_create_subscription_maps_unknown_gateway_status_to_incomplete(billing):
    billing.gateway.create_status = "requires_action"

    subscription = _subscribe(billing)

    assert subscription.status == SubscriptionStatus.INCOMPLETE


def test_create_subscription_rejects_non_purchasable_plan(billing):
    billing.service.initialize_billing_account("tenant-1")

    with pytest.raises(BillingBadRequestError) as excinfo:
        billing.service.create_subscription("tenant-1", "free", None)

    assert excinfo.value.code == "plan_not_purchasable"
    assert billing.gateway.mutating_calls == [("create_or_get_customer", "tenant-1")]


def test_create_subscription_rejects_unknown_plan(billing):
    billing.service.initialize_billing_account("tenant-1")

    with pytest.raises(BillingNotFoundError):
        billing.service.create_subscription("tenant-1", "platinum", None)


def test_only_one_active_subscription_per_account(billing):
    _subscribe(billing)

    with pytest.raises(BillingBadRequestError) as excinfo:
        billing.service.create_subscription("tenant-1", "professional", "pm_card_visa")

    assert excinfo.value.code == "subscription_exists"
    creates = [call for call in billing.gateway.calls if call[0] == "create_subscription"]
    assert len(creates) == 1
    assert len(billing.ledger.subscriptions) == 1


def test_past_due_subscription_also_blocks_creation(billing):
    _subscribe(billing)
    billing.service.update_subscription("tenant-1", StatusOverrideRequest(status=SubscriptionStatus.PAST_DUE))

    with pytest.raises(BillingBadRequestError):
        billing.service.create_subscription("tenant-1", "starter", "pm_card_visa")


def test_create_allowed_again_after_immediate_cancellation(billing):
    first = _subscribe(billing)
    billing.service.cancel_subscription("tenant-1", cancel_at_period_end=False)

    second = billing.service.create_subscription("tenant-1", "professional", "pm_card_visa")

    assert second.id != first.id
    assert billing.ledger.get_subscription(first.id).status == SubscriptionStatus.CANCELED
    assert billing.service.get_subscription("tenant-1").id == second.id


def test_create_subscription_heals_row_left_incomplete_by_concurrent_webhook(billing):
    class RacingLedger(InMemoryLedger):
        def insert_subscription(self, subscription):
            stored = super().insert_subscription(subscription)
            # A webhook lands between the insert and the read-back.
            self.subscriptions[stored.id] = stored.model_copy(
                update={"status": SubscriptionStatus.INCOMPLETE}
            )
            return stored

    ledger = RacingLedger()
    service = BillingService(
        ledger=ledger,
        catalog=billing.catalog,
        gateway=billing.gateway,
        downgrade_gate=billing.gate,
        event_logger=billing.events,
        clock=lambda: NOW,
    )
    service.initialize_billing_account("tenant-1")

    subscription = service.create_subscription("tenant-1", "starter", "pm_card_visa")

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert ledger.get_subscription(subscription.id).status == SubscriptionStatus.ACTIVE


def test_create_heal_does_not_overwrite_webhook_delivered_during_heal(billing):
    class RacingLedger(InMemoryLedger):
        webhook = None
        webhook_blocked = None

        def get_subscription(self, subscription_id):
            stored = super().get_subscription(subscription_id)
            if self.webhook is not None or stored is None:
                return stored
            stored = stored.model_copy(update={"status": SubscriptionStatus.INCOMPLETE})
            self.subscriptions[subscription_id] = stored
            self.webhook = threading.Thread(
                target=reconciler.handle_event,
                args=(
                    subscription_envelope(
                        "customer.subscription.updated", stored.external_subscription_id, status="past_due"
                    ),
                ),
            )
            self.webhook.start()
            self.webhook.join(timeout=0.3)
            self.webhook_blocked = self.webhook.is_alive()
            return stored

    ledger = RacingLedger()
    reconciler = WebhookReconciler(ledger=ledger, event_logger=billing.events, counters=billing.counters)
    service = BillingService(
        ledger=ledger,
        catalog=billing.catalog,
        gateway=billing.gateway,
        downgrade_gate=billing.gate,
        event_logger=billing.events,
        clock=lambda: NOW,
    )
    service.initialize_billing_account("tenant-1")

    subscription = service.create_subscription("tenant-1", "starter", "pm_card_visa")
    ledger.webhook.join(timeout=5)

    assert ledger.webhook_blocked is True
    assert f"subscription:{subscription.id}" in ledger.lock_keys
    assert [update.kind for _, update in ledger.applied] == ["status_override", "gateway_sync"]
    assert ledger.subscriptions[subscription.id].status == SubscriptionStatus.PAST_DUE


def test_incomplete_gateway_status_is_not_healed(billing):
    billing.gateway.create_status = "incomplete"

    subscription = _subscribe(billing)

    assert subscription.status == SubscriptionStatus.INCOMPLETE
    assert billing.ledger.applied == []


def test_gateway_failure_on_create_writes_nothing(billing):
    billing.service.initialize_billing_account("tenant-1")
    billing.gateway.fail_with = GatewayTimeoutError()

    with pytest.raises(GatewayTimeoutError):
        billing.service.create_subscription("tenant-1", "starter", "pm_card_visa")

    assert billing.ledger.subscriptions == {}


def test_upgrade_invoices_immediately_without_consulting_gate(billing):
    current = _subscribe(billing, plan_key="starter")

    updated = billing.service.update_subscription("tenant-1", PlanChangeRequest(plan_key="professional"))

    assert updated.plan_id == "plan_professional"
    assert updated.cancel_at_period_end is False
    assert billing.gate.calls == []
    update = billing.gateway.updates[-1]
    assert update.new_price_id == "price_professional"
    assert update.item_id == billing.gateway.subscriptions[current.external_subscription_id].items[0].id
    assert update.proration_policy == ProrationPolicy.ALWAYS_INVOICE
    assert update.proration_date == NOW
    assert update.payment_behavior is None
    assert update.cancel_at_period_end is None
    assert f"subscription:{current.id}" in billing.ledger.lock_keys


def test_upgrade_clears_scheduled_cancellation_in_single_gateway_call(billing):
    _subscribe(billing, plan_key="starter")
    billing.service.cancel_subscription("tenant-1", cancel_at_period_end=True)
    calls_before = len(billing.gateway.mutating_calls)

    updated = billing.service.update_subscription("tenant-1", PlanChangeRequest(plan_key="enterprise"))

    assert updated.plan_id == "plan_enterprise"
    assert updated.cancel_at_period_end is False
    assert len(billing.gateway.mutating_calls) == calls_before + 1
    assert billing.gateway.updates[-1].cancel_at_period_end is False
    changed = [e for e in billing.events.events if e.event_type == BillingAuditEventType.SUBSCRIPTION_PLAN_CHANGED]
    assert changed[-1].metadata["reactivated"] == "true"


def test_blocked_downgrade_fails_with_blockers_and_keeps_plan(billing):
    current = _subscribe(billing, plan_key="professional")
    billing.gate.verdict = DowngradeVerdict(can_downgrade=False, blockers=["team_limit_exceeded"])
    calls_before = list(billing.gateway.calls)

    with pytest.raises(BillingBadRequestError) as excinfo:
        billing.service.update_subscription("tenant-1", PlanChangeRequest(plan_key="starter"))

    assert excinfo.value.code == "downgrade_blocked"
    assert excinfo.value.payload["blockers"] == ["team_limit_exceeded"]
    assert billing.gate.calls == [("tenant-1", "starter")]
    assert billing.gateway.calls == calls_before
    assert billing.ledger.get_subscription(current.id).plan_id == "plan_professional"


def test_allowed_downgrade_defers_proration_and_keeps_cancellation_flag(billing):
    _subscribe(billing, plan_key="professional")
    billing.service.cancel_subscription("tenant-1", cancel_at_period_end=True)

    updated = billing.service.update_subscription("tenant-1", PlanChangeRequest(plan_key="starter"))

    assert updated.plan_id == "plan_starter"
    assert updated.cancel_at_period_end is True
    update = billing.gateway.updates[-1]
    assert update.proration_policy == ProrationPolicy.CREATE_PRORATIONS
    assert update.payment_behavior == PaymentBehavior.ALLOW_INCOMPLETE
    assert update.proration_date is None
    assert update.cancel_at_period_end is None
    assert billing.gate.calls == [("tenant-1", "starter")]


def test_plan_change_stores_mapped_gateway_status(billing):
    _subscribe(billing, plan_key="starter")
    billing.gateway.update_status = "past_due"

    updated = billing.service.update_subscription("tenant-1", PlanChangeRequest(plan_key="professional"))

    assert updated.status == SubscriptionStatus.PAST_DUE


def test_change_to_current_plan_is_a_no_op(billing):
    current = _subscribe(billing, plan_key="starter")
    calls_before = list(billing.gateway.calls)

    result = billing.service.update_subscription("tenant-1", PlanChangeRequest(plan_key="starter"))

    assert result == current
    assert billing.gateway.calls == calls_before


def test_downgrade_to_free_plan_is_rejected(billing):
    _subscribe(billing, plan_key="starter")

    with pytest.raises(BillingBadRequestError) as excinfo:
        billing.service.update_subscription("tenant-1", PlanChangeRequest(plan_key="free"))

    assert excinfo.value.code == "plan_not_purchasable"
    assert billing.gate.calls == []


def test_gateway_failure_on_plan_change_leaves_ledger_untouched(billing):
    current = _subscribe(billing, plan_key="starter")
    applied_before = list(billing.ledger.applied)
    billing.gateway.fail_with = GatewayTimeoutError()

    with pytest.raises(GatewayTimeoutError):
        billing.service.update_subscription("tenant-1", PlanChangeRequest(plan_key="professional"))

    assert billing.ledger.applied == applied_before
    assert billing.ledger.get_subscription(current.id) == current


def test_update_without_subscription_raises_not_found(billing):
    billing.service.initialize_billing_account("tenant-1")

    with pytest.raises(BillingNotFoundError):
        billing.service.update_subscription("tenant-1", PlanChangeRequest(plan_key="starter"))


def test_status_override_skips_gateway(billing):
    _subscribe(billing)
    calls_before = list(billing.gateway.calls)

    updated = billing.service.update_subscription(
        "tenant-1", StatusOverrideRequest(status=SubscriptionStatus.UNPAID)
    )

    assert updated.status == SubscriptionStatus.UNPAID
    assert billing.gateway.calls == calls_before
    override = billing.events.events[-1]
    assert override.event_type == BillingAuditEventType.SUBSCRIPTION_STATUS_OVERRIDDEN
    assert override.metadata == {"from": "active", "to": "unpaid"}


def test_cancel_at_period_end_keeps_subscription_active(billing):
    _subscribe(billing)

    canceled = billing.service.cancel_subscription("tenant-1")

    assert canceled.status == SubscriptionStatus.ACTIVE
    assert canceled.cancel_at_period_end is True


def test_immediate_cancel_marks_subscription_canceled(billing):
    _subscribe(billing)

    canceled = billing.service.cancel_subscription("tenant-1", cancel_at_period_end=False)

    assert canceled.status == SubscriptionStatus.CANCELED
    assert canceled.cancel_at_period_end is False


def test_cancel_already_canceled_subscription_is_rejected(billing):
    _subscribe(billing)
    billing.service.cancel_subscription("tenant-1", cancel_at_period_end=False)

    with pytest.raises(BillingBadRequestError) as excinfo:
        billing.service.cancel_subscription("tenant-1", cancel_at_period_end=False)

    assert excinfo.value.code == "subscription_already_canceled"


def test_reactivate_requires_scheduled_cancellation(billing):
    _subscribe(billing)
    calls_before = list(billing.gateway.calls)

    with pytest.raises(BillingBadRequestError) as excinfo:
        billing.service.reactivate_subscription("tenant-1")

    assert excinfo.value.code == "subscription_not_scheduled_for_cancellation"
    assert billing.gateway.calls == calls_before


def test_reactivate_clears_flag_on_gateway_and_ledger(billing):
    _subscribe(billing)
    billing.service.cancel_subscription("tenant-1")

    reactivated = billing.service.reactivate_subscription("tenant-1")

    assert reactivated.cancel_at_period_end is False
    assert reactivated.status == SubscriptionStatus.ACTIVE
    assert billing.gateway.updates[-1].cancel_at_period_end is False
    assert billing.gateway.updates[-1].new_price_id is None
    assert billing.events.events[-1].event_type == BillingAuditEventType.SUBSCRIPTION_REACTIVATED


def test_request_idempotency_key_yields_stable_gateway_keys(billing):
    billing.service.initialize_billing_account("tenant-1")

    billing.service.create_subscription("tenant-1", "starter", "pm_card_visa", idempotency_key="req-1")

    expected = make_idempotency_key("subscription-create", "acct_1", "starter", request_key="req-1")
    assert billing.gateway.idempotency_keys[-1] == expected


def test_make_idempotency_key_scopes_request_key_per_operation():
    first = make_idempotency_key("subscription-cancel", "sub_1", request_key="req-1")

    assert first == make_idempotency_key("subscription-cancel", "sub_1", request_key="req-1")
    assert first != make_idempotency_key("subscription-reactivate", "sub_1", request_key="req-1")
    assert make_idempotency_key("subscription-cancel", "sub_1") != make_idempotency_key(
        "subscription-cancel", "sub_1"
    )


def test_check_downgrade_delegates_to_gate(billing):
    billing.gate.verdict = DowngradeVerdict(can_downgrade=True, warnings=["teams_at_limit"])

    verdict = billing.service.check_downgrade("tenant-1", "starter")

    assert verdict.warnings == ["teams_at_limit"]
    assert billing.gate.calls == [("tenant-1", "starter")]


def test_list_plans_returns_catalog(billing):
    keys = [plan.key for plan in billing.service.list_plans()]

    assert keys == ["free", "starter", "professional", "enterprise"]
