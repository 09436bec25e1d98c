from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from backend.app.billing.exceptions import BillingBadRequestError
from backend.app.billing.models import DowngradeVerdict, SubscriptionStatus
from backend.app.routes import billing as billing_routes
from backend.app.schemas.billing import (
    CreateSubscriptionRequest,
    InitializeBillingRequest,
    UpdateSubscriptionRequest,
)
from billing_fakes import subscription_envelope


@pytest.fixture
def routes(billing, monkeypatch):
    monkeypatch.setattr(billing_routes, "get_billing_service", lambda: billing.service)
    monkeypatch.setattr(billing_routes, "get_webhook_reconciler", lambda: billing.reconciler)
    return billing


def _user(**overrides):
    values = dict(tenant_id="tenant-1", email="owner@example.com", name="Owner", is_admin=False)
    values.update(overrides)
    return SimpleNamespace(**values)


def _create(user):
    return billing_routes.create_subscription(
        CreateSubscriptionRequest(planKey="starter", paymentMethodId="pm_card_visa"),
        idempotency_key=None,
        current_user=user,
    )


def test_get_subscription_initializes_account_on_first_visit(routes):
    response = billing_routes.get_subscription(current_user=_user())

    assert response.subscription is None
    assert response.billing_account_id == routes.ledger.get_billing_account("tenant-1").id


def test_initialize_account_prefers_explicit_billing_email(routes):
    response = billing_routes.initialize_billing_account(
        InitializeBillingRequest(billingEmail="billing@example.com"),
        current_user=_user(),
    )

    assert response.tenant_id == "tenant-1"
    assert response.billing_email == "billing@example.com"


def test_create_subscription_returns_plan_key(routes):
    billing_routes.initialize_billing_account(None, current_user=_user())

    response = _create(_user())

    assert response.plan_key == "starter"
    assert response.status == SubscriptionStatus.ACTIVE
    dumped = response.model_dump(by_alias=True)
    assert dumped["planKey"] == "starter"
    assert dumped["cancelAtPeriodEnd"] is False


def test_create_without_account_maps_to_404(routes):
    with pytest.raises(HTTPException) as excinfo:
        _create(_user())

    assert excinfo.value.status_code == 404


def test_duplicate_create_maps_to_400(routes):
    billing_routes.initialize_billing_account(None, current_user=_user())
    _create(_user())

    with pytest.raises(HTTPException) as excinfo:
        _create(_user())

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["error"] == "subscription_exists"


def test_blocked_downgrade_reports_blockers(routes):
    billing_routes.initialize_billing_account(None, current_user=_user())
    billing_routes.create_subscription(
        CreateSubscriptionRequest(planKey="professional"), idempotency_key="req-1", current_user=_user()
    )
    routes.gate.verdict = DowngradeVerdict(can_downgrade=False, blockers=["teams_limit_exceeded"])

    with pytest.raises(HTTPException) as excinfo:
        billing_routes.update_subscription(
            UpdateSubscriptionRequest(planKey="starter"), idempotency_key=None, current_user=_user()
        )

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["blockers"] == ["teams_limit_exceeded"]


def test_status_override_requires_admin(routes):
    billing_routes.initialize_billing_account(None, current_user=_user())
    _create(_user())

    with pytest.raises(HTTPException) as excinfo:
        billing_routes.update_subscription(
            UpdateSubscriptionRequest(status="past_due"), idempotency_key=None, current_user=_user()
        )
    assert excinfo.value.status_code == 403

    response = billing_routes.update_subscription(
        UpdateSubscriptionRequest(status="past_due"), idempotency_key=None, current_user=_user(is_admin=True)
    )
    assert response.status == SubscriptionStatus.PAST_DUE


def test_update_request_requires_exactly_one_change():
    with pytest.raises(ValidationError):
        UpdateSubscriptionRequest()
    with pytest.raises(ValidationError):
        UpdateSubscriptionRequest(planKey="starter", status="active")


def test_cancel_and_reactivate_round_trip(routes):
    billing_routes.initialize_billing_account(None, current_user=_user())
    _create(_user())

    canceled = billing_routes.cancel_subscription(immediate=False, idempotency_key=None, current_user=_user())
    assert canceled.cancel_at_period_end is True

    reactivated = billing_routes.reactivate_subscription(idempotency_key=None, current_user=_user())
    assert reactivated.cancel_at_period_end is False
    assert reactivated.status == SubscriptionStatus.ACTIVE


def test_reactivate_without_scheduled_cancel_maps_to_400(routes):
    billing_routes.initialize_billing_account(None, current_user=_user())
    _create(_user())

    with pytest.raises(HTTPException) as excinfo:
        billing_routes.reactivate_subscription(idempotency_key=None, current_user=_user())

    assert excinfo.value.status_code == 400


def test_user_without_tenant_is_forbidden(routes):
    with pytest.raises(HTTPException) as excinfo:
        billing_routes.get_subscription(current_user=SimpleNamespace(email="x@y.z"))

    assert excinfo.value.status_code == 403


def test_list_plans_flags_purchasable_tiers(routes):
    response = billing_routes.list_plans()

    purchasable = {plan.key: plan.purchasable for plan in response.plans}
    assert purchasable == {"free": False, "starter": True, "professional": True, "enterprise": True}


def test_downgrade_validation_preview(routes):
    routes.gate.verdict = DowngradeVerdict(can_downgrade=True, warnings=["members_at_limit"])

    response = billing_routes.validate_downgrade("starter", current_user=_user())

    assert response.can_downgrade is True
    assert response.warnings == ["members_at_limit"]
    assert response.model_dump(by_alias=True)["canDowngrade"] is True


def test_webhook_acknowledges_applied_event(routes):
    billing_routes.initialize_billing_account(None, current_user=_user())
    created = _create(_user())

    ack = billing_routes.receive_webhook(
        subscription_envelope(
            "customer.subscription.updated", created.external_subscription_id, event_id="evt_42", status="past_due"
        )
    )

    assert ack.received is True
    assert ack.applied is True
    assert ack.event_id == "evt_42"
    assert ack.model_dump(by_alias=True)["eventType"] == "customer.subscription.updated"


def test_webhook_acknowledges_unknown_and_malformed_events(routes):
    unknown = billing_routes.receive_webhook({"id": "evt_1", "type": "plan.created", "data": {"object": {}}})
    malformed = billing_routes.receive_webhook("garbage")

    assert unknown.received is True
    assert unknown.warnings == ["unhandled_event_type"]
    assert malformed.received is True
    assert malformed.warnings == ["malformed_event"]


def test_webhook_acknowledges_billing_errors(routes, monkeypatch):
    def failing_handle_event(envelope):
        raise BillingBadRequestError(code="subscription_exists", message="Duplicate active subscription")

    monkeypatch.setattr(routes.reconciler, "handle_event", failing_handle_event)

    ack = billing_routes.receive_webhook({"id": "evt_7", "type": "customer.subscription.updated"})

    assert ack.received is True
    assert ack.event_id == "evt_7"
    assert ack.error == "Duplicate active subscription"
