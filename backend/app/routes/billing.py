"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
import os
from typing import Any, Optional

from fastapi import APIRouter, Body, Cookie, Depends, Header, HTTPException, Query, status

from backend import app_context

from ..billing import BillingError, BillingService, StatusOverrideRequest, Subscription
from ..schemas.billing import (
    BillingAccountResponse,
    CreateSubscriptionRequest,
    CurrentSubscriptionResponse,
    DowngradeValidationResponse,
    InitializeBillingRequest,
    PlanListResponse,
    PlanResponse,
    SubscriptionResponse,
    UpdateSubscriptionRequest,
    WebhookAck,
)
from ..services.billing import get_billing_service, get_webhook_reconciler

logger = logging.getLogger(__name__)

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


def _tenant_id(current_user: Any) -> str:
    tenant_id = getattr(current_user, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is not attached to a tenant")
    return str(tenant_id)


def _subscription_response(service: BillingService, subscription: Subscription) -> SubscriptionResponse:
    try:
        plan = service.catalog.get_by_id(subscription.plan_id)
    except BillingError:
        plan = None
    return SubscriptionResponse.from_subscription(subscription, plan)


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/account", response_model=BillingAccountResponse)
def initialize_billing_account(
    payload: Optional[InitializeBillingRequest] = Body(None),
    *,
    current_user=Depends(_get_current_user),
) -> BillingAccountResponse:
    service = get_billing_service()
    email = (payload.billing_email if payload else None) or getattr(current_user, "email", None)
    name = (payload.name if payload else None) or getattr(current_user, "name", None)
    try:
        account = service.initialize_billing_account(_tenant_id(current_user), email, name)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return BillingAccountResponse.from_account(account)


@router.get("/plans", response_model=PlanListResponse)
def list_plans() -> PlanListResponse:
    service = get_billing_service()
    return PlanListResponse(plans=[PlanResponse.from_plan(plan) for plan in service.list_plans()])


@router.get("/subscription", response_model=CurrentSubscriptionResponse)
def get_subscription(*, current_user=Depends(_get_current_user)) -> CurrentSubscriptionResponse:
    service = get_billing_service()
    tenant_id = _tenant_id(current_user)
    try:
        account = service.initialize_billing_account(
            tenant_id,
            getattr(current_user, "email", None),
            getattr(current_user, "name", None),
        )
        subscription = service.get_subscription(tenant_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CurrentSubscriptionResponse(
        billing_account_id=account.id,
        subscription=_subscription_response(service, subscription) if subscription else None,
    )


@router.post("/subscription", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: CreateSubscriptionRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionResponse:
    service = get_billing_service()
    try:
        subscription = service.create_subscription(
            _tenant_id(current_user),
            payload.plan_key,
            payload.payment_method_id,
            idempotency_key=idempotency_key,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return _subscription_response(service, subscription)


@router.put("/subscription", response_model=SubscriptionResponse)
def update_subscription(
    payload: UpdateSubscriptionRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionResponse:
    change = payload.to_change()
    if isinstance(change, StatusOverrideRequest) and not getattr(current_user, "is_admin", False):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only administrators can override status")

    service = get_billing_service()
    try:
        subscription = service.update_subscription(
            _tenant_id(current_user), change, idempotency_key=idempotency_key
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return _subscription_response(service, subscription)


@router.delete("/subscription", response_model=SubscriptionResponse)
def cancel_subscription(
    immediate: bool = Query(False),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionResponse:
    service = get_billing_service()
    try:
        subscription = service.cancel_subscription(
            _tenant_id(current_user),
            cancel_at_period_end=not immediate,
            idempotency_key=idempotency_key,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return _subscription_response(service, subscription)


@router.post("/subscription/reactivate", response_model=SubscriptionResponse)
def reactivate_subscription(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionResponse:
    service = get_billing_service()
    try:
        subscription = service.reactivate_subscription(
            _tenant_id(current_user), idempotency_key=idempotency_key
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return _subscription_response(service, subscription)


@router.get("/downgrade-validation/{plan_key}", response_model=DowngradeValidationResponse)
def validate_downgrade(
    plan_key: str,
    *,
    current_user=Depends(_get_current_user),
) -> DowngradeValidationResponse:
    service = get_billing_service()
    try:
        verdict = service.check_downgrade(_tenant_id(current_user), plan_key)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return DowngradeValidationResponse.from_verdict(plan_key, verdict)


@router.post("/webhook", response_model=WebhookAck)
def receive_webhook(payload: Any = Body(None)) -> WebhookAck:
    """Acknowledge every gateway event that reached the reconciler.

    Database and other infrastructure failures propagate so the gateway
    redelivers the event later.
    """

    event_id = payload.get("id") if isinstance(payload, dict) else None
    event_type = payload.get("type") if isinstance(payload, dict) else None
    try:
        result = get_webhook_reconciler().handle_event(payload)
    except (BillingError, ValueError) as exc:
        logger.warning("Webhook %s (%s) failed: %s", event_id, event_type, exc)
        return WebhookAck(
            event_id=str(event_id) if event_id is not None else None,
            event_type=str(event_type) if event_type is not None else None,
            error=str(exc),
        )
    return WebhookAck.from_result(result)
