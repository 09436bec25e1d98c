"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..billing import (
    BillingAccount,
    DowngradeVerdict,
    Plan,
    PlanChangeRequest,
    ReconciliationResult,
    StatusOverrideRequest,
    Subscription,
    SubscriptionStatus,
)
from ..billing.models import SubscriptionChange


class InitializeBillingRequest(BaseModel):
    billing_email: Optional[str] = Field(alias="billingEmail", default=None)
    name: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class BillingAccountResponse(BaseModel):
    id: str
    tenant_id: str = Field(alias="tenantId")
    external_customer_id: str = Field(alias="externalCustomerId")
    billing_email: Optional[str] = Field(alias="billingEmail", default=None)
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_account(cls, account: BillingAccount) -> "BillingAccountResponse":
        return cls(
            id=account.id,
            tenant_id=account.tenant_id,
            external_customer_id=account.external_customer_id,
            billing_email=account.billing_email,
            created_at=account.created_at,
        )


class PlanResponse(BaseModel):
    id: str
    key: str
    name: str
    price_minor_units: int = Field(alias="priceMinorUnits")
    currency: str
    interval: str
    purchasable: bool
    limits: Dict[str, Optional[int]] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            id=plan.id,
            key=plan.key,
            name=plan.name,
            price_minor_units=plan.price_minor_units,
            currency=plan.currency,
            interval=plan.interval.value,
            purchasable=plan.is_purchasable,
            limits=dict(plan.limits),
        )


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]


class SubscriptionResponse(BaseModel):
    id: str
    billing_account_id: str = Field(alias="billingAccountId")
    plan_id: str = Field(alias="planId")
    plan_key: Optional[str] = Field(alias="planKey", default=None)
    external_subscription_id: str = Field(alias="externalSubscriptionId")
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = Field(alias="currentPeriodStart", default=None)
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd", default=False)
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(
        cls, subscription: Subscription, plan: Optional[Plan] = None
    ) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            billing_account_id=subscription.billing_account_id,
            plan_id=subscription.plan_id,
            plan_key=plan.key if plan else None,
            external_subscription_id=subscription.external_subscription_id,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            updated_at=subscription.updated_at,
        )


class CurrentSubscriptionResponse(BaseModel):
    billing_account_id: str = Field(alias="billingAccountId")
    subscription: Optional[SubscriptionResponse] = None

    model_config = ConfigDict(populate_by_name=True)


class CreateSubscriptionRequest(BaseModel):
    plan_key: str = Field(alias="planKey", min_length=1)
    payment_method_id: Optional[str] = Field(alias="paymentMethodId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class UpdateSubscriptionRequest(BaseModel):
    """Either a plan change or an administrative status override, never both."""

    plan_key: Optional[str] = Field(alias="planKey", default=None, min_length=1)
    status: Optional[SubscriptionStatus] = None

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _exactly_one_change(self) -> "UpdateSubscriptionRequest":
        if (self.plan_key is None) == (self.status is None):
            raise ValueError("Provide exactly one of planKey or status")
        return self

    def to_change(self) -> SubscriptionChange:
        if self.plan_key is not None:
            return PlanChangeRequest(plan_key=self.plan_key)
        return StatusOverrideRequest(status=self.status)


class DowngradeValidationResponse(BaseModel):
    plan_key: str = Field(alias="planKey")
    can_downgrade: bool = Field(alias="canDowngrade")
    blockers: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_verdict(cls, plan_key: str, verdict: DowngradeVerdict) -> "DowngradeValidationResponse":
        return cls(
            plan_key=plan_key,
            can_downgrade=verdict.can_downgrade,
            blockers=list(verdict.blockers),
            warnings=list(verdict.warnings),
        )


class WebhookAck(BaseModel):
    received: bool = True
    event_id: Optional[str] = Field(alias="eventId", default=None)
    event_type: Optional[str] = Field(alias="eventType", default=None)
    applied: bool = False
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "WebhookAck":
        return cls(
            event_id=result.event_id,
            event_type=result.event_type or None,
            applied=result.applied,
            warnings=[warning.code for warning in result.warnings],
        )
