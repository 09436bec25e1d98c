"""Domain models for the subscription ledger and gateway reconciliation."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    """Lifecycle state for a subscription row."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    UNPAID = "unpaid"
    PAUSED = "paused"
    CANCELED = "canceled"


# A billing account may hold at most one subscription in these states.
BLOCKING_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)

# Subscriptions that user-initiated changes operate on.
CURRENT_STATUSES = BLOCKING_STATUSES | {SubscriptionStatus.CANCELED}

_GATEWAY_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "trialing": SubscriptionStatus.TRIALING,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
}


def map_gateway_status(value: object) -> SubscriptionStatus:
    """Translate a gateway status into a ledger status.

    The mapping is total: unknown values, ``None`` and non-string inputs all
    fall back to :attr:`SubscriptionStatus.INCOMPLETE`.
    """

    if not isinstance(value, str):
        return SubscriptionStatus.INCOMPLETE
    return _GATEWAY_STATUS_MAP.get(value, SubscriptionStatus.INCOMPLETE)


def needs_status_heal(gateway_status: object, local_status: SubscriptionStatus) -> bool:
    """Return ``True`` when the gateway reports active but the ledger row is still incomplete."""

    return gateway_status == SubscriptionStatus.ACTIVE.value and local_status == SubscriptionStatus.INCOMPLETE


class BillingInterval(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "month"
    ANNUAL = "year"


class Plan(BaseModel):
    """Reference data describing a purchasable (or free) plan."""

    id: str
    key: str
    name: str
    price_minor_units: int = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    interval: BillingInterval = BillingInterval.MONTHLY
    external_price_id: Optional[str] = None
    limits: Dict[str, Optional[int]] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_purchasable(self) -> bool:
        return bool(self.external_price_id)

    def limit_for(self, resource: str) -> Optional[int]:
        """Return the limit for ``resource``; ``None`` means unlimited."""

        value = self.limits.get(resource)
        if value is None or value <= 0:
            return None
        return value


class BillingAccount(BaseModel):
    """Maps a tenant to its customer identity at the payment gateway."""

    id: str
    tenant_id: str
    external_customer_id: str
    billing_email: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class Subscription(BaseModel):
    """Local ledger row for a tenant's subscription lifecycle."""

    id: str
    billing_account_id: str
    plan_id: str
    external_subscription_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


# --- Ledger update commands -------------------------------------------------


class PlanChange(BaseModel):
    """Swap the subscribed plan after the gateway accepted the new price."""

    kind: Literal["plan_change"] = "plan_change"
    plan_id: str
    status: Optional[SubscriptionStatus] = None
    cancel_at_period_end: Optional[bool] = None

    model_config = ConfigDict(frozen=True)

    def apply(self, subscription: Subscription, *, now: datetime) -> Subscription:
        update: Dict[str, Any] = {"plan_id": self.plan_id, "updated_at": now}
        if self.status is not None:
            update["status"] = self.status
        if self.cancel_at_period_end is not None:
            update["cancel_at_period_end"] = self.cancel_at_period_end
        return subscription.model_copy(update=update)


class StatusOverride(BaseModel):
    """Administrative status correction."""

    kind: Literal["status_override"] = "status_override"
    status: SubscriptionStatus

    model_config = ConfigDict(frozen=True)

    def apply(self, subscription: Subscription, *, now: datetime) -> Subscription:
        return subscription.model_copy(update={"status": self.status, "updated_at": now})


class CancellationChange(BaseModel):
    """Schedule, perform or revoke a cancellation."""

    kind: Literal["cancellation"] = "cancellation"
    cancel_at_period_end: bool
    status: Optional[SubscriptionStatus] = None

    model_config = ConfigDict(frozen=True)

    def apply(self, subscription: Subscription, *, now: datetime) -> Subscription:
        update: Dict[str, Any] = {"cancel_at_period_end": self.cancel_at_period_end, "updated_at": now}
        if self.status is not None:
            update["status"] = self.status
        return subscription.model_copy(update=update)


class GatewaySync(BaseModel):
    """Overwrite gateway-owned fields from a webhook snapshot.

    Period bounds left as ``None`` keep the stored values.
    """

    kind: Literal["gateway_sync"] = "gateway_sync"
    status: SubscriptionStatus
    cancel_at_period_end: bool
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def apply(self, subscription: Subscription, *, now: datetime) -> Subscription:
        update: Dict[str, Any] = {
            "status": self.status,
            "cancel_at_period_end": self.cancel_at_period_end,
            "updated_at": now,
        }
        if self.current_period_start is not None:
            update["current_period_start"] = self.current_period_start
        if self.current_period_end is not None:
            update["current_period_end"] = self.current_period_end
        return subscription.model_copy(update=update)


SubscriptionUpdate = Annotated[
    Union[PlanChange, StatusOverride, CancellationChange, GatewaySync],
    Field(discriminator="kind"),
]


class PlanChangeRequest(BaseModel):
    """User request to move the subscription to another plan."""

    kind: Literal["plan_change"] = "plan_change"
    plan_key: str = Field(min_length=1)

    model_config = ConfigDict(frozen=True)


class StatusOverrideRequest(BaseModel):
    """Administrative request to force a subscription status."""

    kind: Literal["status_override"] = "status_override"
    status: SubscriptionStatus

    model_config = ConfigDict(frozen=True)


SubscriptionChange = Annotated[
    Union[PlanChangeRequest, StatusOverrideRequest],
    Field(discriminator="kind"),
]


# --- Proration policy -------------------------------------------------------


class PlanChangeDirection(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"


class ProrationPolicy(str, Enum):
    """How the gateway bills the difference of a mid-period price swap."""

    ALWAYS_INVOICE = "always_invoice"
    CREATE_PRORATIONS = "create_prorations"


class PaymentBehavior(str, Enum):
    ALLOW_INCOMPLETE = "allow_incomplete"


class PriceChangeTerms(BaseModel):
    """Gateway terms applied when swapping a subscription's price."""

    direction: PlanChangeDirection
    proration_policy: ProrationPolicy
    proration_date: Optional[datetime] = None
    payment_behavior: Optional[PaymentBehavior] = None

    model_config = ConfigDict(frozen=True)


def plan_change_direction(current: Plan, target: Plan) -> PlanChangeDirection:
    if target.price_minor_units > current.price_minor_units:
        return PlanChangeDirection.UPGRADE
    if target.price_minor_units < current.price_minor_units:
        return PlanChangeDirection.DOWNGRADE
    return PlanChangeDirection.LATERAL


def select_price_change_terms(current: Plan, target: Plan, *, now: datetime) -> PriceChangeTerms:
    """Pick proration terms for a plan change.

    Upgrades are invoiced immediately, anchored at ``now``. Everything else
    defers prorations to the next cycle and tolerates incomplete payment so a
    failed charge cannot block the change.
    """

    direction = plan_change_direction(current, target)
    if direction == PlanChangeDirection.UPGRADE:
        return PriceChangeTerms(
            direction=direction,
            proration_policy=ProrationPolicy.ALWAYS_INVOICE,
            proration_date=now,
        )
    return PriceChangeTerms(
        direction=direction,
        proration_policy=ProrationPolicy.CREATE_PRORATIONS,
        payment_behavior=PaymentBehavior.ALLOW_INCOMPLETE,
    )


# --- Gateway snapshots ------------------------------------------------------


class GatewayCustomer(BaseModel):
    external_customer_id: str
    email: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class GatewaySubscriptionItem(BaseModel):
    id: str
    price_id: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _normalize_price(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "price_id" not in data:
            price = data.get("price")
            if isinstance(price, Mapping):
                price = price.get("id")
            return {**data, "price_id": price}
        return data


class GatewaySubscription(BaseModel):
    """Transient snapshot of a gateway subscription; never stored verbatim."""

    id: str
    status: Optional[str] = None
    customer: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    items: List[GatewaySubscriptionItem] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _normalize_payload(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        normalized = dict(data)
        items = normalized.get("items")
        if isinstance(items, Mapping):
            items = items.get("data") or []
        normalized["items"] = list(items or [])
        first_item = normalized["items"][0] if normalized["items"] else None
        # Newer gateway API versions report billing periods per item.
        for field_name in ("current_period_start", "current_period_end"):
            if normalized.get(field_name) is None and isinstance(first_item, Mapping):
                normalized[field_name] = first_item.get(field_name)
        customer = normalized.get("customer")
        if isinstance(customer, Mapping):
            normalized["customer"] = customer.get("id")
        if normalized.get("cancel_at_period_end") is None:
            normalized["cancel_at_period_end"] = False
        return normalized

    @property
    def primary_item_id(self) -> Optional[str]:
        return self.items[0].id if self.items else None


class GatewaySubscriptionUpdate(BaseModel):
    """Parameters for a gateway-side subscription mutation."""

    item_id: Optional[str] = None
    new_price_id: Optional[str] = None
    proration_policy: Optional[ProrationPolicy] = None
    proration_date: Optional[datetime] = None
    payment_behavior: Optional[PaymentBehavior] = None
    cancel_at_period_end: Optional[bool] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def price_swap(
        cls,
        *,
        item_id: str,
        new_price_id: str,
        terms: PriceChangeTerms,
        cancel_at_period_end: Optional[bool] = None,
    ) -> "GatewaySubscriptionUpdate":
        return cls(
            item_id=item_id,
            new_price_id=new_price_id,
            proration_policy=terms.proration_policy,
            proration_date=terms.proration_date,
            payment_behavior=terms.payment_behavior,
            cancel_at_period_end=cancel_at_period_end,
        )


class GatewayInvoice(BaseModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _flatten_references(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        normalized = dict(data)
        for field_name in ("customer", "subscription"):
            value = normalized.get(field_name)
            if isinstance(value, Mapping):
                normalized[field_name] = value.get("id")
        return normalized


# --- Webhook events ---------------------------------------------------------


class WebhookEventType(str, Enum):
    """Webhook event kinds the reconciler reacts to."""

    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class SubscriptionUpdated(BaseModel):
    event_id: Optional[str] = None
    event_type: Literal["customer.subscription.updated"] = "customer.subscription.updated"
    subscription: GatewaySubscription

    model_config = ConfigDict(frozen=True)


class SubscriptionDeleted(BaseModel):
    event_id: Optional[str] = None
    event_type: Literal["customer.subscription.deleted"] = "customer.subscription.deleted"
    subscription: GatewaySubscription

    model_config = ConfigDict(frozen=True)


class InvoicePaymentSucceeded(BaseModel):
    event_id: Optional[str] = None
    event_type: Literal["invoice.payment_succeeded"] = "invoice.payment_succeeded"
    invoice: GatewayInvoice

    model_config = ConfigDict(frozen=True)


class InvoicePaymentFailed(BaseModel):
    event_id: Optional[str] = None
    event_type: Literal["invoice.payment_failed"] = "invoice.payment_failed"
    invoice: GatewayInvoice

    model_config = ConfigDict(frozen=True)


class UnhandledEvent(BaseModel):
    """Any event kind the reconciler deliberately ignores."""

    event_id: Optional[str] = None
    event_type: str

    model_config = ConfigDict(frozen=True)


BillingWebhookEvent = Union[
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    UnhandledEvent,
]


def parse_webhook_event(envelope: Mapping[str, Any]) -> BillingWebhookEvent:
    """Build a typed event from a ``{id, type, data: {object}}`` envelope.

    Raises :class:`pydantic.ValidationError` when a handled event kind carries
    a malformed object.
    """

    event_id = envelope.get("id")
    event_id = str(event_id) if event_id is not None else None
    event_type = str(envelope.get("type") or "")
    data = envelope.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None

    if event_type == WebhookEventType.SUBSCRIPTION_UPDATED.value:
        return SubscriptionUpdated(event_id=event_id, subscription=obj)
    if event_type == WebhookEventType.SUBSCRIPTION_DELETED.value:
        return SubscriptionDeleted(event_id=event_id, subscription=obj)
    if event_type == WebhookEventType.INVOICE_PAYMENT_SUCCEEDED.value:
        return InvoicePaymentSucceeded(event_id=event_id, invoice=obj)
    if event_type == WebhookEventType.INVOICE_PAYMENT_FAILED.value:
        return InvoicePaymentFailed(event_id=event_id, invoice=obj)
    return UnhandledEvent(event_id=event_id, event_type=event_type)


class ReconciliationWarning(BaseModel):
    """Non-fatal condition met while applying a webhook."""

    code: str
    message: str
    event_type: Optional[str] = None
    external_subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ReconciliationResult(BaseModel):
    """Outcome of applying one webhook event to the ledger."""

    event_id: Optional[str] = None
    event_type: str
    applied: bool = False
    subscription_id: Optional[str] = None
    warnings: List[ReconciliationWarning] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


# --- Downgrade gate & audit -------------------------------------------------


class DowngradeVerdict(BaseModel):
    """Eligibility verdict returned by the downgrade gate."""

    can_downgrade: bool
    blockers: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    ACCOUNT_INITIALIZED = "account_initialized"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_PLAN_CHANGED = "subscription_plan_changed"
    SUBSCRIPTION_STATUS_OVERRIDDEN = "subscription_status_overridden"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    SUBSCRIPTION_SYNCED = "subscription_synced"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


class BillingAuditEvent(BaseModel):
    """Structured audit event recorded for every billing mutation."""

    event_type: BillingAuditEventType
    tenant_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)
