"""Change orchestrator coordinating subscription changes with the payment gateway."""
from __future__ import annotations

import hashlib
import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol
from uuid import uuid4

from .catalog import PlanCatalog
from .downgrade import DowngradeGate
from .exceptions import BillingBadRequestError, BillingNotFoundError, GatewayError
from .gateway import PaymentGateway
from .models import (
    BLOCKING_STATUSES,
    CURRENT_STATUSES,
    BillingAccount,
    BillingAuditEvent,
    BillingAuditEventType,
    CancellationChange,
    DowngradeVerdict,
    GatewaySubscription,
    GatewaySubscriptionUpdate,
    Plan,
    PlanChange,
    PlanChangeDirection,
    PlanChangeRequest,
    StatusOverride,
    StatusOverrideRequest,
    Subscription,
    SubscriptionChange,
    SubscriptionStatus,
    SubscriptionUpdate,
    map_gateway_status,
    needs_status_heal,
    select_price_change_terms,
)

logger = logging.getLogger(__name__)


class SubscriptionLedger(Protocol):
    """Persistence operations for billing accounts and subscriptions."""

    def serialized(self, key: str) -> AbstractContextManager:
        """Hold an exclusive lock for ``key`` until the context exits."""

    def get_billing_account(self, tenant_id: str) -> Optional[BillingAccount]:
        ...

    def create_billing_account(
        self,
        *,
        tenant_id: str,
        external_customer_id: str,
        billing_email: Optional[str],
    ) -> BillingAccount:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        ...

    def find_latest_subscription(
        self,
        billing_account_id: str,
        statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> Optional[Subscription]:
        ...

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def apply_update(self, subscription_id: str, update: SubscriptionUpdate) -> Subscription:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


def make_idempotency_key(operation: str, *parts: str, request_key: Optional[str] = None) -> str:
    """Derive the gateway idempotency key for one operation.

    A caller-supplied request key yields the same gateway key on every retry;
    without one each call gets a fresh key.
    """

    if request_key:
        digest = hashlib.sha256("|".join((operation, *parts, request_key)).encode("utf-8")).hexdigest()
        return f"{operation}:{digest[:40]}"
    return f"{operation}:{uuid4().hex}"


def account_lock_key(billing_account_id: str) -> str:
    return f"account:{billing_account_id}"


def subscription_lock_key(subscription_id: str) -> str:
    return f"subscription:{subscription_id}"


@dataclass
class BillingService:
    """Coordinates user-initiated subscription changes.

    Every change is grounded in a gateway call first; the ledger is written
    only after the gateway accepted it.
    """

    ledger: SubscriptionLedger
    catalog: PlanCatalog
    gateway: PaymentGateway
    downgrade_gate: DowngradeGate
    event_logger: BillingEventLogger
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    # -- queries ---------------------------------------------------------

    def get_billing_account(self, tenant_id: str) -> BillingAccount:
        account = self.ledger.get_billing_account(tenant_id)
        if account is None:
            raise BillingNotFoundError(
                code="billing_account_not_found",
                message="Billing account not found",
                detail={"tenantId": tenant_id},
            )
        return account

    def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        """Return the tenant's most recent subscription, or ``None`` on the free tier."""

        account = self.get_billing_account(tenant_id)
        return self.ledger.find_latest_subscription(account.id)

    def list_plans(self) -> List[Plan]:
        return self.catalog.list_plans()

    def check_downgrade(self, tenant_id: str, plan_key: str) -> DowngradeVerdict:
        plan = self.catalog.get_by_key(plan_key)
        return self.downgrade_gate.validate_downgrade(tenant_id, plan)

    # -- commands --------------------------------------------------------

    def initialize_billing_account(
        self,
        tenant_id: str,
        owner_email: Optional[str] = None,
        owner_name: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> BillingAccount:
        """Return the tenant's billing account, creating it on first use."""

        existing = self.ledger.get_billing_account(tenant_id)
        if existing is not None:
            return existing

        with self.ledger.serialized(f"tenant:{tenant_id}"):
            existing = self.ledger.get_billing_account(tenant_id)
            if existing is not None:
                return existing
            customer = self.gateway.create_or_get_customer(
                tenant_id,
                owner_email,
                owner_name,
                idempotency_key=make_idempotency_key("customer", tenant_id, request_key=idempotency_key),
            )
            account = self.ledger.create_billing_account(
                tenant_id=tenant_id,
                external_customer_id=customer.external_customer_id,
                billing_email=owner_email or customer.email,
            )

        logger.info("Initialized billing account %s for tenant %s", account.id, tenant_id)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.ACCOUNT_INITIALIZED,
                tenant_id=tenant_id,
                metadata={"external_customer_id": account.external_customer_id},
            )
        )
        return account

    def create_subscription(
        self,
        tenant_id: str,
        plan_key: str,
        payment_method_ref: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Subscription:
        account = self.get_billing_account(tenant_id)
        plan = self.catalog.get_by_key(plan_key)
        if not plan.is_purchasable:
            raise BillingBadRequestError(
                code="plan_not_purchasable",
                message=f"Plan {plan.key!r} cannot be purchased",
                detail={"planKey": plan.key},
            )

        with self.ledger.serialized(account_lock_key(account.id)):
            existing = self.ledger.find_latest_subscription(account.id, BLOCKING_STATUSES)
            if existing is not None:
                raise BillingBadRequestError(
                    code="subscription_exists",
                    message="An active subscription already exists for this billing account",
                    detail={"subscriptionId": existing.id, "status": existing.status.value},
                )

            snapshot = self.gateway.create_subscription(
                account.external_customer_id,
                plan.external_price_id,
                payment_method_ref,
                idempotency_key=make_idempotency_key(
                    "subscription-create", account.id, plan.key, request_key=idempotency_key
                ),
            )
            now = self._now()
            subscription = self.ledger.insert_subscription(
                Subscription(
                    id=str(uuid4()),
                    billing_account_id=account.id,
                    plan_id=plan.id,
                    external_subscription_id=snapshot.id,
                    status=map_gateway_status(snapshot.status),
                    current_period_start=snapshot.current_period_start,
                    current_period_end=snapshot.current_period_end,
                    cancel_at_period_end=snapshot.cancel_at_period_end,
                    created_at=now,
                    updated_at=now,
                )
            )
            with self.ledger.serialized(subscription_lock_key(subscription.id)):
                subscription = self._heal_status(subscription, snapshot)

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CREATED,
                tenant_id=tenant_id,
                subscription_id=subscription.id,
                metadata={"plan_key": plan.key, "status": subscription.status.value},
            )
        )
        return subscription

    def update_subscription(
        self,
        tenant_id: str,
        change: SubscriptionChange,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Subscription:
        account = self.get_billing_account(tenant_id)
        current = self._require_current_subscription(account)
        if isinstance(change, PlanChangeRequest):
            return self._change_plan(tenant_id, current, change.plan_key, idempotency_key)
        if isinstance(change, StatusOverrideRequest):
            return self._override_status(tenant_id, current, change.status)
        raise BillingBadRequestError(code="unsupported_change", message="Unsupported subscription change")

    def cancel_subscription(
        self,
        tenant_id: str,
        cancel_at_period_end: bool = True,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Subscription:
        account = self.get_billing_account(tenant_id)
        current = self._require_current_subscription(account)

        with self.ledger.serialized(subscription_lock_key(current.id)):
            current = self._reload(current)
            if current.status == SubscriptionStatus.CANCELED:
                raise BillingBadRequestError(
                    code="subscription_already_canceled",
                    message="Subscription is already canceled",
                    detail={"subscriptionId": current.id},
                )
            self.gateway.cancel_subscription(
                current.external_subscription_id,
                at_period_end=cancel_at_period_end,
                idempotency_key=make_idempotency_key(
                    "subscription-cancel",
                    current.id,
                    "period-end" if cancel_at_period_end else "immediate",
                    request_key=idempotency_key,
                ),
            )
            if cancel_at_period_end:
                command = CancellationChange(cancel_at_period_end=True)
            else:
                command = CancellationChange(cancel_at_period_end=False, status=SubscriptionStatus.CANCELED)
            subscription = self.ledger.apply_update(current.id, command)

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CANCELED,
                tenant_id=tenant_id,
                subscription_id=subscription.id,
                metadata={"at_period_end": str(cancel_at_period_end).lower()},
            )
        )
        return subscription

    def reactivate_subscription(
        self,
        tenant_id: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Subscription:
        account = self.get_billing_account(tenant_id)
        current = self._require_current_subscription(account)

        with self.ledger.serialized(subscription_lock_key(current.id)):
            current = self._reload(current)
            if not current.cancel_at_period_end:
                raise BillingBadRequestError(
                    code="subscription_not_scheduled_for_cancellation",
                    message="Subscription is not scheduled for cancellation",
                    detail={"subscriptionId": current.id},
                )
            self.gateway.update_subscription(
                current.external_subscription_id,
                GatewaySubscriptionUpdate(cancel_at_period_end=False),
                idempotency_key=make_idempotency_key(
                    "subscription-reactivate", current.id, request_key=idempotency_key
                ),
            )
            subscription = self.ledger.apply_update(
                current.id,
                CancellationChange(cancel_at_period_end=False, status=SubscriptionStatus.ACTIVE),
            )

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_REACTIVATED,
                tenant_id=tenant_id,
                subscription_id=subscription.id,
            )
        )
        return subscription

    # -- helpers ---------------------------------------------------------

    def _require_current_subscription(self, account: BillingAccount) -> Subscription:
        subscription = self.ledger.find_latest_subscription(account.id, CURRENT_STATUSES)
        if subscription is None:
            raise BillingNotFoundError(
                code="subscription_not_found",
                message="No subscription found",
                detail={"billingAccountId": account.id},
            )
        return subscription

    def _reload(self, subscription: Subscription) -> Subscription:
        reloaded = self.ledger.get_subscription(subscription.id)
        if reloaded is None:
            raise BillingNotFoundError(
                code="subscription_not_found",
                message="Subscription not found",
                detail={"subscriptionId": subscription.id},
            )
        return reloaded

    def _heal_status(self, subscription: Subscription, snapshot: GatewaySubscription) -> Subscription:
        """Promote a row left ``incomplete`` while the gateway already reports it active."""

        stored = self.ledger.get_subscription(subscription.id) or subscription
        if not needs_status_heal(snapshot.status, stored.status):
            return stored
        logger.warning(
            "Subscription %s is active at the gateway but incomplete locally; healing",
            subscription.id,
        )
        return self.ledger.apply_update(subscription.id, StatusOverride(status=SubscriptionStatus.ACTIVE))

    def _override_status(
        self,
        tenant_id: str,
        current: Subscription,
        status: SubscriptionStatus,
    ) -> Subscription:
        with self.ledger.serialized(subscription_lock_key(current.id)):
            previous = self._reload(current)
            subscription = self.ledger.apply_update(current.id, StatusOverride(status=status))

        logger.info(
            "Status of subscription %s overridden from %s to %s",
            subscription.id,
            previous.status.value,
            status.value,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_STATUS_OVERRIDDEN,
                tenant_id=tenant_id,
                subscription_id=subscription.id,
                metadata={"from": previous.status.value, "to": status.value},
            )
        )
        return subscription

    def _change_plan(
        self,
        tenant_id: str,
        current: Subscription,
        plan_key: str,
        idempotency_key: Optional[str],
    ) -> Subscription:
        with self.ledger.serialized(subscription_lock_key(current.id)):
            current = self._reload(current)
            current_plan = self.catalog.get_by_id(current.plan_id)
            target_plan = self.catalog.get_by_key(plan_key)
            if target_plan.key == current_plan.key:
                return current
            if not target_plan.is_purchasable:
                raise BillingBadRequestError(
                    code="plan_not_purchasable",
                    message=f"Plan {target_plan.key!r} cannot be purchased",
                    detail={"planKey": target_plan.key},
                )

            terms = select_price_change_terms(current_plan, target_plan, now=self._now())
            if terms.direction == PlanChangeDirection.DOWNGRADE:
                verdict = self.downgrade_gate.validate_downgrade(tenant_id, target_plan)
                if not verdict.can_downgrade:
                    raise BillingBadRequestError(
                        code="downgrade_blocked",
                        message="Current usage exceeds the limits of the requested plan",
                        detail={"blockers": list(verdict.blockers), "warnings": list(verdict.warnings)},
                    )

            reactivate = current.cancel_at_period_end and terms.direction == PlanChangeDirection.UPGRADE
            remote = self.gateway.get_subscription(current.external_subscription_id)
            item_id = remote.primary_item_id
            if not item_id:
                raise GatewayError(
                    message="Gateway subscription has no line items",
                    detail={"externalSubscriptionId": current.external_subscription_id},
                )
            snapshot = self.gateway.update_subscription(
                current.external_subscription_id,
                GatewaySubscriptionUpdate.price_swap(
                    item_id=item_id,
                    new_price_id=target_plan.external_price_id,
                    terms=terms,
                    cancel_at_period_end=False if reactivate else None,
                ),
                idempotency_key=make_idempotency_key(
                    "subscription-plan", current.id, target_plan.key, request_key=idempotency_key
                ),
            )
            subscription = self.ledger.apply_update(
                current.id,
                PlanChange(
                    plan_id=target_plan.id,
                    status=map_gateway_status(snapshot.status),
                    cancel_at_period_end=False if reactivate else None,
                ),
            )
            subscription = self._heal_status(subscription, snapshot)

        metadata: Dict[str, str] = {
            "from_plan": current_plan.key,
            "to_plan": target_plan.key,
            "direction": terms.direction.value,
            "proration_policy": terms.proration_policy.value,
        }
        if reactivate:
            metadata["reactivated"] = "true"
        logger.info(
            "Subscription %s moved from %s to %s (%s)",
            subscription.id,
            current_plan.key,
            target_plan.key,
            terms.direction.value,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_PLAN_CHANGED,
                tenant_id=tenant_id,
                subscription_id=subscription.id,
                metadata=metadata,
            )
        )
        return subscription


__all__ = [
    "BillingEventLogger",
    "BillingService",
    "SubscriptionLedger",
    "account_lock_key",
    "make_idempotency_key",
    "subscription_lock_key",
]
