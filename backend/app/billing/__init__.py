"""Billing domain package: subscription ledger, change orchestration and webhook reconciliation."""

from .catalog import PlanCatalog, StaticPlanCatalog, build_default_plans
from .downgrade import DowngradeGate, UsageLimitDowngradeGate, UsageReader
from .exceptions import (
    BillingBadRequestError,
    BillingError,
    BillingNotFoundError,
    GatewayError,
    GatewayTimeoutError,
)
from .gateway import PaymentGateway, StripePaymentGateway
from .models import (
    BillingAccount,
    BillingAuditEvent,
    BillingAuditEventType,
    DowngradeVerdict,
    Plan,
    PlanChangeRequest,
    ReconciliationResult,
    ReconciliationWarning,
    StatusOverrideRequest,
    Subscription,
    SubscriptionStatus,
    map_gateway_status,
)
from .reconciler import WebhookReconciler
from .service import BillingEventLogger, BillingService, SubscriptionLedger

__all__ = [
    "BillingAccount",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingBadRequestError",
    "BillingError",
    "BillingEventLogger",
    "BillingNotFoundError",
    "BillingService",
    "DowngradeGate",
    "DowngradeVerdict",
    "GatewayError",
    "GatewayTimeoutError",
    "PaymentGateway",
    "Plan",
    "PlanCatalog",
    "PlanChangeRequest",
    "ReconciliationResult",
    "ReconciliationWarning",
    "StaticPlanCatalog",
    "StatusOverrideRequest",
    "StripePaymentGateway",
    "Subscription",
    "SubscriptionLedger",
    "SubscriptionStatus",
    "UsageLimitDowngradeGate",
    "UsageReader",
    "WebhookReconciler",
    "build_default_plans",
    "map_gateway_status",
]
