"""Payment gateway adapter backed by the Stripe SDK."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol

import stripe

from .exceptions import GatewayError, GatewayTimeoutError
from .models import GatewayCustomer, GatewaySubscription, GatewaySubscriptionUpdate

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """Narrow interface over the external payment gateway."""

    def create_or_get_customer(
        self,
        tenant_id: str,
        email: Optional[str],
        name: Optional[str],
        *,
        idempotency_key: str,
    ) -> GatewayCustomer:
        ...

    def create_subscription(
        self,
        external_customer_id: str,
        external_price_id: str,
        payment_method_ref: Optional[str],
        *,
        idempotency_key: str,
    ) -> GatewaySubscription:
        ...

    def get_subscription(self, external_subscription_id: str) -> GatewaySubscription:
        ...

    def update_subscription(
        self,
        external_subscription_id: str,
        update: GatewaySubscriptionUpdate,
        *,
        idempotency_key: str,
    ) -> GatewaySubscription:
        ...

    def cancel_subscription(
        self,
        external_subscription_id: str,
        *,
        at_period_end: bool,
        idempotency_key: str,
    ) -> None:
        ...


def _to_payload(obj: Any) -> Mapping[str, Any]:
    if isinstance(obj, Mapping):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise GatewayError(message=f"Unexpected gateway response type {type(obj).__name__}")


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Translate Stripe SDK failures into :class:`GatewayError` subclasses."""

    try:
        yield
    except stripe.APIConnectionError as exc:
        logger.warning("Stripe %s failed to connect: %s", operation, exc)
        raise GatewayTimeoutError(
            message=f"Payment gateway unreachable during {operation}",
            detail={"operation": operation},
        ) from exc
    except (stripe.RateLimitError, stripe.APIError) as exc:
        logger.warning("Stripe %s failed transiently: %s", operation, exc)
        raise GatewayError(
            message=f"Payment gateway unavailable during {operation}",
            detail={"operation": operation},
            retryable=True,
        ) from exc
    except stripe.StripeError as exc:
        logger.error("Stripe %s rejected: %s", operation, exc)
        raise GatewayError(
            message=getattr(exc, "user_message", None) or str(exc) or "Payment gateway rejected the request",
            detail={"operation": operation, "gatewayCode": getattr(exc, "code", None)},
        ) from exc


class StripePaymentGateway:
    """:class:`PaymentGateway` implementation using the ``stripe`` package.

    Every mutating call forwards the caller's idempotency key so Stripe's own
    network retries (``max_network_retries``) can never duplicate a charge.
    """

    def __init__(self, api_key: str, *, max_network_retries: int = 0) -> None:
        if not api_key:
            raise ValueError("Stripe API key is required")
        self._api_key = api_key
        # Applied globally by the SDK; the key itself is passed per request.
        stripe.max_network_retries = max_network_retries

    def _request_options(self, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self._api_key}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    def create_or_get_customer(
        self,
        tenant_id: str,
        email: Optional[str],
        name: Optional[str],
        *,
        idempotency_key: str,
    ) -> GatewayCustomer:
        with _translate_errors("customer lookup"):
            found = stripe.Customer.search(
                query=f"metadata['tenant_id']:'{tenant_id}'",
                limit=1,
                **self._request_options(),
            )
        existing = list(getattr(found, "data", None) or [])
        if existing:
            customer = _to_payload(existing[0])
            logger.debug("Reusing Stripe customer %s for tenant %s", customer.get("id"), tenant_id)
            return GatewayCustomer(external_customer_id=customer["id"], email=customer.get("email"))

        params: Dict[str, Any] = {"metadata": {"tenant_id": tenant_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        with _translate_errors("customer creation"):
            created = stripe.Customer.create(**params, **self._request_options(idempotency_key))
        customer = _to_payload(created)
        logger.info("Created Stripe customer %s for tenant %s", customer.get("id"), tenant_id)
        return GatewayCustomer(external_customer_id=customer["id"], email=customer.get("email"))

    def create_subscription(
        self,
        external_customer_id: str,
        external_price_id: str,
        payment_method_ref: Optional[str],
        *,
        idempotency_key: str,
    ) -> GatewaySubscription:
        params: Dict[str, Any] = {
            "customer": external_customer_id,
            "items": [{"price": external_price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
        }
        if payment_method_ref:
            params["default_payment_method"] = payment_method_ref
            params["payment_behavior"] = "allow_incomplete"
        with _translate_errors("subscription creation"):
            created = stripe.Subscription.create(**params, **self._request_options(idempotency_key))
        subscription = GatewaySubscription.model_validate(_to_payload(created))
        logger.info(
            "Created Stripe subscription %s for customer %s with status %s",
            subscription.id,
            external_customer_id,
            subscription.status,
        )
        return subscription

    def get_subscription(self, external_subscription_id: str) -> GatewaySubscription:
        with _translate_errors("subscription retrieval"):
            retrieved = stripe.Subscription.retrieve(external_subscription_id, **self._request_options())
        return GatewaySubscription.model_validate(_to_payload(retrieved))

    def update_subscription(
        self,
        external_subscription_id: str,
        update: GatewaySubscriptionUpdate,
        *,
        idempotency_key: str,
    ) -> GatewaySubscription:
        params: Dict[str, Any] = {}
        if update.new_price_id is not None:
            if not update.item_id:
                raise GatewayError(message="A subscription item id is required to change the price")
            params["items"] = [{"id": update.item_id, "price": update.new_price_id}]
        if update.proration_policy is not None:
            params["proration_behavior"] = update.proration_policy.value
        if update.proration_date is not None:
            params["proration_date"] = int(update.proration_date.timestamp())
        if update.payment_behavior is not None:
            params["payment_behavior"] = update.payment_behavior.value
        if update.cancel_at_period_end is not None:
            params["cancel_at_period_end"] = update.cancel_at_period_end
        with _translate_errors("subscription update"):
            modified = stripe.Subscription.modify(
                external_subscription_id, **params, **self._request_options(idempotency_key)
            )
        subscription = GatewaySubscription.model_validate(_to_payload(modified))
        logger.info(
            "Updated Stripe subscription %s (status=%s)", subscription.id, subscription.status
        )
        return subscription

    def cancel_subscription(
        self,
        external_subscription_id: str,
        *,
        at_period_end: bool,
        idempotency_key: str,
    ) -> None:
        options = self._request_options(idempotency_key)
        with _translate_errors("subscription cancellation"):
            if at_period_end:
                stripe.Subscription.modify(external_subscription_id, cancel_at_period_end=True, **options)
            else:
                stripe.Subscription.cancel(external_subscription_id, **options)
        logger.info(
            "Canceled Stripe subscription %s (at_period_end=%s)", external_subscription_id, at_period_end
        )


__all__ = ["PaymentGateway", "StripePaymentGateway"]
