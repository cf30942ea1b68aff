"""Thin wrapper around the Stripe SDK used by the operator scripts.

Only the calls the scripts need are exposed. Every request carries the API key
and pinned API version explicitly so nothing depends on module-level state in
the ``stripe`` package. Business rules (proration, tax, invoicing) stay on
Stripe's side.

Every record handed back is a plain ``dict``: recent SDK releases no longer
make ``StripeObject`` a dict subclass, and the scripts read records as
mappings.
"""
from __future__ import annotations

from typing import Any, Dict, Iterator, Optional

import stripe


API_VERSION = "2024-06-20"
PAGE_SIZE = 100


def to_plain(value: Any) -> Any:
    """Convert Stripe objects (and anything nested in them) into dicts and lists."""
    if isinstance(value, stripe.StripeObject):
        value = value.to_dict()
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_plain(item) for item in value]
    return value


class StripeBilling:
    """Request helper bound to one secret key."""

    def __init__(self, api_key: str, api_version: str = API_VERSION):
        self._opts = {"api_key": api_key, "stripe_version": api_version}

    def _paged(self, listing) -> Iterator[Dict[str, Any]]:
        for record in listing.auto_paging_iter():
            yield to_plain(record)

    def list_subscriptions(
        self, status: str, created: Optional[Dict[str, int]] = None
    ) -> Iterator[Dict[str, Any]]:
        """Lazily yield every subscription with ``status``; one request per page."""
        params: Dict[str, Any] = {
            "status": status,
            "limit": PAGE_SIZE,
            # Prices are needed to match on price id and product
            "expand": ["data.items.data.price"],
        }
        if created:
            params["created"] = created
        return self._paged(stripe.Subscription.list(**self._opts, **params))

    def list_customer_subscriptions(self, customer_id: str, status: str) -> Iterator[Dict[str, Any]]:
        return self._paged(
            stripe.Subscription.list(
                **self._opts, customer=customer_id, status=status, limit=PAGE_SIZE
            )
        )

    def retrieve_product(self, product_id: str) -> Dict[str, Any]:
        return to_plain(stripe.Product.retrieve(product_id, **self._opts))

    def retrieve_price(self, price_id: str) -> Dict[str, Any]:
        return to_plain(stripe.Price.retrieve(price_id, **self._opts))

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return to_plain(stripe.Customer.retrieve(customer_id, **self._opts))

    def search_customers_by_email(self, email: str) -> Dict[str, Any]:
        return to_plain(stripe.Customer.search(query=f"email:'{email}'", **self._opts))

    def create_customer(self, email: str) -> Dict[str, Any]:
        return to_plain(stripe.Customer.create(email=email, **self._opts))

    def retrieve_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        return to_plain(stripe.PaymentMethod.retrieve(payment_method_id, **self._opts))

    def create_price(
        self, payload: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        if idempotency_key:
            return to_plain(
                stripe.Price.create(idempotency_key=idempotency_key, **self._opts, **payload)
            )
        return to_plain(stripe.Price.create(**self._opts, **payload))

    def create_subscription(self, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        return to_plain(
            stripe.Subscription.create(idempotency_key=idempotency_key, **self._opts, **payload)
        )

    def create_subscription_schedule(
        self, payload: Dict[str, Any], idempotency_key: str
    ) -> Dict[str, Any]:
        return to_plain(
            stripe.SubscriptionSchedule.create(
                idempotency_key=idempotency_key, **self._opts, **payload
            )
        )

    def update_subscription(self, subscription_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return to_plain(stripe.Subscription.modify(subscription_id, **self._opts, **payload))

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return to_plain(stripe.Subscription.cancel(subscription_id, **self._opts))


def build_client(api_key: str) -> StripeBilling:
    """Create the Stripe client used for the whole run."""
    return StripeBilling(api_key)
