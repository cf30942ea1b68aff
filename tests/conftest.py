from typing import Any, Dict, List, Optional

import pytest

import billing_common


MUTATING_CALLS = {
    "update_subscription",
    "cancel_subscription",
    "create_customer",
    "create_price",
    "create_subscription",
    "create_subscription_schedule",
}


class FakeStripeError(Exception):
    def __init__(self, message: str, http_status: int = 400):
        super().__init__(message)
        self.http_status = http_status
        self.user_message = message


class FakeBilling:
    """In-memory stand-in for billing_client.StripeBilling."""

    def __init__(self):
        self.subscriptions: Dict[str, List[Dict[str, Any]]] = {"active": [], "trialing": []}
        self.customer_subscriptions: Dict[str, List[Dict[str, Any]]] = {}
        self.products: Dict[str, Dict[str, Any]] = {}
        self.prices: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.payment_methods: Dict[str, Dict[str, Any]] = {}
        self.fail_ids: Dict[str, Exception] = {}
        self.created_result: Dict[str, Any] = {"id": "sub_new", "status": "active"}
        self.calls: List[tuple] = []
        self.fetched: List[str] = []

    def mutations(self) -> List[tuple]:
        return [call for call in self.calls if call[0] in MUTATING_CALLS]

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def list_subscriptions(self, status, created=None):
        self.calls.append(("list_subscriptions", status, created))
        for sub in self.subscriptions.get(status, []):
            self.fetched.append(sub["id"])
            yield sub

    def list_customer_subscriptions(self, customer_id, status):
        self.calls.append(("list_customer_subscriptions", customer_id, status))
        return [
            sub
            for sub in self.customer_subscriptions.get(customer_id, [])
            if sub.get("status") == status
        ]

    def _lookup(self, name, table, key):
        self.calls.append((name, key))
        if key not in table:
            raise FakeStripeError(f"No such object: '{key}'", http_status=404)
        return table[key]

    def retrieve_product(self, product_id):
        return self._lookup("retrieve_product", self.products, product_id)

    def retrieve_price(self, price_id):
        return self._lookup("retrieve_price", self.prices, price_id)

    def retrieve_customer(self, customer_id):
        return self._lookup("retrieve_customer", self.customers, customer_id)

    def retrieve_payment_method(self, payment_method_id):
        return self._lookup("retrieve_payment_method", self.payment_methods, payment_method_id)

    def search_customers_by_email(self, email):
        self.calls.append(("search_customers_by_email", email))
        return {"data": [c for c in self.customers.values() if c.get("email") == email]}

    def create_customer(self, email):
        self.calls.append(("create_customer", email))
        customer = {"id": "cus_created", "email": email}
        self.customers[customer["id"]] = customer
        return customer

    def create_price(self, payload, idempotency_key=None):
        self.calls.append(("create_price", payload, idempotency_key))
        return {"id": "price_daily", **payload}

    def create_subscription(self, payload, idempotency_key):
        self.calls.append(("create_subscription", payload, idempotency_key))
        return self.created_result

    def create_subscription_schedule(self, payload, idempotency_key):
        self.calls.append(("create_subscription_schedule", payload, idempotency_key))
        return {
            "id": "sub_sched_1",
            "status": "active",
            "end_behavior": payload["end_behavior"],
            "subscription": "sub_from_schedule",
        }

    def update_subscription(self, subscription_id, payload):
        self.calls.append(("update_subscription", subscription_id, payload))
        if subscription_id in self.fail_ids:
            raise self.fail_ids[subscription_id]
        for subs in self.subscriptions.values():
            for sub in subs:
                if sub["id"] == subscription_id:
                    # Stripe clears a field sent as an empty string
                    sub.update({k: (None if v == "" else v) for k, v in payload.items()})
        return {"id": subscription_id, **payload}

    def cancel_subscription(self, subscription_id):
        self.calls.append(("cancel_subscription", subscription_id))
        if subscription_id in self.fail_ids:
            raise self.fail_ids[subscription_id]
        return {"id": subscription_id, "status": "canceled"}


def make_sub(
    sub_id: str,
    status: str = "active",
    prices: Optional[List[Dict[str, Any]]] = None,
    created: int = 1704844800,
    cancel_at_period_end: bool = False,
    pause_collection: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if prices is None:
        prices = [{"id": "price_gold", "product": {"id": "prod_gold", "name": "Gold Plan"}}]
    return {
        "id": sub_id,
        "status": status,
        "created": created,
        "items": {"data": [{"price": price} for price in prices]},
        "cancel_at_period_end": cancel_at_period_end,
        "pause_collection": pause_collection,
    }


@pytest.fixture
def fake_client():
    return FakeBilling()


@pytest.fixture
def sub_factory():
    return make_sub


@pytest.fixture(autouse=True)
def stripe_env(monkeypatch, tmp_path):
    monkeypatch.setattr(billing_common, "load_dotenv", lambda *args, **kwargs: False)
    monkeypatch.setenv(billing_common.SECRET_KEY_ENV, "sk_test_dummy")
    monkeypatch.chdir(tmp_path)
    yield
