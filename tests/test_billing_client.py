import pytest
import stripe

from billing_client import StripeBilling, to_plain
from bulk_subscriptions import Mode, RunConfig, run_bulk
from create_subscription import (
    CreationError,
    resolve_customer,
    validate_price,
    verify_payment_method,
)


KEY = "sk_test_dummy"


class FakeListing:
    def __init__(self, records):
        self._records = records

    def auto_paging_iter(self):
        return iter(self._records)


def stripe_sub(sub_id, product="prod_gold", **fields):
    values = {
        "id": sub_id,
        "object": "subscription",
        "status": "active",
        "created": 1704844800,
        "cancel_at_period_end": False,
        "pause_collection": None,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": f"si_{sub_id}",
                    "object": "subscription_item",
                    "price": {"id": "price_gold", "object": "price", "product": product},
                }
            ],
        },
    }
    values.update(fields)
    return stripe.Subscription.construct_from(values, KEY)


@pytest.fixture
def client():
    return StripeBilling(KEY)


def test_to_plain_returns_nested_dicts():
    plain = to_plain(stripe_sub("sub_1"))
    assert type(plain) is dict
    assert type(plain["items"]) is dict
    assert type(plain["items"]["data"][0]["price"]) is dict
    assert plain["items"]["data"][0]["price"]["id"] == "price_gold"


def test_run_bulk_over_sdk_objects(client, monkeypatch):
    active = [
        stripe_sub("sub_1"),
        stripe_sub("sub_paused", pause_collection={"behavior": "void"}),
        stripe_sub("sub_other", product="prod_silver"),
    ]
    listed = []
    modified = []

    def fake_list(**params):
        listed.append(params)
        return FakeListing(active if params["status"] == "active" else [])

    def fake_retrieve(product_id, **opts):
        names = {"prod_gold": "Gold Plan", "prod_silver": "Silver Plan"}
        return stripe.Product.construct_from(
            {"id": product_id, "object": "product", "name": names[product_id]}, KEY
        )

    def fake_modify(sub_id, **params):
        modified.append((sub_id, params))
        return stripe.Subscription.construct_from({"id": sub_id, "object": "subscription"}, KEY)

    monkeypatch.setattr(stripe.Subscription, "list", fake_list)
    monkeypatch.setattr(stripe.Product, "retrieve", fake_retrieve)
    monkeypatch.setattr(stripe.Subscription, "modify", fake_modify)

    config = RunConfig(client=client, mode=Mode.PAUSE, confirm=True, product="gold plan")
    totals = run_bulk(config)

    assert totals["matched"] == 1
    assert totals["mutated"] == 1
    assert totals["skipped"] == 1
    assert totals["failed"] == 0
    assert [sub_id for sub_id, _ in modified] == ["sub_1"]
    assert modified[0][1]["pause_collection"] == {"behavior": "keep_as_draft"}
    assert modified[0][1]["api_key"] == KEY
    assert [params["status"] for params in listed] == ["active", "trialing"]


def test_resolve_customer_by_id_and_email(client, monkeypatch):
    customer = {"id": "cus_1", "object": "customer", "email": "jane@example.com"}
    monkeypatch.setattr(
        stripe.Customer,
        "retrieve",
        lambda customer_id, **opts: stripe.Customer.construct_from(customer, KEY),
    )
    monkeypatch.setattr(
        stripe.Customer,
        "search",
        lambda **params: stripe.SearchResultObject.construct_from(
            {"object": "search_result", "data": [customer], "has_more": False}, KEY
        ),
    )

    assert resolve_customer(client, "cus_1", None, confirm=False)["id"] == "cus_1"
    found = resolve_customer(client, None, "jane@example.com", confirm=False)
    assert found["id"] == "cus_1"
    assert found["email"] == "jane@example.com"


def test_validate_price_reads_sdk_price(client, monkeypatch):
    prices = {
        "price_monthly": {"id": "price_monthly", "object": "price", "active": True,
                          "type": "recurring"},
        "price_once": {"id": "price_once", "object": "price", "active": True,
                       "type": "one_time"},
    }
    monkeypatch.setattr(
        stripe.Price,
        "retrieve",
        lambda price_id, **opts: stripe.Price.construct_from(prices[price_id], KEY),
    )

    assert validate_price(client, "price_monthly")["id"] == "price_monthly"
    with pytest.raises(CreationError, match="not a recurring price"):
        validate_price(client, "price_once")


def test_verify_payment_method_reads_sdk_owner(client, monkeypatch):
    methods = {
        "pm_id": {"id": "pm_id", "object": "payment_method", "customer": "cus_1"},
        "pm_expanded": {"id": "pm_expanded", "object": "payment_method",
                        "customer": {"id": "cus_1", "object": "customer"}},
        "pm_other": {"id": "pm_other", "object": "payment_method", "customer": "cus_2"},
    }
    monkeypatch.setattr(
        stripe.PaymentMethod,
        "retrieve",
        lambda pm_id, **opts: stripe.PaymentMethod.construct_from(methods[pm_id], KEY),
    )

    verify_payment_method(client, "pm_id", "cus_1")
    verify_payment_method(client, "pm_expanded", "cus_1")
    with pytest.raises(CreationError, match="not attached"):
        verify_payment_method(client, "pm_other", "cus_1")
