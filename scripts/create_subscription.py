"""Create one Stripe subscription (or subscription schedule) for one customer.

Back-office flow only: the payment method must already be attached to the
customer, no hosted checkout is involved. Every input is checked before
anything is created; the first failed check stops the script with exit
code 1. Without --confirm the payload and idempotency key are printed and
nothing is created.

An email that matches no customer creates one on --confirm, but that new
customer cannot have the payment method attached yet, so the run then stops
at the payment method check. Attach the payment method to the new customer
and re-run with --customer=<id>.

Usage example:
    python scripts/create_subscription.py \
        --customer-email=jane@example.com \
        --price=price_ABC \
        --payment-method=pm_123 \
        --trial-days=14 \
        --confirm
"""
from __future__ import annotations

import argparse
import json
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from billing_client import build_client
from billing_common import (
    add_common_flags,
    apply_config,
    load_config,
    require_secret_key,
    warn_unknown,
)


MAX_TRIAL_DAYS = 730
TAX_MODES = ("off", "exclusive", "inclusive", "auto")
SCHEDULE_BEHAVIORS = ("release", "cancel")
DUPLICATE_STATUSES = ("active", "trialing")
CHECKOUT_MODE = "backoffice"
SCHEDULE_ITERATIONS = 3
DAILY_PRICE_AMOUNT = 500
DAILY_PRICE_CURRENCY = "eur"
DEFAULTS: Dict[str, Any] = {
    "config": None,
    "confirm": False,
    "debug": False,
    "price": None,
    "customer": None,
    "customer_email": None,
    "payment_method": None,
    "trial_days": None,
    "trial_end": None,
    "tax_mode": "off",
    "schedule": False,
    "schedule_behavior": "cancel",
}


class CreationError(Exception):
    """A failed check; the run stops without creating anything."""


@dataclass
class Trial:
    days: Optional[int] = None
    end: Optional[int] = None


def require_customer_input(customer_id: Optional[str], email: Optional[str]) -> None:
    if not customer_id and not email:
        raise CreationError("A customer ID or email is required")


def resolve_customer(client, customer_id: Optional[str], email: Optional[str], confirm: bool):
    """Return one customer record, whichever way it was found.

    Lookup by id wins; otherwise the first customer matching the email is used
    and, failing that, a customer is created for the email. Creation only
    happens with --confirm, a dry-run returns None instead.
    """
    try:
        if customer_id:
            return client.retrieve_customer(customer_id)
        matches = client.search_customers_by_email(email).get("data") or []
        if matches:
            return matches[0]
        if not confirm:
            print(f"No customer found for {email}; one would be created with --confirm")
            return None
        customer = client.create_customer(email)
    except Exception as err:
        raise CreationError("Error retrieving customer") from err
    sys.stderr.write(
        f"Warning: created customer {customer.get('id')} for {email}. A new customer has no "
        "payment method attached, so the payment method check below will fail. Attach the "
        f"payment method and re-run with --customer={customer.get('id')}.\n"
    )
    return customer


def validate_price(client, price_id: Optional[str]):
    if not price_id:
        raise CreationError("A price id is required (--price)")
    try:
        price = client.retrieve_price(price_id)
    except Exception as err:
        raise CreationError("Error retrieving price") from err
    if not price:
        raise CreationError("Price not found")
    if price.get("active") is False:
        raise CreationError("Price is not active")
    if price.get("type") != "recurring":
        raise CreationError("Price is not a recurring price")
    return price


def parse_int(value: Optional[str], flag: str) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise CreationError(f"{flag} must be an integer") from None


def validate_trial(trial_days: Optional[str], trial_end: Optional[str], now: int) -> Trial:
    """Trial length in days and explicit trial end are mutually exclusive."""
    days = parse_int(trial_days, "--trial-days")
    end = parse_int(trial_end, "--trial-end")
    if days is not None and end is not None:
        raise CreationError("Trial days and trial end cannot be used together")
    if (days is not None and days < 0) or (end is not None and end < now):
        raise CreationError("Trial days cannot be negative or trial end cannot be in the past")
    if days is not None and days > MAX_TRIAL_DAYS:
        raise CreationError(f"Trial days cannot be more than {MAX_TRIAL_DAYS}")
    return Trial(days=days, end=end)


def validate_choice(value: str, choices: tuple, flag: str) -> str:
    if value not in choices:
        raise CreationError(f"{flag} must be one of: {', '.join(choices)}")
    return value


def require_payment_method(payment_method_id: Optional[str]) -> str:
    if not payment_method_id:
        raise CreationError(f"A payment method is required for {CHECKOUT_MODE} mode")
    return payment_method_id


def verify_payment_method(client, payment_method_id: str, customer_id: Optional[str]) -> None:
    """The payment method must already be attached to the customer."""
    if not customer_id:
        raise CreationError("Payment method cannot be attached to a customer that does not exist yet")
    try:
        payment_method = client.retrieve_payment_method(payment_method_id)
    except Exception as err:
        raise CreationError("Error retrieving payment method") from err
    owner = payment_method.get("customer")
    if not isinstance(owner, str) and owner:
        owner = owner.get("id")
    if owner != customer_id:
        raise CreationError("Payment method is not attached to the customer")


def reject_duplicate(client, customer_id: str, price_id: str) -> None:
    """Fail when the customer already pays for this price."""
    try:
        for status in DUPLICATE_STATUSES:
            for sub in client.list_customer_subscriptions(customer_id, status):
                for item in (sub.get("items") or {}).get("data") or []:
                    if (item.get("price") or {}).get("id") == price_id:
                        raise CreationError(
                            f"Customer already subscribed to this price ({sub.get('id')})"
                        )
    except CreationError:
        raise
    except Exception as err:
        raise CreationError("Error listing existing subscriptions") from err


def build_idempotency_key(customer_id: str, price_id: str, payment_method_id: str) -> str:
    """Same inputs, same key: a retried run cannot create a second subscription."""
    return f"{customer_id}-{price_id}-{payment_method_id}"


def build_metadata(strategy: str, tax_mode: str) -> Dict[str, str]:
    return {"mode": CHECKOUT_MODE, "strategy": strategy, "tax_mode": tax_mode}


def build_subscription_payload(
    customer_id: Optional[str],
    price_id: str,
    payment_method_id: str,
    trial: Trial,
    tax_mode: str,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "customer": customer_id,
        "items": [{"price": price_id, "quantity": 1}],
        "collection_method": "charge_automatically",
        "default_payment_method": payment_method_id,
        "metadata": build_metadata("subscription", tax_mode),
        # Needed to report the payment intent status of incomplete subscriptions
        "expand": ["latest_invoice.payment_intent"],
    }
    if trial.days is not None:
        payload["trial_period_days"] = trial.days
    if trial.end is not None:
        payload["trial_end"] = trial.end
    if tax_mode == "auto":
        payload["automatic_tax"] = {"enabled": True}
    return payload


def build_daily_price_payload(price_id: str) -> Dict[str, Any]:
    """Short-interval price driving the first schedule phase."""
    return {
        "unit_amount": DAILY_PRICE_AMOUNT,
        "currency": DAILY_PRICE_CURRENCY,
        "recurring": {"interval": "day", "interval_count": 1},
        # Deterministic name so a retried creation is accepted under the same idempotency key
        "product_data": {"name": f"Daily subscription ({price_id})"},
    }


def build_schedule_payload(
    customer_id: Optional[str],
    daily_price_id: str,
    payment_method_id: str,
    end_behavior: str,
    tax_mode: str,
) -> Dict[str, Any]:
    default_settings: Dict[str, Any] = {
        "collection_method": "charge_automatically",
        "default_payment_method": payment_method_id,
    }
    if tax_mode == "auto":
        default_settings["automatic_tax"] = {"enabled": True}
    return {
        "customer": customer_id,
        "start_date": "now",
        "end_behavior": end_behavior,
        "default_settings": default_settings,
        "metadata": build_metadata("subscription_schedule", tax_mode),
        "phases": [
            {
                "items": [{"price": daily_price_id, "quantity": 1}],
                "iterations": SCHEDULE_ITERATIONS,
            }
        ],
    }


def dump(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, default=str)


def payment_intent_status(subscription) -> str:
    invoice = subscription.get("latest_invoice")
    if not invoice or isinstance(invoice, str):
        return "unknown"
    intent = invoice.get("payment_intent")
    if not intent or isinstance(intent, str):
        return "unknown"
    return intent.get("status") or "unknown"


def print_schedule(result) -> None:
    print(f"Schedule id: {result.get('id')}")
    print(f"Schedule status: {result.get('status')}")
    print(f"Schedule created at: {result.get('created')}")
    print(f"Schedule end date: {result.get('end_date')}")
    print(f"Schedule end behavior: {result.get('end_behavior')}")
    if result.get("subscription"):
        print(f"Subscription id: {result.get('subscription')}")


def print_subscription(result) -> None:
    print(f"Subscription id: {result.get('id')}")
    print(f"Subscription status: {result.get('status')}")
    print(f"Subscription created at: {result.get('created')}")
    print(f"Subscription current period start: {result.get('current_period_start')}")
    print(f"Subscription current period end: {result.get('current_period_end')}")
    print(f"Subscription trial start: {result.get('trial_start')}")
    print(f"Subscription trial end: {result.get('trial_end')}")
    if result.get("status") == "incomplete":
        print(
            "Subscription is incomplete, waiting for payment "
            f"(payment intent status: {payment_intent_status(result)})"
        )


def create(args: argparse.Namespace, client, now: int) -> None:
    """Run every check in order, then print or create. Raises CreationError."""
    require_customer_input(args.customer, args.customer_email)
    customer = resolve_customer(client, args.customer, args.customer_email, args.confirm)
    customer_id = customer.get("id") if customer else None

    validate_price(client, args.price)
    trial = validate_trial(args.trial_days, args.trial_end, now)
    tax_mode = validate_choice(args.tax_mode or "off", TAX_MODES, "--tax-mode")
    end_behavior = validate_choice(
        args.schedule_behavior or "cancel", SCHEDULE_BEHAVIORS, "--schedule-behavior"
    )

    payment_method_id = require_payment_method(args.payment_method)
    verify_payment_method(client, payment_method_id, customer_id)
    reject_duplicate(client, customer_id, args.price)

    idempotency_key = build_idempotency_key(customer_id, args.price, payment_method_id)
    noun = "subscription schedule" if args.schedule else "subscription"

    if not args.confirm:
        if args.schedule:
            print("Daily price payload:", dump(build_daily_price_payload(args.price)))
            payload = build_schedule_payload(
                customer_id, "<daily price created on --confirm>", payment_method_id,
                end_behavior, tax_mode,
            )
            print("Schedule payload:", dump(payload))
            print("Idempotency key:", f"schedule-{idempotency_key}")
        else:
            payload = build_subscription_payload(
                customer_id, args.price, payment_method_id, trial, tax_mode
            )
            print("Payload:", dump(payload))
            print("Idempotency key:", idempotency_key)
        print("(dry-run: nothing created, re-run with --confirm to apply)")
        return

    try:
        if args.schedule:
            daily_price = client.create_price(
                build_daily_price_payload(args.price),
                idempotency_key=f"daily-price-{idempotency_key}",
            )
            payload = build_schedule_payload(
                customer_id, daily_price.get("id"), payment_method_id, end_behavior, tax_mode
            )
            result = client.create_subscription_schedule(payload, f"schedule-{idempotency_key}")
        else:
            payload = build_subscription_payload(
                customer_id, args.price, payment_method_id, trial, tax_mode
            )
            result = client.create_subscription(payload, idempotency_key)
    except Exception as err:
        raise CreationError(f"Error creating {noun}") from err

    print(f"{noun.capitalize()} created")
    if args.schedule:
        print_schedule(result)
    else:
        print_subscription(result)


def run(args: argparse.Namespace, client_factory=build_client, now: Optional[int] = None) -> int:
    try:
        api_key = require_secret_key()
    except ValueError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1

    client = client_factory(api_key)
    try:
        create(args, client, int(time.time()) if now is None else now)
    except CreationError as exc:
        if args.debug and exc.__cause__ is not None:
            sys.stderr.write(f"{exc}: {exc.__cause__!r}\n")
        else:
            sys.stderr.write(f"{exc}\n")
        return 1
    return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create one Stripe subscription or subscription schedule (dry-run by default)."
    )
    add_common_flags(parser)
    parser.add_argument("--price", help="Recurring price id to subscribe to.")
    parser.add_argument("--customer", help="Existing customer id.")
    parser.add_argument(
        "--customer-email",
        help="Customer email; searched first, created when no customer matches.",
    )
    parser.add_argument(
        "--payment-method",
        help="Payment method id already attached to the customer.",
    )
    parser.add_argument("--trial-days", help="Free trial length in days (max 730).")
    parser.add_argument("--trial-end", help="Trial end as a Unix timestamp (seconds).")
    parser.add_argument(
        "--tax-mode",
        default="off",
        help="off | exclusive | inclusive | auto (default: off).",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Create a subscription schedule instead of a subscription.",
    )
    parser.add_argument(
        "--schedule-behavior",
        default="cancel",
        help="What happens when the schedule ends: release | cancel (default: cancel).",
    )
    args, unknown = parser.parse_known_args(argv)
    warn_unknown(unknown)
    return args


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    try:
        cfg = load_config(args.config) if args.config else None
    except (OSError, ValueError) as exc:
        sys.stderr.write(f"Could not load config: {exc}\n")
        sys.exit(1)
    args = apply_config(args, cfg, DEFAULTS)
    sys.exit(run(args))


if __name__ == "__main__":
    main()
