"""Bulk lifecycle changes for Stripe subscriptions.

Walks every active and trialing subscription (optionally narrowed by product
name, price id and creation day) and cancels, pauses or resumes each match.
Nothing is changed unless --confirm is given; without it the script prints
what it would do. One failing subscription never stops the run: the error is
printed and the next subscription is processed.

Usage example:
    python scripts/bulk_subscriptions.py cancel-period-end --confirm
    python scripts/bulk_subscriptions.py cancel-now --product="Gold plan" --confirm
    python scripts/bulk_subscriptions.py pause --price=price_ABC
    python scripts/bulk_subscriptions.py resume --created-on=2024-01-10 --until=2024-01-31
"""
from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from tqdm import tqdm

from billing_client import build_client
from billing_common import (
    add_common_flags,
    apply_config,
    build_log_path,
    describe_error,
    emit,
    ensure_parent_dir,
    load_config,
    log_record,
    now_iso,
    require_secret_key,
    warn_unknown,
)
from date_range import build_created_filter


STATUSES = ("active", "trialing")
DEFAULTS: Dict[str, Any] = {
    "config": None,
    "mode": None,
    "confirm": False,
    "debug": False,
    "product": None,
    "price": None,
    "created_on": None,
    "until": None,
    "log": None,
    "timestamp_logs": True,
    "max_records": None,
    "progress": True,
}


class Mode(str, Enum):
    CANCEL_PERIOD_END = "cancel-period-end"
    CANCEL_NOW = "cancel-now"
    PAUSE = "pause"
    RESUME = "resume"


@dataclass
class ActionIntent:
    """What to do with one subscription."""
    kind: Mode
    description: str
    payload: Optional[Dict[str, Any]] = None


@dataclass
class MutationResult:
    """Structured result for one mutation attempt."""
    status: str
    http_status: Optional[int] = None
    message: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class RunConfig:
    """Everything the engine needs for one run; nothing is read from globals."""
    client: Any
    mode: Mode
    confirm: bool = False
    debug: bool = False
    product: Optional[str] = None
    price: Optional[str] = None
    created: Optional[Dict[str, int]] = None
    max_records: Optional[int] = None
    progress: bool = False


@dataclass
class ResolvedItems:
    price_ids: list[str] = field(default_factory=list)
    product_ids: list[str] = field(default_factory=list)
    product_names: list[str] = field(default_factory=list)


class ProductNameCache:
    """Product id -> display name, fetched at most once per id per run."""

    def __init__(self, client, debug: bool = False):
        self._client = client
        self._debug = debug
        self._names: Dict[str, str] = {}

    def name_for(self, product_id: str) -> str:
        if product_id not in self._names:
            try:
                product = self._client.retrieve_product(product_id)
                self._names[product_id] = product.get("name") or ""
            except Exception as err:  # A missing name only weakens the product filter
                if self._debug:
                    emit(f"   Could not retrieve product {product_id}: {describe_error(err)[1]}")
                self._names[product_id] = ""
        return self._names[product_id]


def resolve_items(sub, products: ProductNameCache) -> ResolvedItems:
    """Collect price ids and product names for every line item of a subscription."""
    resolved = ResolvedItems()
    for item in (sub.get("items") or {}).get("data") or []:
        price = item.get("price") or {}
        if price.get("id"):
            resolved.price_ids.append(price["id"])
        product = price.get("product")
        if isinstance(product, str):
            resolved.product_ids.append(product)
            name = products.name_for(product)
        elif product:
            if product.get("id"):
                resolved.product_ids.append(product["id"])
            name = product.get("name") or ""
        else:
            name = price.get("nickname") or ""
        if name:
            resolved.product_names.append(name)
    return resolved


def matches_filters(
    resolved: ResolvedItems, product: Optional[str], price: Optional[str]
) -> bool:
    """Product names compare case-insensitively, price ids exactly."""
    if product:
        wanted = product.lower()
        if not any(name.lower() == wanted for name in resolved.product_names):
            return False
    if price and price not in resolved.price_ids:
        return False
    return True


def intent_cancel_period_end(sub) -> Optional[ActionIntent]:
    if sub.get("cancel_at_period_end"):
        return None
    return ActionIntent(
        Mode.CANCEL_PERIOD_END, "Cancel at period end", {"cancel_at_period_end": True}
    )


def intent_cancel_now(sub) -> Optional[ActionIntent]:
    return ActionIntent(Mode.CANCEL_NOW, "Cancel immediately")


def intent_pause(sub) -> Optional[ActionIntent]:
    if sub.get("pause_collection"):
        return None
    # keep_as_draft: invoices created while paused stay in draft, nothing is collected
    return ActionIntent(
        Mode.PAUSE,
        "Pause (pause_collection=keep_as_draft)",
        {"pause_collection": {"behavior": "keep_as_draft"}},
    )


def intent_resume(sub) -> Optional[ActionIntent]:
    if not sub.get("pause_collection") and not sub.get("cancel_at_period_end"):
        return None
    return ActionIntent(
        Mode.RESUME,
        "Resume (clear pause_collection and cancel_at_period_end)",
        # An empty string unsets pause_collection
        {"pause_collection": "", "cancel_at_period_end": False},
    )


HANDLERS: Dict[Mode, Callable[[Any], Optional[ActionIntent]]] = {
    Mode.CANCEL_PERIOD_END: intent_cancel_period_end,
    Mode.CANCEL_NOW: intent_cancel_now,
    Mode.PAUSE: intent_pause,
    Mode.RESUME: intent_resume,
}


def apply_intent(client, sub_id: str, intent: ActionIntent) -> MutationResult:
    """Issue the remote change for one subscription. Never raises."""
    try:
        if intent.kind is Mode.CANCEL_NOW:
            client.cancel_subscription(sub_id)
        else:
            client.update_subscription(sub_id, intent.payload)
        return MutationResult(status="success")
    except Exception as err:  # Catch-all to avoid halting the batch
        http_status, message, error_type = describe_error(err)
        return MutationResult(
            status="failure",
            http_status=http_status,
            message=message,
            error_type=error_type,
        )


def format_created(sub) -> str:
    return datetime.fromtimestamp(sub.get("created") or 0, tz=timezone.utc).isoformat()


def iter_subscriptions(config: RunConfig) -> Iterable[Any]:
    """Active first, then trialing; each list is consumed lazily, page by page."""
    for status in STATUSES:
        yield from config.client.list_subscriptions(status, config.created)


def run_bulk(config: RunConfig, log_fh=None) -> Dict[str, int]:
    """Select, decide and (when confirmed) mutate every matching subscription."""
    handler = HANDLERS[config.mode]
    products = ProductNameCache(config.client, debug=config.debug)
    totals = {
        "matched": 0,
        "mutated": 0,
        "skipped": 0,
        "failed": 0,
        "dry_run": 0,
    }

    progress = tqdm(unit="sub", desc=config.mode.value, disable=not config.progress)
    try:
        for sub in iter_subscriptions(config):
            progress.update(1)
            sub_id = sub["id"]

            resolved = resolve_items(sub, products)
            if config.debug:
                emit(f"{sub_id} priceIds={resolved.price_ids} productIds={resolved.product_ids} "
                     f"productNames={resolved.product_names}")
            if not matches_filters(resolved, config.product, config.price):
                continue

            if config.debug:
                emit(f"-> Target: {sub_id} | status={sub.get('status')} | created={format_created(sub)}")

            intent = handler(sub)
            record = {
                "timestamp": now_iso(),
                "subscriptionId": sub_id,
                "subscriptionStatus": sub.get("status"),
                "mode": config.mode.value,
                "confirmed": config.confirm,
            }
            if intent is None:
                totals["skipped"] += 1
                record["status"] = "skipped"
                if log_fh:
                    log_record(log_fh, record)
                continue

            totals["matched"] += 1
            record["payload"] = intent.payload
            if not config.confirm:
                result = MutationResult(status="dry_run")
                totals["dry_run"] += 1
                suffix = f" {intent.payload}" if intent.payload else ""
                emit(f"[DRY-RUN] {intent.description} -> {sub_id}{suffix}")
            else:
                result = apply_intent(config.client, sub_id, intent)
                if result.status == "success":
                    totals["mutated"] += 1
                    emit(f"{intent.description} -> {sub_id}")
                else:
                    totals["failed"] += 1
                    emit(f"{sub_id}: {result.message}", err=True)

            record.update(
                {
                    "status": result.status,
                    "httpStatus": result.http_status,
                    "errorType": result.error_type,
                    "message": result.message,
                }
            )
            if log_fh:
                log_record(log_fh, record)

            # Stop before the next record (or page) is fetched
            if config.max_records and totals["matched"] >= config.max_records:
                break
    finally:
        progress.close()
    return totals


def print_summary(mode: Mode, totals: Dict[str, int], confirm: bool, log_path: str) -> None:
    print(f"---- {mode.value} summary ----")
    for key, value in totals.items():
        print(f"{key}: {value}")
    print(f"log: {log_path}")
    if not confirm:
        print("(dry-run: no changes made, re-run with --confirm to apply)")


def parse_mode(value: Optional[str]) -> Mode:
    try:
        return Mode(value)
    except ValueError:
        modes = " | ".join(m.value for m in Mode)
        raise ValueError(f"Invalid mode.\nModes: {modes}") from None


def parse_max_records(value) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValueError("--max-records must be a positive integer") from None
    if limit <= 0:
        raise ValueError("--max-records must be a positive integer")
    return limit


def run(args: argparse.Namespace, client_factory=build_client) -> int:
    """Main orchestration: validate inputs, connect, iterate, act, log, and summarize."""
    try:
        mode = parse_mode(args.mode)
        created = build_created_filter(args.created_on, args.until)
        max_records = parse_max_records(args.max_records)
        api_key = require_secret_key()
    except ValueError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1

    config = RunConfig(
        client=client_factory(api_key),
        mode=mode,
        confirm=args.confirm,
        debug=args.debug,
        product=args.product,
        price=args.price,
        created=created,
        max_records=max_records,
        progress=args.progress,
    )

    if config.debug:
        print("Debug enabled")
        print(f"   mode = {mode.value}")
        print(f"   confirm = {config.confirm}")
        print(f"   productFilter = {config.product or '(none)'}")
        print(f"   priceFilter = {config.price or '(none)'}")
        print(f"   createdFilter = {config.created or '(none)'}")

    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") if args.timestamp_logs else None
    log_path = build_log_path(mode.value, args.log, args.timestamp_logs, stamp)
    ensure_parent_dir(log_path)
    try:
        with open(log_path, "w") as log_fh:
            totals = run_bulk(config, log_fh)
    except Exception as exc:
        _, message, _ = describe_error(exc)
        sys.stderr.write(f"Error: {message}\n")
        return 1

    print_summary(mode, totals, config.confirm, log_path)
    return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Cancel, pause or resume Stripe subscriptions in bulk (dry-run by default)."
    )
    parser.add_argument(
        "mode",
        nargs="?",
        help="cancel-period-end | cancel-now | pause | resume",
    )
    add_common_flags(parser)
    parser.add_argument(
        "--product",
        help="Only subscriptions with a product of this name (case-insensitive).",
    )
    parser.add_argument(
        "--price",
        help="Only subscriptions with an item on this price id.",
    )
    parser.add_argument(
        "--created-on",
        help="Only subscriptions created on this UTC day (YYYY-MM-DD).",
    )
    parser.add_argument(
        "--until",
        help="Only subscriptions created up to and including this UTC day (YYYY-MM-DD).",
    )
    parser.add_argument(
        "--log",
        help="Output JSONL audit log path (default is timestamped by mode).",
    )
    parser.add_argument(
        "--timestamp-logs",
        dest="timestamp_logs",
        action="store_true",
        default=True,
        help="Use timestamped log filenames by default (default: on).",
    )
    parser.add_argument(
        "--no-timestamp-logs",
        dest="timestamp_logs",
        action="store_false",
        help="Disable timestamped log filenames.",
    )
    parser.add_argument(
        "--max-records",
        help="Act on at most N matching subscriptions (useful for test runs).",
    )
    parser.add_argument(
        "--progress",
        dest="progress",
        action="store_true",
        default=True,
        help="Show a progress bar (default: on).",
    )
    parser.add_argument(
        "--no-progress",
        dest="progress",
        action="store_false",
        help="Hide the progress bar.",
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
