"""Shared plumbing for the Stripe subscription operator scripts.

Config file merging, credential loading and JSONL audit logging live here so
the bulk and creation scripts behave the same way.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv  # Reads STRIPE_SECRET_KEY from a local .env
from tqdm import tqdm


SECRET_KEY_ENV = "STRIPE_SECRET_KEY"


def add_common_flags(parser: argparse.ArgumentParser) -> None:
    """Switches shared by every script that talks to Stripe."""
    parser.add_argument(
        "--config",
        help="Path to JSON config file supplying defaults for any CLI flags.",
    )
    parser.add_argument(
        "--confirm",
        action="store_true",
        help="Actually perform the changes (default is a dry-run).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print resolved filters, per-record details and full error objects.",
    )


def warn_unknown(unknown: list[str]) -> None:
    if unknown:
        sys.stderr.write(f"Ignoring unrecognized arguments: {' '.join(unknown)}\n")


def load_config(path: str) -> Dict[str, Any]:
    """Load JSON configuration from file path."""
    with open(path) as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError("Config file must contain a JSON object of key/value pairs")
    return data


def apply_config(
    args: argparse.Namespace,
    cfg: Optional[Dict[str, Any]],
    defaults: Dict[str, Any],
) -> argparse.Namespace:
    """Merge config values into argparse Namespace; CLI flags win."""
    if not cfg:
        return args
    for key, value in cfg.items():
        key = key.replace("-", "_")
        if value is None:
            continue
        if hasattr(args, key):
            current = getattr(args, key)
            # Only override if the current value is still at its default (i.e., not set via CLI).
            if current != defaults.get(key, None):
                continue
            setattr(args, key, value)
    return args


def require_secret_key() -> str:
    """Return the Stripe secret key from the environment or a .env file."""
    load_dotenv()
    key = os.getenv(SECRET_KEY_ENV)
    if not key:
        raise ValueError(f"{SECRET_KEY_ENV} is missing (set it in .env or the environment).")
    return key


def emit(message: str, err: bool = False) -> None:
    """Print a line without tearing an active progress bar."""
    tqdm.write(message, file=sys.stderr if err else sys.stdout)


def describe_error(err: Exception) -> tuple[Optional[int], str, str]:
    """Extract HTTP status, message and error type from a Stripe error, with safe fallbacks."""
    status = getattr(err, "http_status", None)
    message = getattr(err, "user_message", None) or str(err) or repr(err)
    return status, message, type(err).__name__


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_record(fh, record: Dict[str, Any]) -> None:
    """Append a single JSON record to the audit log."""
    fh.write(json.dumps(record, ensure_ascii=True, default=str))
    fh.write("\n")
    fh.flush()


def build_log_path(
    mode: str, log_path: Optional[str], timestamp_logs: bool, stamp: Optional[str]
) -> str:
    """Default log path with optional timestamp."""
    if log_path:
        return log_path
    base = f"{mode}_log"
    if timestamp_logs:
        if not stamp:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        return os.path.join("logs", stamp, f"{base}_{stamp}.jsonl")
    return os.path.join("logs", f"{base}.jsonl")


def ensure_parent_dir(path: str) -> None:
    """Create parent directories if needed."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
