"""Review what bulk_subscriptions.py did, from one or more JSONL audit logs.

Counts are grouped by mode and by run kind (dry-run or confirmed): how many
subscriptions were matched, how many were actually changed, how many were
already in the target state, and how many failed, with failures broken down
by Stripe error type. --failures-csv lists the failed subscriptions so they
can be checked and targeted again.

Usage example:
    python scripts/report_mutation_log.py \
        --log logs/20240110_120000/pause_log_20240110_120000.jsonl \
        --failures-csv outputs/pause_failures.csv
"""
from __future__ import annotations

import argparse
import csv
import json
import sys
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional


FAILURE_FIELDS = [
    "subscriptionId",
    "mode",
    "subscriptionStatus",
    "httpStatus",
    "errorType",
    "message",
    "timestamp",
]


@dataclass
class Tally:
    """Outcome counts for one (mode, run kind) group."""
    matched: int = 0
    mutated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: Counter = field(default_factory=Counter)

    def add(self, record: Dict[str, Any]) -> None:
        status = record.get("status")
        if status == "skipped":
            self.skipped += 1
            return
        # dry_run, success and failure records were all targeted
        self.matched += 1
        if status == "success":
            self.mutated += 1
        elif status == "failure":
            self.failed += 1
            self.errors[record.get("errorType") or "unknown"] += 1


def run_kind(record: Dict[str, Any]) -> str:
    return "confirmed" if record.get("confirmed") else "dry-run"


def read_logs(paths: Iterable[str]) -> Iterator[Dict[str, Any]]:
    for path in paths:
        with open(path) as fh:
            for line_no, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError as exc:
                    sys.stderr.write(f"{path}:{line_no}: skipping malformed JSON ({exc})\n")


def tally_records(
    records: Iterable[Dict[str, Any]],
) -> tuple[Dict[tuple[str, str], Tally], List[Dict[str, Any]]]:
    """Group records by (mode, run kind) and collect the failed ones."""
    groups: Dict[tuple[str, str], Tally] = {}
    failures: List[Dict[str, Any]] = []
    for record in records:
        key = (record.get("mode") or "unknown", run_kind(record))
        groups.setdefault(key, Tally()).add(record)
        if record.get("status") == "failure":
            failures.append(record)
    return groups, failures


def print_report(groups: Dict[tuple[str, str], Tally]) -> None:
    if not groups:
        print("No records found.")
        return
    for (mode, kind), tally in sorted(groups.items()):
        print(f"---- {mode} ({kind}) ----")
        print(f"matched: {tally.matched}")
        print(f"mutated: {tally.mutated}")
        print(f"skipped: {tally.skipped}")
        print(f"failed: {tally.failed}")
        for error_type, count in tally.errors.most_common():
            print(f"  {error_type}: {count}")


def write_failures(path: str, failures: List[Dict[str, Any]]) -> None:
    with open(path, "w", newline="") as fh:
        writer = csv.DictWriter(fh, fieldnames=FAILURE_FIELDS, extrasaction="ignore")
        writer.writeheader()
        for record in failures:
            writer.writerow({k: record.get(k, "") for k in FAILURE_FIELDS})


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Summarize bulk subscription audit logs by mode and run kind."
    )
    parser.add_argument(
        "--log",
        nargs="+",
        required=True,
        help="One or more JSONL logs written by bulk_subscriptions.py.",
    )
    parser.add_argument(
        "--failures-csv",
        help="Write failed subscriptions (id, mode, error) to this CSV.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    groups, failures = tally_records(read_logs(args.log))
    print_report(groups)
    if args.failures_csv:
        write_failures(args.failures_csv, failures)
        print(f"failures_csv: {args.failures_csv} ({len(failures)} rows)")


if __name__ == "__main__":
    main()
