#!/usr/bin/env python3
"""
CLI script to preview how a bank statement CSV will be imported.

Usage:
    python scripts/parse_statement_cli.py <filename> [--limit N] [--all]

Examples:
    python scripts/parse_statement_cli.py statements/march.csv
    python scripts/parse_statement_cli.py statements/march.csv --limit 5
"""
import argparse
import sys
from collections import Counter
from pathlib import Path

from reconciler.services.statement_parser import StatementParseError, describe_row, parse_statement


def main():
    parser = argparse.ArgumentParser(
        description="Parse a bank statement CSV and print the rows that would be imported."
    )
    parser.add_argument("filename", help="Path to the statement CSV")
    parser.add_argument(
        "--limit", "-l",
        type=int,
        default=10,
        help="Maximum number of transactions to display (default: 10)"
    )
    parser.add_argument(
        "--all", "-a",
        action="store_true",
        help="Show all transactions (ignore limit)"
    )

    args = parser.parse_args()

    filepath = Path(args.filename)
    if not filepath.exists():
        print(f"Error: File not found: {filepath}", file=sys.stderr)
        sys.exit(1)

    try:
        rows = parse_statement(filepath.read_bytes())
    except StatementParseError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    duplicates = sum(count - 1 for count in Counter(row.dedupe_hash for row in rows).values() if count > 1)
    print(f"Total transactions: {len(rows)}")
    print(f"Duplicates within file: {duplicates}")
    print("-" * 80)

    display_count = len(rows) if args.all else min(args.limit, len(rows))
    for i, row in enumerate(rows[:display_count]):
        print(f"[{i + 1}] {describe_row(row)}")
        if row.transaction_type:
            print(f"     Type: {row.transaction_type}")

    if display_count < len(rows):
        print(f"\n... and {len(rows) - display_count} more (use --all to show all)")


if __name__ == "__main__":
    main()
