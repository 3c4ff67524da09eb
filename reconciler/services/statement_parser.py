"""
Bank statement CSV parser.

Reads a bank-exported CSV (Date, Details, Transaction Type, In, Out, Balance)
and returns normalized rows with a stable dedupe hash. Bad cells and bad lines
are logged and skipped; only an unreadable file is an error.
"""
import csv
import hashlib
import io
import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional

import pandas as pd

from ..schemas import ParsedTransactionRow

logger = logging.getLogger(__name__)

EXPECTED_COLUMNS = ["Date", "Details", "Transaction Type", "In", "Out", "Balance"]
TWO_PLACES = Decimal("0.01")

_WHITESPACE = re.compile(r"\s+")
_UK_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


class StatementParseError(ValueError):
    """The upload could not be read as a CSV at all"""


def sanitize_text(value: Optional[str]) -> str:
    """Trim and collapse internal whitespace"""
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip()


def parse_statement_date(value: Optional[str]) -> Optional[date]:
    """Parse DD/MM/YYYY or ISO YYYY-MM-DD; impossible dates give None"""
    text = sanitize_text(value)
    if not text:
        return None

    match = _UK_DATE.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
    else:
        match = _ISO_DATE.match(text)
        if not match:
            return None
        year, month, day = (int(part) for part in match.groups())

    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_amount(value: Optional[str], column: str = "", line_number: Optional[int] = None) -> Optional[Decimal]:
    """
    Parse a currency cell, stripping thousands separators.

    Returns:
        Decimal rounded half-up to 2 places, or None if empty or malformed
    """
    if value is None:
        return None
    cleaned = str(value).replace(",", "").replace("£", "").strip()
    if not cleaned:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        logger.warning("Ignoring malformed %s amount %r on line %s", column or "amount", value, line_number)
        return None
    if not amount.is_finite():
        logger.warning("Ignoring non-finite %s amount %r on line %s", column or "amount", value, line_number)
        return None
    if amount < 0:
        # In and Out are separate columns; a sign on either is redundant
        logger.debug("Using absolute value of %s amount %r on line %s", column or "amount", value, line_number)
        amount = -amount
    return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def format_hash_amount(value: Optional[Decimal]) -> str:
    """Canonical text for an amount inside the dedupe hash (45.00 -> '45')"""
    if value is None:
        return ""
    normalized = value.normalize()
    if normalized == 0:
        return "0"
    return format(normalized, "f")


def compute_dedupe_hash(
    transaction_date: date,
    details: str,
    transaction_type: Optional[str],
    amount_in: Optional[Decimal],
    amount_out: Optional[Decimal],
    balance: Optional[Decimal],
) -> str:
    """SHA-256 hex digest over the fields that define a statement row"""
    payload = "|".join([
        transaction_date.isoformat(),
        details,
        transaction_type or "",
        format_hash_amount(amount_in),
        format_hash_amount(amount_out),
        format_hash_amount(balance),
    ])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _read_frame(content: bytes) -> pd.DataFrame:
    skipped_lines = []

    def on_bad_line(fields):
        skipped_lines.append(fields)
        return None

    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise StatementParseError("The file is not UTF-8 encoded text.") from exc

    try:
        df = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python",
            on_bad_lines=on_bad_line,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, csv.Error) as exc:
        raise StatementParseError(f"Could not read CSV: {exc}") from exc

    if skipped_lines:
        logger.warning("Skipped %d malformed CSV lines", len(skipped_lines))

    # short lines are padded with NaN
    df = df.fillna("")
    df.columns = [sanitize_text(col) for col in df.columns]
    return df


def parse_statement(content: bytes) -> List[ParsedTransactionRow]:
    """
    Parse statement CSV bytes into normalized rows.

    Args:
        content: Raw uploaded bytes

    Returns:
        Rows with non-empty details, a valid date and a non-zero amount
    """
    df = _read_frame(content)

    has_amounts = "In" in df.columns or "Out" in df.columns
    if "Details" not in df.columns or "Date" not in df.columns or not has_amounts:
        raise StatementParseError(
            f"CSV must contain the columns: {', '.join(EXPECTED_COLUMNS)}"
        )

    rows: List[ParsedTransactionRow] = []
    for index, record in enumerate(df.to_dict(orient="records")):
        line_number = index + 2  # header is line 1

        details = sanitize_text(record.get("Details"))
        if not details:
            continue

        transaction_date = parse_statement_date(record.get("Date"))
        if transaction_date is None:
            logger.debug("Skipping line %d: unparseable date %r", line_number, record.get("Date"))
            continue

        amount_in = parse_amount(record.get("In"), "In", line_number)
        amount_out = parse_amount(record.get("Out"), "Out", line_number)
        if not amount_in and not amount_out:
            continue

        transaction_type = sanitize_text(record.get("Transaction Type")) or None
        balance = parse_amount(record.get("Balance"), "Balance", line_number)

        rows.append(ParsedTransactionRow(
            transaction_date=transaction_date,
            details=details,
            transaction_type=transaction_type,
            amount_in=amount_in,
            amount_out=amount_out,
            balance=balance,
            dedupe_hash=compute_dedupe_hash(
                transaction_date, details, transaction_type, amount_in, amount_out, balance
            ),
        ))

    logger.info("Parsed %d statement rows from %d CSV records", len(rows), len(df))
    return rows


def source_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def describe_row(row: ParsedTransactionRow) -> str:
    """One-line human readable form used by the CLI preview"""
    amount = f"-{row.amount_out}" if row.amount_out else f"+{row.amount_in}"
    return f"{row.transaction_date.strftime('%d/%m/%Y')}  {amount:>12}  {row.details}"
