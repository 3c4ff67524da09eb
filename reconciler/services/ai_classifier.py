"""
OpenAI-backed vendor and expense classification.

The client talks to the chat completions endpoint with httpx and a JSON
schema response format. Every failure degrades to "no suggestion": callers
get None and the reason is logged.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.log import ReceiptTransactionLog
from ..models.transaction import ReceiptTransaction
from ..schemas import EXPENSE_CATEGORIES, match_expense_category, normalize_vendor_name
from .audit import add_transaction_log, record_ai_usage
from .rule_matching import transaction_direction

logger = logging.getLogger(__name__)

MODEL_PRICING_PER_1K_TOKENS = {
    "gpt-4o-mini": {"prompt": 0.00015, "completion": 0.0006},
    "gpt-4o-mini-2024-07-18": {"prompt": 0.00015, "completion": 0.0006},
    "gpt-4o": {"prompt": 0.0025, "completion": 0.01},
    "gpt-4.1-mini": {"prompt": 0.0004, "completion": 0.0016},
}

SYSTEM_PROMPT = """You are an expert bookkeeper for a UK pub and hospitality business.
You classify bank transactions into vendor names and HMRC-aligned expense categories.
Context: This is a British pub. Common vendors include breweries (Heineken, Carlsberg, BrewDog, Estrella),
food suppliers (Bidfood, Brakes, Booker), HMRC for VAT/PAYE, energy providers, Sky,
local councils (business rates), insurance companies, waste management, and payment processors.
Transactions are in GBP. Use UK English in vendor names.
Only respond with valid JSON matching the schema. Use null when genuinely unsure."""

FEW_SHOT_LIMIT = 10


@dataclass
class ClassificationResult:
    vendor_name: Optional[str]
    expense_category: Optional[str]
    reasoning: Optional[str] = None
    confidence: Optional[int] = None
    suggested_rule_keywords: Optional[str] = None
    id: Optional[str] = None


@dataclass
class ClassificationOutcome:
    results: List[ClassificationResult]
    usage: Optional[Dict[str, Any]] = None

    @property
    def result(self) -> Optional[ClassificationResult]:
        return self.results[0] if self.results else None


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    pricing = MODEL_PRICING_PER_1K_TOKENS.get(model, MODEL_PRICING_PER_1K_TOKENS["gpt-4o-mini"])
    cost = (prompt_tokens / 1000) * pricing["prompt"] + (completion_tokens / 1000) * pricing["completion"]
    return round(cost, 6)


def _normalize_confidence(value) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    rounded = int(round(value))
    if rounded < 0 or rounded > 100:
        return None
    return rounded


def _normalize_text(value, limit: int) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed[:limit] if trimmed else None


def _parse_item(item: Dict[str, Any]) -> ClassificationResult:
    vendor = item.get("vendor_name")
    category = item.get("expense_category")
    return ClassificationResult(
        id=str(item["id"]) if item.get("id") is not None else None,
        vendor_name=normalize_vendor_name(vendor) if isinstance(vendor, str) else None,
        expense_category=match_expense_category(category) if isinstance(category, str) else None,
        reasoning=_normalize_text(item.get("reasoning"), 200),
        confidence=_normalize_confidence(item.get("confidence")),
        suggested_rule_keywords=_normalize_text(item.get("suggested_rule_keywords"), 300),
    )


def _amount_label(direction: str, amount_in, amount_out) -> str:
    if direction == "in":
        amount = amount_in or amount_out or 0
    else:
        amount = amount_out or amount_in or 0
    return f"£{float(amount):.2f}"


class OpenAIClassifier:
    """Classifies statement lines into a vendor and an expense category"""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        categories: Sequence[str] = EXPENSE_CATEGORIES,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.transport = transport
        self.categories = list(categories)

    def _post(self, user_prompt: str, schema_name: str, schema: Dict[str, Any], max_tokens: int) -> Optional[Dict[str, Any]]:
        body = {
            "model": self.model,
            "temperature": 0.1,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": schema},
            },
            "max_tokens": max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            for attempt in (1, 2):
                try:
                    response = client.post(f"{self.base_url}/chat/completions", json=body, headers=headers)
                except httpx.TransportError as exc:
                    logger.warning("OpenAI request failed (attempt %d): %s", attempt, exc)
                    continue
                if response.status_code >= 500 and attempt == 1:
                    logger.warning("OpenAI returned %s, retrying", response.status_code)
                    continue
                if response.is_error:
                    logger.error("OpenAI classification request failed: %s %s", response.status_code, response.text[:500])
                    return None
                try:
                    return response.json()
                except ValueError:
                    logger.error("OpenAI returned a non-JSON body")
                    return None
        return None

    def _extract(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        choices = payload.get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            ).strip()
        if not content:
            logger.warning("OpenAI classification returned empty content")
            return None
        try:
            parsed = json.loads(content)
        except ValueError:
            logger.error("Failed to parse OpenAI classification response")
            return None
        return parsed if isinstance(parsed, dict) else None

    def _usage(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        usage = payload.get("usage")
        if not usage:
            return None
        model = usage.get("model") or payload.get("model") or self.model
        prompt_tokens = usage.get("prompt_tokens") or 0
        completion_tokens = usage.get("completion_tokens") or 0
        return {
            "model": model,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": usage.get("total_tokens") or prompt_tokens + completion_tokens,
            "cost": calculate_cost(model, prompt_tokens, completion_tokens),
        }

    def _item_schema(self, with_id: bool = False) -> Dict[str, Any]:
        properties = {
            "vendor_name": {"type": ["string", "null"], "description": "The suggested vendor or merchant name."},
            "expense_category": {
                "type": ["string", "null"],
                "description": "The accounting bucket that matches the transaction.",
                "enum": self.categories + [None],
            },
            "reasoning": {"type": ["string", "null"], "description": "One-line explanation for auditing."},
            "confidence": {"type": ["number", "null"], "description": "Confidence score 0-100."},
            "suggested_rule_keywords": {
                "type": ["string", "null"],
                "description": "Comma-separated keywords to match similar transactions.",
            },
        }
        required = ["vendor_name", "expense_category"]
        if with_id:
            properties = {"id": {"type": "string"}, **properties}
            required = ["id"] + required
        return {
            "type": "object",
            "properties": properties,
            "required": required,
            "additionalProperties": False,
        }

    def classify(
        self,
        details: str,
        amount_in=None,
        amount_out=None,
        transaction_type: Optional[str] = None,
        existing_vendor: Optional[str] = None,
        existing_expense_category: Optional[str] = None,
    ) -> Optional[ClassificationOutcome]:
        """Classify one transaction. Returns None when no suggestion could be made."""
        direction = transaction_direction(amount_in)
        lines = [
            f"Transaction details: {details}",
            f"Amount: {_amount_label(direction, amount_in, amount_out)}",
            f"Transaction type: {transaction_type}" if transaction_type else None,
            f"Direction: {'Money in' if direction == 'in' else 'Money out'}",
            f"Existing vendor: {existing_vendor}" if existing_vendor else None,
            f"Existing expense category: {existing_expense_category}" if existing_expense_category else None,
            "Allowed expense categories:",
            *[f"- {category}" for category in self.categories],
            "",
            "Return JSON with keys vendor_name, expense_category, reasoning, confidence (0-100), "
            "suggested_rule_keywords (comma-separated keywords for matching this type of transaction). "
            "Use null where you are unsure.",
        ]
        prompt = "\n".join(line for line in lines if line is not None)

        payload = self._post(prompt, "receipt_classification", self._item_schema(), max_tokens=300)
        if payload is None:
            return None
        parsed = self._extract(payload)
        if parsed is None:
            return None
        return ClassificationOutcome(results=[_parse_item(parsed)], usage=self._usage(payload))

    def classify_batch(
        self,
        items: Sequence[Dict[str, Any]],
        few_shot_examples: Sequence[Dict[str, Any]] = (),
        known_vendors: Sequence[Dict[str, Any]] = (),
    ) -> Optional[ClassificationOutcome]:
        """
        Classify several transactions in one request.

        Args:
            items: dicts with id, details, amount_in, amount_out, transaction_type,
                skip_vendor, existing_vendor, existing_expense_category
            few_shot_examples: recent manual corrections (details, direction, vendor_name, expense_category)
            known_vendors: vendors already set on matching details (details, vendor_name, source)

        Returns:
            Outcome with one result per item the model answered, or None on failure
        """
        if not items:
            return ClassificationOutcome(results=[])

        sections = []
        if few_shot_examples:
            sections.append("EXAMPLES OF CORRECT CLASSIFICATIONS (from manual corrections):")
            for ex in few_shot_examples:
                sections.append(
                    f'  "{ex["details"]}" ({ex["direction"]}) → vendor: {ex.get("vendor_name") or "null"}, '
                    f'category: {ex.get("expense_category") or "null"}'
                )
            sections.append("")
        if known_vendors:
            sections.append("KNOWN VENDORS FROM EXISTING TRANSACTIONS:")
            for hint in known_vendors:
                sections.append(f'  "{hint["details"]}" → {hint["vendor_name"]} (source: {hint["source"]})')
            sections.append("")
        sections.append("ALLOWED EXPENSE CATEGORIES:")
        sections.extend(f"  - {category}" for category in self.categories)
        sections.append("")
        sections.append("TRANSACTIONS TO CLASSIFY:")

        blocks = []
        for index, item in enumerate(items):
            direction = transaction_direction(item.get("amount_in"))
            lines = [
                f'[{index}] id="{item["id"]}"',
                f"  details: {item['details']}",
                f"  amount: {_amount_label(direction, item.get('amount_in'), item.get('amount_out'))}",
                f"  direction: {'money in' if direction == 'in' else 'money out'}",
                f"  type: {item['transaction_type']}" if item.get("transaction_type") else None,
                "  vendor: ALREADY SET (skip)" if item.get("skip_vendor") else None,
                f"  existing_vendor: {item['existing_vendor']}" if item.get("existing_vendor") else None,
                f"  existing_category: {item['existing_expense_category']}" if item.get("existing_expense_category") else None,
            ]
            blocks.append("\n".join(line for line in lines if line))
        sections.append("\n\n".join(blocks))
        sections.extend([
            "",
            'Return a JSON object with a "classifications" array. Each element must have:',
            "  id (string), vendor_name (string|null), expense_category (string|null),",
            "  reasoning (string|null), confidence (number 0-100|null),",
            "  suggested_rule_keywords (comma-separated keywords|null)",
            "If vendor is marked ALREADY SET, return vendor_name as null.",
            "Return one entry per transaction in the same order.",
        ])

        schema = {
            "type": "object",
            "properties": {"classifications": {"type": "array", "items": self._item_schema(with_id=True)}},
            "required": ["classifications"],
            "additionalProperties": False,
        }
        payload = self._post("\n".join(sections), "batch_receipt_classification", schema, max_tokens=2000)
        if payload is None:
            return None
        parsed = self._extract(payload)
        if parsed is None:
            return None

        raw_items = parsed.get("classifications")
        results = [
            _parse_item(item)
            for item in (raw_items if isinstance(raw_items, list) else [])
            if isinstance(item, dict) and item.get("id") is not None
        ]
        return ClassificationOutcome(results=results, usage=self._usage(payload))


def build_classifier(settings) -> Optional[OpenAIClassifier]:
    """Classifier for the configured API key, or None when AI is disabled"""
    if not settings.OPENAI_API_KEY:
        return None
    return OpenAIClassifier(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        model=settings.OPENAI_RECEIPTS_MODEL,
        timeout=settings.OPENAI_TIMEOUT_SECONDS,
    )


# =============================================================================
# Background classification of imported transactions
# =============================================================================

def _can_assign_expense(tx: ReceiptTransaction) -> bool:
    return tx.amount_out is not None and tx.amount_out > 0


def _needs(tx: ReceiptTransaction):
    vendor_locked = tx.vendor_source in ("manual", "rule")
    expense_locked = tx.expense_category_source == "manual"
    needs_vendor = not vendor_locked and not tx.vendor_name
    needs_expense = not expense_locked and not tx.expense_category and _can_assign_expense(tx)
    return vendor_locked, needs_vendor, needs_expense


def fetch_few_shot_examples(db: Session, limit: int = FEW_SHOT_LIMIT) -> List[Dict[str, Any]]:
    """Recent manual corrections, used to steer the model"""
    rows = (
        db.query(ReceiptTransaction)
        .join(ReceiptTransactionLog, ReceiptTransactionLog.transaction_id == ReceiptTransaction.id)
        .filter(
            ReceiptTransactionLog.action_type == "manual_classification",
            ReceiptTransaction.vendor_name.isnot(None),
        )
        .order_by(ReceiptTransactionLog.performed_at.desc(), ReceiptTransactionLog.id.desc())
        .limit(limit * 3)
        .all()
    )
    examples = []
    seen = set()
    for tx in rows:
        if tx.id in seen:
            continue
        seen.add(tx.id)
        examples.append({
            "details": tx.details,
            "direction": "in" if tx.is_incoming_only else "out",
            "vendor_name": tx.vendor_name,
            "expense_category": tx.expense_category,
        })
        if len(examples) >= limit:
            break
    return examples


def fetch_known_vendors(db: Session, details: Sequence[str]) -> List[Dict[str, Any]]:
    """Vendors already set by a person or rule on identical details; manual wins"""
    unique = list(dict.fromkeys(details))
    if not unique:
        return []
    rows = (
        db.query(ReceiptTransaction.details, ReceiptTransaction.vendor_name, ReceiptTransaction.vendor_source)
        .filter(
            ReceiptTransaction.details.in_(unique),
            ReceiptTransaction.vendor_source.in_(["manual", "rule"]),
            ReceiptTransaction.vendor_name.isnot(None),
        )
        .order_by(ReceiptTransaction.id.asc())
        .all()
    )
    hints: Dict[str, Dict[str, Any]] = {}
    for row_details, vendor_name, source in rows:
        existing = hints.get(row_details)
        if existing is None or source == "manual":
            hints[row_details] = {"details": row_details, "vendor_name": vendor_name, "source": source}
    return list(hints.values())


def classify_transactions_with_ai(
    db: Session,
    transaction_ids: Sequence[int],
    classifier: Optional[OpenAIClassifier],
) -> int:
    """
    Fill in vendor and expense values the model is confident about.

    Only empty, unlocked fields are written, with source 'ai'. Failures are
    logged against each transaction; nothing is raised.

    Returns:
        Number of transactions updated
    """
    if not transaction_ids or classifier is None:
        return 0

    try:
        transactions = (
            db.query(ReceiptTransaction)
            .filter(ReceiptTransaction.id.in_(list(transaction_ids)))
            .order_by(ReceiptTransaction.id.asc())
            .all()
        )
        to_classify = [tx for tx in transactions if any(_needs(tx)[1:])]
        if not to_classify:
            return 0
        few_shot = fetch_few_shot_examples(db)
        known_vendors = fetch_known_vendors(db, [tx.details for tx in to_classify])
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to load transactions for AI classification")
        return 0

    items = []
    for tx in to_classify:
        vendor_locked, _, _ = _needs(tx)
        items.append({
            "id": str(tx.id),
            "details": tx.details,
            "amount_in": tx.amount_in,
            "amount_out": tx.amount_out,
            "transaction_type": tx.transaction_type,
            "skip_vendor": vendor_locked,
            "existing_vendor": tx.vendor_name,
            "existing_expense_category": tx.expense_category,
        })

    try:
        outcome = classifier.classify_batch(items, few_shot, known_vendors)
    except Exception:
        logger.exception("AI batch classification raised")
        outcome = None

    if outcome is None:
        try:
            for tx in to_classify:
                add_transaction_log(
                    db, tx.id, "ai_classification_failed",
                    previous_status=tx.status, new_status=tx.status,
                    note="Batch AI classification call failed",
                )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to record AI classification failure")
        return 0

    record_ai_usage(db, f"receipt_classification_batch:{len(to_classify)}", outcome.usage)

    by_id = {result.id: result for result in outcome.results}
    updated = 0
    for tx in to_classify:
        result = by_id.get(str(tx.id))
        if result is None:
            continue
        _, needs_vendor, needs_expense = _needs(tx)
        now = datetime.now(timezone.utc)
        changes = []
        tx_id = tx.id
        try:
            if needs_vendor and result.vendor_name:
                tx.vendor_name = result.vendor_name
                tx.vendor_source = "ai"
                tx.vendor_rule_id = None
                tx.vendor_updated_at = now
                changes.append(f"Vendor -> {result.vendor_name}")
            if needs_expense and result.expense_category:
                tx.expense_category = result.expense_category
                tx.expense_category_source = "ai"
                tx.expense_rule_id = None
                tx.expense_updated_at = now
                changes.append(f"Expense -> {result.expense_category}")
            if result.confidence is not None:
                tx.ai_confidence = result.confidence
            if result.suggested_rule_keywords:
                tx.ai_suggested_keywords = result.suggested_rule_keywords
            if not db.is_modified(tx):
                continue
            tx.updated_at = now
            if changes:
                note = f"AI suggestion applied: {' | '.join(changes)}"
                if result.reasoning:
                    note += f" (Reason: {result.reasoning})"
                add_transaction_log(
                    db, tx_id, "ai_classification",
                    previous_status=tx.status, new_status=tx.status, note=note,
                )
            db.commit()
            if changes:
                updated += 1
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to persist AI classification for transaction %s", tx_id)

    logger.info("AI classified %d of %d transactions", updated, len(to_classify))
    return updated
