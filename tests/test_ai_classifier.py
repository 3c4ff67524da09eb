import json

import httpx

from reconciler.config import Settings
from reconciler.models.audit import AIUsageEvent
from reconciler.models.log import ReceiptTransactionLog
from reconciler.services.ai_classifier import (
    OpenAIClassifier,
    build_classifier,
    calculate_cost,
    classify_transactions_with_ai,
)

from .factories import FakeClassifier, make_transaction


def _completion(content, usage=True):
    body = {"model": "gpt-4o-mini", "choices": [{"message": {"content": json.dumps(content)}}]}
    if usage:
        body["usage"] = {"prompt_tokens": 1000, "completion_tokens": 500, "total_tokens": 1500}
    return httpx.Response(200, json=body)


def _classifier(handler):
    return OpenAIClassifier(api_key="sk-test", transport=httpx.MockTransport(handler))


def test_classify_parses_and_normalises():
    requests = []

    def handler(request):
        requests.append(json.loads(request.content))
        return _completion({
            "vendor_name": "  Booker   Ltd ",
            "expense_category": "sundries/consumables",
            "reasoning": "Cash and carry",
            "confidence": 87.6,
            "suggested_rule_keywords": "booker",
        })

    outcome = _classifier(handler).classify("CARD PAYMENT TO BOOKER", amount_out=45)

    result = outcome.result
    assert result.vendor_name == "Booker Ltd"
    assert result.expense_category == "Sundries/Consumables"
    assert result.confidence == 88
    assert outcome.usage["cost"] == calculate_cost("gpt-4o-mini", 1000, 500)
    sent = requests[0]
    assert sent["response_format"]["json_schema"]["name"] == "receipt_classification"
    assert sent["max_tokens"] == 300
    assert "Amount: £45.00" in sent["messages"][1]["content"]


def test_unknown_category_and_bad_confidence_are_dropped():
    outcome = _classifier(lambda request: _completion({
        "vendor_name": "Booker", "expense_category": "Snacks", "confidence": 140,
    })).classify("BOOKER")

    assert outcome.result.expense_category is None
    assert outcome.result.confidence is None


def test_server_error_is_retried_once():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return _completion({"vendor_name": "Sky", "expense_category": None})

    assert _classifier(handler).classify("SKY DIGITAL").result.vendor_name == "Sky"
    assert len(calls) == 2


def test_failures_degrade_to_none():
    assert _classifier(lambda request: httpx.Response(401, json={"error": "bad key"})).classify("X") is None
    assert _classifier(lambda request: httpx.Response(200, json={"choices": []})).classify("X") is None

    def not_json(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": "not json"}}]})

    assert _classifier(not_json).classify("X") is None


def test_batch_returns_results_by_id():
    def handler(request):
        body = json.loads(request.content)
        assert body["response_format"]["json_schema"]["name"] == "batch_receipt_classification"
        return _completion({"classifications": [
            {"id": "1", "vendor_name": "Booker", "expense_category": "Sundries/Consumables"},
            {"id": "2", "vendor_name": "Sky", "expense_category": None},
            {"vendor_name": "no id"},
        ]})

    outcome = _classifier(handler).classify_batch([
        {"id": "1", "details": "BOOKER", "amount_out": 10},
        {"id": "2", "details": "SKY", "amount_out": 20},
    ])

    assert [result.id for result in outcome.results] == ["1", "2"]


def test_build_classifier_needs_a_key():
    assert build_classifier(Settings(OPENAI_API_KEY="")) is None
    assert isinstance(build_classifier(Settings(OPENAI_API_KEY="sk-test")), OpenAIClassifier)


class TestClassifyTransactions:
    def test_fills_only_empty_unlocked_fields(self, db):
        empty = make_transaction(db, details="BOOKER")
        ruled = make_transaction(db, details="BOOKER 2", vendor_name="Bidfood", vendor_source="rule")
        classifier = FakeClassifier()

        updated = classify_transactions_with_ai(db, [empty.id, ruled.id], classifier)

        assert updated == 2
        db.refresh(empty)
        db.refresh(ruled)
        assert (empty.vendor_name, empty.vendor_source) == ("Booker", "ai")
        assert empty.ai_confidence == 90
        assert ruled.vendor_name == "Bidfood"
        assert ruled.expense_category_source == "ai"
        assert classifier.batch_calls[0][1]["skip_vendor"] is True
        assert db.query(AIUsageEvent).count() == 1
        note = db.query(ReceiptTransactionLog).filter_by(transaction_id=empty.id).one().note
        assert note.startswith("AI suggestion applied: Vendor -> Booker")

    def test_manual_values_are_never_overwritten(self, db):
        tx = make_transaction(db, vendor_name="Booker", vendor_source="manual",
                              expense_category="Entertainment", expense_category_source="manual")
        classifier = FakeClassifier()

        assert classify_transactions_with_ai(db, [tx.id], classifier) == 0
        assert classifier.batch_calls == []

    def test_failed_call_is_logged_per_transaction(self, db):
        first = make_transaction(db)
        second = make_transaction(db)

        updated = classify_transactions_with_ai(db, [first.id, second.id], FakeClassifier(fail=True))

        assert updated == 0
        logs = db.query(ReceiptTransactionLog).filter_by(action_type="ai_classification_failed").all()
        assert sorted(log.transaction_id for log in logs) == [first.id, second.id]

    def test_without_classifier(self, db):
        tx = make_transaction(db)
        assert classify_transactions_with_ai(db, [tx.id], None) == 0
