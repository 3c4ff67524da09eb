from .conftest import CRON_SECRET, MANAGER_HEADERS, STAFF_HEADERS

STATEMENT = (
    "Date,Details,Transaction Type,In,Out,Balance\n"
    "01/03/2024,ACME LTD DIRECT DEBIT,DD,,30.00,970.00\n"
    "02/03/2024,ACME LTD DIRECT DEBIT,DD,,30.00,940.00\n"
    "03/03/2024,CARD PAYMENT TO BOOKER LTD,DEB,,45.00,895.00\n"
    "04/03/2024,CARD SALES SETTLEMENT,BGC,250.00,,1145.00\n"
)


def _upload(client, headers=MANAGER_HEADERS, content=STATEMENT, name="march.csv", content_type="text/csv"):
    return client.post(
        "/api/receipts/import",
        files={"statement": (name, content.encode("utf-8"), content_type)},
        headers=headers,
    )


def _transactions(client, **params):
    return client.get("/api/receipts/transactions", params=params, headers=MANAGER_HEADERS).json()["transactions"]


def test_acme_rule_workflow(client):
    first = _upload(client)
    assert first.status_code == 200
    assert first.json()["inserted"] == 4
    assert _upload(client).json()["skipped"] == 4

    created = client.post("/api/rules", data={
        "name": "Acme",
        "match_description": "acme",
        "match_direction": "out",
        "set_vendor_name": "Acme Ltd",
        "set_expense_category": "Sundries/Consumables",
        "auto_status": "no_receipt_required",
    }, headers=MANAGER_HEADERS)
    assert created.status_code == 200
    rule_id = created.json()["rule"]["id"]
    assert created.json()["canPromptRetro"] is True

    step = client.post(f"/api/rules/{rule_id}/retro/step", json={"scope": "pending", "offset": 0},
                       headers=MANAGER_HEADERS).json()
    assert step["matched"] == 2
    assert step["done"] is True
    finalized = client.post(f"/api/rules/{rule_id}/retro/finalize", json={
        "scope": "pending", "reviewed": step["reviewed"], "matched": step["matched"],
        "statusAutoUpdated": step["statusAutoUpdated"],
    }, headers=MANAGER_HEADERS)
    assert finalized.json() == {"success": True}

    acme = [tx for tx in _transactions(client) if tx["details"].startswith("ACME")]
    assert {tx["status"] for tx in acme} == {"no_receipt_required"}
    assert {tx["vendor_name"] for tx in acme} == {"Acme Ltd"}

    logs = client.get(f"/api/rules/{rule_id}/logs", headers=MANAGER_HEADERS).json()
    assert len(logs) == 4

    summary = client.get("/api/receipts/summary", headers=MANAGER_HEADERS).json()
    assert summary["totals"]["noReceiptRequired"] == 2
    assert summary["totals"]["pending"] == 2


def test_import_applies_existing_rule(client):
    client.post("/api/rules", data={
        "name": "Acme Supplies",
        "match_description": "acme",
        "match_direction": "out",
        "set_vendor_name": "Acme Supplies",
        "auto_status": "no_receipt_required",
    }, headers=MANAGER_HEADERS)

    result = _upload(client, content=(
        "Date,Details,Transaction Type,In,Out,Balance\n"
        "05/01/2024,ACME SUPPLIES LTD,DEB,,45.00,1000.00\n"
    )).json()

    assert result["inserted"] == 1
    assert result["autoApplied"] == 1
    tx = _transactions(client)[0]
    assert tx["status"] == "no_receipt_required"
    assert (tx["vendor_name"], tx["vendor_source"]) == ("Acme Supplies", "rule")


def test_rule_validation_errors_are_400(client):
    response = client.post("/api/rules", data={
        "name": "Refunds", "match_direction": "in", "set_expense_category": "Sundries/Consumables",
    }, headers=MANAGER_HEADERS)

    assert response.status_code == 400
    assert response.json() == {"error": "Expense auto-tagging rules must use outgoing direction"}


def test_manual_review_endpoints(client):
    _upload(client)
    booker = next(tx for tx in _transactions(client) if "BOOKER" in tx["details"])

    classified = client.post(f"/api/receipts/transactions/{booker['id']}/classification",
                             json={"vendorName": "Booker", "expenseCategory": "Sundries/Consumables"},
                             headers=MANAGER_HEADERS).json()
    assert classified["ruleSuggestion"]["matchDescription"] == "card,payment,booker"

    marked = client.post(f"/api/receipts/transactions/{booker['id']}/mark",
                         json={"status": "cant_find", "note": "Lost"}, headers=MANAGER_HEADERS)
    assert marked.json()["transaction"]["status"] == "cant_find"

    bad_status = client.post(f"/api/receipts/transactions/{booker['id']}/mark",
                             json={"status": "lost"}, headers=MANAGER_HEADERS)
    assert bad_status.status_code == 400

    logs = client.get(f"/api/receipts/transactions/{booker['id']}/logs", headers=MANAGER_HEADERS).json()
    assert [log["action_type"] for log in logs] == ["import", "manual_classification", "manual_update"]

    suggestion = client.get("/api/receipts/vendors/suggest", params={"name": "boker"}, headers=MANAGER_HEADERS)
    assert suggestion.json()["suggestion"] == "Booker"


def test_receipt_upload_and_delete(client):
    _upload(client)
    tx = _transactions(client, status="pending")[0]

    uploaded = client.post(f"/api/receipts/transactions/{tx['id']}/files",
                           files={"receipt": ("invoice.pdf", b"%PDF-1.4", "application/pdf")},
                           headers=MANAGER_HEADERS)
    assert uploaded.status_code == 200
    file_id = uploaded.json()["receipt"]["id"]
    assert _transactions(client, status="completed")[0]["files"][0]["id"] == file_id

    deleted = client.delete(f"/api/receipts/files/{file_id}", headers=MANAGER_HEADERS)
    assert deleted.json() == {"success": True, "remainingFiles": 0}


def test_bulk_review_endpoints(client):
    _upload(client)

    groups = client.get("/api/bulk/groups", params={"statuses": "pending"}, headers=MANAGER_HEADERS).json()
    assert groups["groups"][0]["details"] == "ACME LTD DIRECT DEBIT"
    assert groups["groups"][0]["transactionCount"] == 2

    applied = client.post("/api/bulk/apply", json={
        "details": "ACME LTD DIRECT DEBIT", "vendorName": "Acme Ltd",
    }, headers=MANAGER_HEADERS).json()
    assert applied["updated"] == 2

    rule = client.post("/api/bulk/rules", json={
        "details": "ACME LTD DIRECT DEBIT", "vendorName": "Acme Ltd",
    }, headers=MANAGER_HEADERS).json()
    assert rule["rule"]["match_direction"] == "both"


def test_toggle_and_delete_rule(client):
    rule_id = client.post("/api/rules", data={"name": "Sky", "match_description": "sky"},
                          headers=MANAGER_HEADERS).json()["rule"]["id"]

    toggled = client.post(f"/api/rules/{rule_id}/toggle", json={"isActive": False}, headers=MANAGER_HEADERS)
    assert toggled.json()["rule"]["is_active"] is False

    retro = client.post(f"/api/rules/{rule_id}/retro", json={"scope": "pending"}, headers=MANAGER_HEADERS)
    assert retro.status_code == 400

    assert client.delete(f"/api/rules/{rule_id}", headers=MANAGER_HEADERS).json()["success"] is True
    assert len(client.get("/api/rules", headers=MANAGER_HEADERS).json()) == 1


def test_staff_can_view_but_not_change(client):
    assert _upload(client, headers=STAFF_HEADERS).status_code == 403
    assert client.get("/api/receipts/summary", headers=STAFF_HEADERS).status_code == 200
    assert client.get("/api/receipts/summary").status_code == 403


def test_upload_rejections(client):
    response = _upload(client, name="march.xlsx", content="x",
                       content_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")
    assert response.status_code == 400
    assert response.json() == {"error": "Only CSV bank statements are supported."}


def test_cron_requires_secret(client):
    assert client.get("/api/cron/receipts-sweep").status_code == 401
    assert client.get("/api/cron/receipts-sweep", headers={"Authorization": "Bearer wrong"}).status_code == 401

    first = client.get("/api/cron/receipts-sweep", headers={"Authorization": f"Bearer {CRON_SECRET}"})
    second = client.get("/api/cron/receipts-sweep", headers={"x-cron-secret": CRON_SECRET})

    assert first.status_code == 200
    assert first.json()["skipped"] is False
    assert second.json()["skipped"] is True
