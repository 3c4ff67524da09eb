from reconciler.models.batch import ReceiptBatch
from reconciler.models.log import ReceiptTransactionLog
from reconciler.models.transaction import ReceiptTransaction
from reconciler.services.import_service import import_statement, validate_statement_upload
from reconciler.services.outcome import ActionError

from .factories import FakeClassifier, make_rule

STATEMENT = (
    "Date,Details,Transaction Type,In,Out,Balance\n"
    "01/03/2024,CARD PAYMENT TO BOOKER LTD,DEB,,45.00,955.00\n"
    "02/03/2024,ACME LTD DIRECT DEBIT,DD,,30.00,925.00\n"
    "03/03/2024,CARD SALES SETTLEMENT,BGC,250.00,,1175.00\n"
).encode("utf-8")


class TestValidateUpload:
    def test_rejects_non_csv(self):
        error = validate_statement_upload("statement.xlsx", b"x", 1024)
        assert error.message == "Only CSV bank statements are supported."

    def test_accepts_csv_content_type(self):
        assert validate_statement_upload("export", b"x", 1024, "text/csv") is None

    def test_rejects_empty_and_oversized(self):
        assert validate_statement_upload("s.csv", b"", 1024).message == "The uploaded file is empty."
        too_big = validate_statement_upload("s.csv", b"x" * (11 * 1024 * 1024), 10 * 1024 * 1024)
        assert too_big.message == "File too large. Maximum size is 10MB"


class TestImportStatement:
    def test_first_import_inserts_every_row(self, ctx, db):
        result = import_statement(ctx, "march.csv", STATEMENT)

        assert result["success"] is True
        assert result["inserted"] == 3
        assert result["skipped"] == 0
        assert result["batch"]["row_count"] == 3
        assert db.query(ReceiptTransaction).filter_by(status="pending").count() == 3
        logs = db.query(ReceiptTransactionLog).filter_by(action_type="import").all()
        assert len(logs) == 3
        assert logs[0].note == "Imported via march.csv"
        assert logs[0].performed_by == "user-1"

    def test_reimport_is_idempotent(self, ctx, db):
        import_statement(ctx, "march.csv", STATEMENT)
        again = import_statement(ctx, "march-again.csv", STATEMENT)

        assert again["inserted"] == 0
        assert again["skipped"] == 3
        assert db.query(ReceiptTransaction).count() == 3
        # the second upload is still recorded as a batch
        assert db.query(ReceiptBatch).count() == 2
        assert db.query(ReceiptTransactionLog).filter_by(action_type="import").count() == 3

    def test_duplicate_lines_within_one_file(self, ctx, db):
        line = "01/03/2024,CARD PAYMENT TO BOOKER LTD,DEB,,45.00,955.00\n"
        content = ("Date,Details,Transaction Type,In,Out,Balance\n" + line + line).encode("utf-8")

        result = import_statement(ctx, "dupes.csv", content)

        assert result["inserted"] == 1
        assert result["skipped"] == 1

    def test_rules_run_on_new_rows(self, ctx, db):
        make_rule(
            db, name="Acme", match_description="acme", match_direction="out",
            set_vendor_name="Acme Ltd", set_expense_category="Sundries/Consumables",
        )

        result = import_statement(ctx, "march.csv", STATEMENT)

        assert result["autoApplied"] == 1
        assert result["autoClassified"] == 1
        acme = db.query(ReceiptTransaction).filter(ReceiptTransaction.details.like("ACME%")).one()
        assert acme.status == "no_receipt_required"
        assert acme.vendor_name == "Acme Ltd"
        assert acme.expense_category_source == "rule"

    def test_queues_ai_jobs_in_chunks(self, make_ctx, queued_jobs, settings):
        settings.AI_JOB_CHUNK_SIZE = 2
        ctx = make_ctx(classifier=FakeClassifier())

        import_statement(ctx, "march.csv", STATEMENT)

        assert len(queued_jobs) == 2
        assert [len(args[0]) for _, args in queued_jobs] == [2, 1]

    def test_no_valid_rows(self, ctx):
        content = b"Date,Details,Transaction Type,In,Out,Balance\nbad,,,,,\n"
        result = import_statement(ctx, "empty.csv", content)
        assert isinstance(result, ActionError)
        assert result.status_code == 400

    def test_requires_manage_permission(self, make_ctx, db):
        result = import_statement(make_ctx(role="staff"), "march.csv", STATEMENT)
        assert result.kind == "permission"
        assert db.query(ReceiptBatch).count() == 0
