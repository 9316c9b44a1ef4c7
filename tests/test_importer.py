from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from tally.categorizer import AutoCategorizer
from tally.errors import FileTooLarge, ImportNotFound, ImportProcessingError, InvalidState, UnsupportedFormat
from tally.importer import ImportService, build_candidate, compute_checksum
from tally.models import CandidateTransaction, ImportStatus, ParseReport, TransactionType, Upload
from tally.resolver import FieldResolver
from tally.settings import ImportConfig
from tally.stores import SqliteCategoryStore, SqliteImportStore, SqliteTransactionStore

FIXTURES = Path(__file__).parent / "fixtures"


def _service(db, **config) -> ImportService:
    return ImportService(
        SqliteImportStore(db),
        SqliteTransactionStore(db),
        AutoCategorizer(SqliteCategoryStore(db)),
        config=ImportConfig(**config),
    )


def _csv(lines: list[str]) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


def _generated_csv(count: int) -> bytes:
    return _csv(["Date,Montant,Libellé"] + [f"2025-06-{(i % 28) + 1:02d},-{i + 1}.00,ACHAT {i}" for i in range(count)])


def _candidate(row_index: int, description: str = "ACHAT", date_: str = "2025-06-01") -> CandidateTransaction:
    return CandidateTransaction(
        date=date_, description=description, amount=Decimal("10.00"),
        type=TransactionType.EXPENSE, original_amount=Decimal("-10.00"), row_index=row_index,
    )


def _category_id(db, name):
    return db.execute("SELECT id FROM categories WHERE name = ?", (name,)).fetchone()["id"]


# --- preview ---


def test_csv_row_becomes_candidate(db):
    service = _service(db)
    upload = Upload("releve.csv", _csv(["Date,Montant,Détail 1", "13/06/2025,-25.50,RESTAURANT ABC"]))
    job = service.start_import(1, upload)

    assert job.status == ImportStatus.PENDING
    assert job.total_rows == 1
    candidate = job.candidates[0]
    assert candidate.date == "2025-06-13"
    assert candidate.amount == Decimal("25.50")
    assert candidate.type == TransactionType.EXPENSE
    assert candidate.description == "RESTAURANT ABC"
    assert candidate.original_amount == Decimal("-25.50")
    assert candidate.category_id == _category_id(db, "Alimentation")


def test_qif_record_becomes_income_candidate(db):
    service = _service(db)
    job = service.start_import(1, Upload("export.qif", b"D2025-06-12\nT2500.00\nPSALAIRE\n^\n"))
    candidate = job.candidates[0]
    assert candidate.date == "2025-06-12"
    assert candidate.amount == Decimal("2500.00")
    assert candidate.type == TransactionType.INCOME
    assert candidate.description == "SALAIRE"
    assert candidate.category_id is None


def test_qif_category_label_is_mapped(db):
    job = _service(db).start_import(1, Upload("statement.qif", (FIXTURES / "statement.qif").read_bytes()))
    assert job.total_rows == 2
    assert job.skipped_rows == 1
    groceries = job.candidates[1]
    assert groceries.category_id == _category_id(db, "Alimentation")
    assert groceries.source_category == "Groceries"
    assert groceries.memo == "Courses de la semaine"


def test_start_import_counts_valid_and_skipped_rows(db):
    job = _service(db).start_import(1, Upload("statement.csv", (FIXTURES / "statement_fr.csv").read_bytes()))
    assert job.total_rows == 4
    assert job.skipped_rows == 1
    assert [c.row_index for c in job.candidates] == [0, 1, 2, 4]
    assert job.candidates[0].description == "RESTAURANT ABC PARIS 11"
    assert job.candidates[1].amount == Decimal("1234.56")
    assert job.candidates[1].category_id == _category_id(db, "Logement")
    assert job.candidates[3].category_id == _category_id(db, "Loisirs")
    assert job.checksum == compute_checksum((FIXTURES / "statement_fr.csv").read_bytes())


def test_rows_missing_fields_or_amount_are_skipped(db):
    content = _csv([
        "Date,Montant,Libellé",
        "2025-06-01,-5.00,OK",
        "2025-06-02,,NO AMOUNT",
        "2025-06-03,abc,BAD AMOUNT",
        "2025-06-04,-3.00,",
    ])
    job = _service(db).start_import(1, Upload("s.csv", content))
    assert job.total_rows == 1
    assert job.skipped_rows == 3


def test_semicolon_file_with_comma_decimals(db):
    job = _service(db).start_import(1, Upload("s.csv", (FIXTURES / "statement_semicolon.csv").read_bytes()))
    assert [c.amount for c in job.candidates] == [Decimal("18.40"), Decimal("60.00")]
    assert job.candidates[0].category_id == _category_id(db, "Santé")
    assert job.candidates[1].category_id == _category_id(db, "Retraits espèces")


def test_lines_ending_with_delimiter_are_kept(db):
    job = _service(db).start_import(
        1, Upload("s.csv", (FIXTURES / "statement_trailing_delimiter.csv").read_bytes()),
    )
    assert job.total_rows == 2
    assert job.skipped_rows == 0
    assert [c.description for c in job.candidates] == ["PHARMACIE", "RETRAIT DAB"]
    assert job.candidates[0].date == "2025-07-01"
    assert job.candidates[1].amount == Decimal("60.00")


def test_unparseable_date_falls_back_with_warning(db):
    report = ParseReport()
    candidate = build_candidate(
        0, {"Date": "someday", "Montant": "-1", "Libellé": "X"},
        FieldResolver(), AutoCategorizer(SqliteCategoryStore(db)), report, today=date(2025, 3, 1),
    )
    assert candidate.date == "2025-03-01"
    assert "someday" in candidate.warnings[0]
    assert report.skipped_count == 0


def test_description_is_sanitized(db):
    content = _csv(["Date,Montant,Libellé", "2025-06-01,-5.00,<b>CAFE</b>   DE LA GARE"])
    job = _service(db).start_import(1, Upload("s.csv", content))
    assert job.candidates[0].description == "CAFE DE LA GARE"


def test_preview_sample_is_capped(db):
    service = _service(db)
    job = service.start_import(1, Upload("big.csv", _generated_csv(25)))
    assert job.total_rows == 25
    assert len(job.preview_sample) == 10
    assert len(service.get_preview(1, job.id)) == 10
    assert service.get_preview(1, job.id)[0].description == "ACHAT 0"


def test_preview_parses_bounded_number_of_rows(db):
    job = _service(db, preview_rows=20).start_import(1, Upload("big.csv", _generated_csv(30)))
    assert job.total_rows == 20
    assert len(job.candidates) == 20


def test_read_candidates_without_limit_reads_everything(db):
    candidates, report = _service(db, preview_rows=20).read_candidates("big.csv", _generated_csv(30))
    assert len(candidates) == 30
    assert report.skipped_count == 0


def test_preview_cap_counts_malformed_lines(db):
    lines = ["Date,Montant,Libellé"]
    lines += [f"2025-06-01,-1.00,BAD,EXTRA{i}" for i in range(4)]
    lines += ["2025-06-02,-2.00,GOOD"]
    lines += [f"2025-06-03,-3.00,BAD,EXTRA{i}" for i in range(10)]
    lines += [f"2025-06-04,-4.00,LATE {i}" for i in range(5)]

    job = _service(db, preview_rows=5, sample_rows=5).start_import(1, Upload("s.csv", _csv(lines)))

    assert job.total_rows == 1
    assert job.skipped_rows == 4
    assert job.candidates[0].description == "GOOD"


def test_unsupported_extension_is_rejected(db):
    with pytest.raises(UnsupportedFormat, match="csv"):
        _service(db).start_import(1, Upload("statement.pdf", b"%PDF-1.4"))
    assert db.execute("SELECT count(*) FROM imports").fetchone()[0] == 0


def test_file_too_large_is_rejected(db):
    with pytest.raises(FileTooLarge):
        _service(db, max_file_size=100).start_import(1, Upload("s.csv", b"x" * 101))
    with pytest.raises(FileTooLarge):
        _service(db).start_import(1, Upload("s.csv", b"", size=10 * 1024 * 1024 + 1))


def test_reader_crash_marks_job_failed(db):
    service = _service(db)
    with pytest.raises(ImportProcessingError):
        service.start_import(1, Upload("broken.xlsx", b"not a zip file"))
    job = service.list_imports(1)[0]
    assert job.status == ImportStatus.FAILED
    assert job.error_log[0].row_index == 0
    assert job.error_log[0].message


# --- confirm ---


def test_confirm_with_one_rejected_row(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(5)))
    rows = [_candidate(i) for i in range(5)]
    rows[2] = _candidate(2, date_="2025-13-45")

    outcome = service.confirm_import(1, job.id, rows)

    assert outcome.status == ImportStatus.COMPLETED
    assert (outcome.imported, outcome.failed) == (4, 1)
    assert len(outcome.errors) == 1
    assert outcome.errors[0].row_index == 3
    stored = service.get_import(1, job.id)
    assert stored.status == ImportStatus.COMPLETED
    assert stored.processed_rows == 5
    assert stored.successful_rows == 4
    assert stored.failed_rows == 1
    assert stored.completed_at is not None
    assert len(SqliteTransactionStore(db).list_by_import(job.id)) == 4


def test_confirm_where_every_row_fails(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(2)))
    outcome = service.confirm_import(1, job.id, [_candidate(0, description=""), _candidate(1, date_="nope")])
    assert outcome.status == ImportStatus.FAILED
    assert (outcome.imported, outcome.failed) == (0, 2)
    assert [e.row_index for e in outcome.errors] == [1, 2]


def test_confirm_with_no_rows_completes(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(1)))
    outcome = service.confirm_import(1, job.id, [])
    assert outcome.status == ImportStatus.COMPLETED
    assert outcome.imported == 0


def test_confirm_twice_raises_and_keeps_counts(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(3)))
    service.confirm_import(1, job.id, job.candidates)

    with pytest.raises(InvalidState):
        service.confirm_import(1, job.id, job.candidates)

    stored = service.get_import(1, job.id)
    assert stored.successful_rows == 3
    assert stored.failed_rows == 0
    assert len(SqliteTransactionStore(db).list_by_import(job.id)) == 3


def test_confirm_while_processing_raises(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(1)))
    assert service.imports.compare_and_set_status(job.id, ImportStatus.PENDING, ImportStatus.PROCESSING)
    with pytest.raises(InvalidState):
        service.confirm_import(1, job.id, job.candidates)


def test_confirm_accepts_edited_rows(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(2)))
    edited = [c.to_dict() for c in job.preview_sample]
    edited[0]["description"] = "ACHAT CORRIGE"
    edited[1] = {"date": "2025-06-02"}

    outcome = service.confirm_import(1, job.id, edited)

    assert (outcome.imported, outcome.failed) == (1, 1)
    assert outcome.errors[0].row_index == 2
    txn_id = SqliteTransactionStore(db).list_by_import(job.id)[0]
    txn = SqliteTransactionStore(db).get(1, txn_id)
    assert txn.description == "ACHAT CORRIGE"
    assert txn.metadata["import_row"] == 0
    assert txn.metadata["original_amount"] == "-1.00"


def test_confirm_sanitizes_edited_rows(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(2)))
    edited = [c.to_dict() for c in job.preview_sample]
    edited[0]["description"] = "<script>alert(1)</script>CAFE"
    edited[0]["memo"] = "<b>note</b>"
    edited[0]["reference"] = "<i></i>"
    edited[1]["description"] = "<img src=x onerror=alert(1)>"

    outcome = service.confirm_import(1, job.id, edited)

    assert (outcome.imported, outcome.failed) == (1, 1)
    assert outcome.errors[0].row_index == 2
    assert "description is empty" in outcome.errors[0].message
    store = SqliteTransactionStore(db)
    txn = store.get(1, store.list_by_import(job.id)[0])
    assert txn.description == "CAFE"
    assert txn.reference is None
    assert txn.metadata["memo"] == "note"


def test_income_rows_are_tagged_with_source(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.qif", b"D2025-06-12\nT2500.00\nPSALAIRE\n^\n"))
    service.confirm_import(1, job.id, job.candidates)
    txn = SqliteTransactionStore(db).get(1, SqliteTransactionStore(db).list_by_import(job.id)[0])
    assert txn.type == TransactionType.INCOME
    assert txn.source == "Bank import"
    assert txn.amount == Decimal("2500.00")


class ExplodingStore(SqliteTransactionStore):
    def create(self, owner_id, fields):
        raise RuntimeError("disk on fire")


def test_unexpected_store_error_fails_job_and_propagates(db):
    service = ImportService(
        SqliteImportStore(db), ExplodingStore(db), AutoCategorizer(SqliteCategoryStore(db)),
    )
    job = service.start_import(1, Upload("s.csv", _generated_csv(1)))
    with pytest.raises(RuntimeError):
        service.confirm_import(1, job.id, job.candidates)
    stored = service.get_import(1, job.id)
    assert stored.status == ImportStatus.FAILED
    assert "disk on fire" in stored.error_log[-1].message


# --- cancel, lookup ---


def test_cancel_soft_deletes_imported_transactions(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(3)))
    service.confirm_import(1, job.id, job.candidates)

    cancelled = service.cancel_import(1, job.id)

    assert cancelled.status == ImportStatus.CANCELLED
    assert service.get_import(1, job.id).status == ImportStatus.CANCELLED
    statuses = {r["status"] for r in db.execute("SELECT status FROM transactions WHERE import_id = ?", (job.id,))}
    assert statuses == {"deleted"}


def test_cancel_pending_import(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(1)))
    assert service.cancel_import(1, job.id).status == ImportStatus.CANCELLED
    with pytest.raises(InvalidState):
        service.confirm_import(1, job.id, job.candidates)


def test_cancel_twice_raises(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(1)))
    service.cancel_import(1, job.id)
    with pytest.raises(InvalidState):
        service.cancel_import(1, job.id)


def test_cancel_processing_import_raises(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(1)))
    service.imports.compare_and_set_status(job.id, ImportStatus.PENDING, ImportStatus.PROCESSING)
    with pytest.raises(InvalidState):
        service.cancel_import(1, job.id)


def test_imports_are_scoped_to_owner(db):
    service = _service(db)
    job = service.start_import(1, Upload("s.csv", _generated_csv(1)))
    with pytest.raises(ImportNotFound):
        service.get_preview(2, job.id)
    with pytest.raises(ImportNotFound):
        service.cancel_import(2, job.id)
    with pytest.raises(ImportNotFound):
        service.confirm_import(1, 9999, [])


def test_list_imports_newest_first(db):
    service = _service(db)
    first = service.start_import(1, Upload("a.csv", _generated_csv(1)))
    second = service.start_import(1, Upload("b.csv", _generated_csv(1)))
    service.start_import(2, Upload("c.csv", _generated_csv(1)))
    assert [j.id for j in service.list_imports(1)] == [second.id, first.id]
    assert len(service.list_imports(1, limit=1)) == 1
