"""Collaborator interfaces consumed by the import and invoice services.

The services only see the ``Protocol`` classes below. The ``Sqlite*``
classes implement them on top of the schema in ``tally.db``.
"""

import json
import sqlite3
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Protocol

from tally.errors import StoreError, TransactionRejected
from tally.models import (
    CandidateTransaction,
    Category,
    DocumentReference,
    ExtractionStatus,
    Extraction,
    ImportJob,
    ImportStatus,
    Invoice,
    RowError,
    Transaction,
    TransactionStatus,
    TransactionType,
)


class TransactionStore(Protocol):
    def create(self, owner_id: int, fields: dict) -> int: ...
    def get(self, owner_id: int, transaction_id: int) -> Transaction | None: ...
    def soft_delete(self, transaction_id: int, owner_id: int) -> None: ...
    def list_by_import(self, import_id: int) -> list[int]: ...
    def list_uncategorized_expenses(self, owner_id: int) -> list[Transaction]: ...
    def set_category(self, owner_id: int, transaction_id: int, category_id: int) -> None: ...


class CategoryStore(Protocol):
    def list_active(self) -> list[Category]: ...
    def get_by_name(self, name: str) -> Category | None: ...


class ImportStore(Protocol):
    def create(self, job: ImportJob) -> int: ...
    def get(self, owner_id: int, import_id: int) -> ImportJob | None: ...
    def save(self, job: ImportJob) -> None: ...
    def compare_and_set_status(self, import_id: int, expected: ImportStatus, new: ImportStatus) -> bool: ...
    def list_for_owner(self, owner_id: int, limit: int = 20) -> list[ImportJob]: ...


class InvoiceStore(Protocol):
    def create(self, invoice: Invoice) -> int: ...
    def get(self, owner_id: int, invoice_id: int) -> Invoice | None: ...
    def get_by_document(self, owner_id: int, document_id: str) -> Invoice | None: ...
    def save(self, invoice: Invoice) -> None: ...
    def list_for_owner(self, owner_id: int) -> list[Invoice]: ...
    def list_unlinked(self, owner_id: int) -> list[Invoice]: ...
    def link(self, transaction_id: int, invoice_id: int, match_type: str, confidence: float) -> int: ...
    def unlink(self, transaction_id: int, invoice_id: int) -> bool: ...
    def verify(self, transaction_id: int, invoice_id: int, owner_id: int) -> bool: ...
    def linked_invoices(self, transaction_id: int) -> list[Invoice]: ...
    def delete(self, owner_id: int, invoice_id: int) -> bool: ...


class DocumentProvider(Protocol):
    def resolve(self, document_id: str) -> DocumentReference: ...


class ExtractionProvider(Protocol):
    def extract(self, document_id: str) -> Extraction: ...


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _decimal(value) -> Decimal | None:
    return Decimal(value) if value is not None else None


def validate_transaction_fields(fields: dict) -> None:
    """Reject a transaction the way the store's write path does."""
    try:
        date.fromisoformat(str(fields.get("date", "")))
    except ValueError:
        raise TransactionRejected(f"Invalid date: {fields.get('date')!r}") from None
    if not str(fields.get("description") or "").strip():
        raise TransactionRejected("Description is required")
    try:
        amount = Decimal(str(fields.get("amount")))
    except InvalidOperation:
        raise TransactionRejected(f"Invalid amount: {fields.get('amount')!r}") from None
    if not amount.is_finite() or amount < 0:
        raise TransactionRejected(f"Amount must be a non-negative number, got {fields.get('amount')!r}")
    if fields.get("type") not in {t.value for t in TransactionType}:
        raise TransactionRejected(f"Invalid transaction type: {fields.get('type')!r}")


class SqliteTransactionStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def create(self, owner_id: int, fields: dict) -> int:
        validate_transaction_fields(fields)
        try:
            cursor = self.conn.execute(
                "INSERT INTO transactions (owner_id, date, description, amount, type, category_id, source, "
                "operation_type, reference, import_id, metadata) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    owner_id,
                    fields["date"],
                    fields["description"],
                    str(fields["amount"]),
                    fields["type"],
                    fields.get("category_id"),
                    fields.get("source"),
                    fields.get("operation_type"),
                    fields.get("reference"),
                    fields.get("import_id"),
                    json.dumps(fields.get("metadata") or {}),
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise TransactionRejected(str(e)) from e
        return cursor.lastrowid

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            owner_id=row["owner_id"],
            date=row["date"],
            description=row["description"],
            amount=Decimal(row["amount"]),
            type=TransactionType(row["type"]),
            category_id=row["category_id"],
            operation_type=row["operation_type"],
            reference=row["reference"],
            source=row["source"],
            import_id=row["import_id"],
            status=TransactionStatus(row["status"]),
            metadata=json.loads(row["metadata"] or "{}"),
        )

    def get(self, owner_id: int, transaction_id: int) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ? AND owner_id = ?", (transaction_id, owner_id)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def soft_delete(self, transaction_id: int, owner_id: int) -> None:
        self.conn.execute(
            "UPDATE transactions SET status = 'deleted' WHERE id = ? AND owner_id = ?",
            (transaction_id, owner_id),
        )
        self.conn.commit()

    def list_by_import(self, import_id: int) -> list[int]:
        rows = self.conn.execute(
            "SELECT id FROM transactions WHERE import_id = ? AND status = 'active' ORDER BY id", (import_id,)
        ).fetchall()
        return [row["id"] for row in rows]

    def list_uncategorized_expenses(self, owner_id: int) -> list[Transaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE owner_id = ? AND category_id IS NULL "
            "AND type = 'expense' AND status = 'active' ORDER BY date, id",
            (owner_id,),
        ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def list_for_owner(self, owner_id: int, limit: int = 50) -> list[Transaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE owner_id = ? AND status = 'active' "
            "ORDER BY date DESC, id DESC LIMIT ?",
            (owner_id, limit),
        ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def set_category(self, owner_id: int, transaction_id: int, category_id: int) -> None:
        self.conn.execute(
            "UPDATE transactions SET category_id = ? WHERE id = ? AND owner_id = ?",
            (category_id, transaction_id, owner_id),
        )
        self.conn.commit()


class SqliteCategoryStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _row_to_category(row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            category_type=row["category_type"],
            keywords=json.loads(row["keywords"] or "[]"),
            is_active=bool(row["is_active"]),
        )

    def list_active(self) -> list[Category]:
        rows = self.conn.execute(
            "SELECT * FROM categories WHERE is_active = 1 ORDER BY sort_order, id"
        ).fetchall()
        return [self._row_to_category(row) for row in rows]

    def get_by_name(self, name: str) -> Category | None:
        row = self.conn.execute(
            "SELECT * FROM categories WHERE name = ? AND is_active = 1", (name,)
        ).fetchone()
        return self._row_to_category(row) if row else None

    def add(self, name: str, slug: str, category_type: str = "expense", keywords: list[str] | None = None) -> int:
        existing = self.conn.execute("SELECT id FROM categories WHERE slug = ?", (slug,)).fetchone()
        if existing is not None:
            return existing["id"]
        order = self.conn.execute("SELECT COALESCE(MAX(sort_order), -1) + 1 FROM categories").fetchone()[0]
        cursor = self.conn.execute(
            "INSERT INTO categories (name, slug, category_type, keywords, sort_order) VALUES (?, ?, ?, ?, ?)",
            (name, slug, category_type, json.dumps(keywords or []), order),
        )
        self.conn.commit()
        return cursor.lastrowid


class SqliteImportStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> ImportJob:
        return ImportJob(
            id=row["id"],
            owner_id=row["owner_id"],
            file_name=row["file_name"],
            file_type=row["file_type"],
            file_size=row["file_size"],
            status=ImportStatus(row["status"]),
            total_rows=row["total_rows"],
            processed_rows=row["processed_rows"],
            successful_rows=row["successful_rows"],
            failed_rows=row["failed_rows"],
            skipped_rows=row["skipped_rows"],
            preview_sample=[
                CandidateTransaction.from_dict(item) for item in json.loads(row["preview_data"] or "[]")
            ],
            error_log=[RowError(**item) for item in json.loads(row["error_log"] or "[]")],
            checksum=row["checksum"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    def create(self, job: ImportJob) -> int:
        cursor = self.conn.execute(
            "INSERT INTO imports (owner_id, file_name, file_type, file_size, checksum, status, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (job.owner_id, job.file_name, job.file_type, job.file_size, job.checksum,
             job.status.value, job.created_at or _now()),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get(self, owner_id: int, import_id: int) -> ImportJob | None:
        row = self.conn.execute(
            "SELECT * FROM imports WHERE id = ? AND owner_id = ?", (import_id, owner_id)
        ).fetchone()
        return self._row_to_job(row) if row else None

    def save(self, job: ImportJob) -> None:
        try:
            self.conn.execute(
                "UPDATE imports SET status = ?, total_rows = ?, processed_rows = ?, successful_rows = ?, "
                "failed_rows = ?, skipped_rows = ?, preview_data = ?, error_log = ?, completed_at = ? "
                "WHERE id = ?",
                (
                    job.status.value,
                    job.total_rows,
                    job.processed_rows,
                    job.successful_rows,
                    job.failed_rows,
                    job.skipped_rows,
                    json.dumps([c.to_dict() for c in job.preview_sample]),
                    json.dumps([e.to_dict() for e in job.error_log]) if job.error_log else None,
                    job.completed_at,
                    job.id,
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Could not save import {job.id}: {e}") from e

    def compare_and_set_status(self, import_id: int, expected: ImportStatus, new: ImportStatus) -> bool:
        cursor = self.conn.execute(
            "UPDATE imports SET status = ? WHERE id = ? AND status = ?",
            (new.value, import_id, expected.value),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def list_for_owner(self, owner_id: int, limit: int = 20) -> list[ImportJob]:
        rows = self.conn.execute(
            "SELECT * FROM imports WHERE owner_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (owner_id, limit),
        ).fetchall()
        return [self._row_to_job(row) for row in rows]


class SqliteInvoiceStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _row_to_invoice(row: sqlite3.Row) -> Invoice:
        return Invoice(
            id=row["id"],
            owner_id=row["owner_id"],
            document_id=row["document_id"],
            file_name=row["file_name"],
            file_url=row["file_url"],
            file_size=row["file_size"],
            extraction_status=ExtractionStatus(row["extraction_status"]),
            extraction_confidence=row["extraction_confidence"],
            invoice_number=row["invoice_number"],
            invoice_date=row["invoice_date"],
            invoice_amount=_decimal(row["invoice_amount"]),
            vendor=row["vendor"],
            notes=row["notes"],
        )

    def create(self, invoice: Invoice) -> int:
        cursor = self.conn.execute(
            "INSERT INTO invoices (owner_id, document_id, file_name, file_url, file_size, extraction_status) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (invoice.owner_id, invoice.document_id, invoice.file_name, invoice.file_url,
             invoice.file_size, invoice.extraction_status.value),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get(self, owner_id: int, invoice_id: int) -> Invoice | None:
        row = self.conn.execute(
            "SELECT * FROM invoices WHERE id = ? AND owner_id = ?", (invoice_id, owner_id)
        ).fetchone()
        return self._row_to_invoice(row) if row else None

    def get_by_document(self, owner_id: int, document_id: str) -> Invoice | None:
        row = self.conn.execute(
            "SELECT * FROM invoices WHERE document_id = ? AND owner_id = ?", (document_id, owner_id)
        ).fetchone()
        return self._row_to_invoice(row) if row else None

    def save(self, invoice: Invoice) -> None:
        self.conn.execute(
            "UPDATE invoices SET extraction_status = ?, extraction_confidence = ?, invoice_number = ?, "
            "invoice_date = ?, invoice_amount = ?, vendor = ?, notes = ? WHERE id = ?",
            (
                invoice.extraction_status.value,
                invoice.extraction_confidence,
                invoice.invoice_number,
                invoice.invoice_date,
                str(invoice.invoice_amount) if invoice.invoice_amount is not None else None,
                invoice.vendor,
                invoice.notes,
                invoice.id,
            ),
        )
        self.conn.commit()

    def list_for_owner(self, owner_id: int) -> list[Invoice]:
        rows = self.conn.execute(
            "SELECT * FROM invoices WHERE owner_id = ? ORDER BY created_at DESC, id DESC", (owner_id,)
        ).fetchall()
        return [self._row_to_invoice(row) for row in rows]

    def list_unlinked(self, owner_id: int) -> list[Invoice]:
        rows = self.conn.execute(
            "SELECT i.* FROM invoices i WHERE i.owner_id = ? AND NOT EXISTS ("
            "SELECT 1 FROM transaction_invoices ti JOIN transactions t ON ti.transaction_id = t.id "
            "WHERE ti.invoice_id = i.id AND t.status = 'active') ORDER BY i.id",
            (owner_id,),
        ).fetchall()
        return [self._row_to_invoice(row) for row in rows]

    def link(self, transaction_id: int, invoice_id: int, match_type: str, confidence: float) -> int:
        existing = self.conn.execute(
            "SELECT id FROM transaction_invoices WHERE transaction_id = ? AND invoice_id = ?",
            (transaction_id, invoice_id),
        ).fetchone()
        if existing is not None:
            return existing["id"]
        try:
            cursor = self.conn.execute(
                "INSERT INTO transaction_invoices (transaction_id, invoice_id, match_type, match_confidence) "
                "VALUES (?, ?, ?, ?)",
                (transaction_id, invoice_id, match_type, confidence),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Could not link invoice {invoice_id} to transaction {transaction_id}: {e}") from e
        return cursor.lastrowid

    def unlink(self, transaction_id: int, invoice_id: int) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM transaction_invoices WHERE transaction_id = ? AND invoice_id = ?",
            (transaction_id, invoice_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def verify(self, transaction_id: int, invoice_id: int, owner_id: int) -> bool:
        cursor = self.conn.execute(
            "UPDATE transaction_invoices SET verified_by = ?, verified_at = ? "
            "WHERE transaction_id = ? AND invoice_id = ?",
            (owner_id, _now(), transaction_id, invoice_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def linked_invoices(self, transaction_id: int) -> list[Invoice]:
        rows = self.conn.execute(
            "SELECT i.* FROM invoices i JOIN transaction_invoices ti ON i.id = ti.invoice_id "
            "WHERE ti.transaction_id = ? ORDER BY ti.created_at DESC, ti.id DESC",
            (transaction_id,),
        ).fetchall()
        return [self._row_to_invoice(row) for row in rows]

    def delete(self, owner_id: int, invoice_id: int) -> bool:
        """Remove an invoice and its links. Returns False if it was not found."""
        if self.get(owner_id, invoice_id) is None:
            return False
        self.conn.execute("DELETE FROM transaction_invoices WHERE invoice_id = ?", (invoice_id,))
        self.conn.execute("DELETE FROM invoices WHERE id = ? AND owner_id = ?", (invoice_id, owner_id))
        self.conn.commit()
        return True
