from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterator, Mapping

from tally.errors import InvalidState

RawRow = dict[str, str]


class ImportStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Every legal lifecycle move. Anything absent here raises InvalidState.
IMPORT_TRANSITIONS: dict[ImportStatus, frozenset[ImportStatus]] = {
    ImportStatus.PENDING: frozenset({ImportStatus.PROCESSING, ImportStatus.FAILED, ImportStatus.CANCELLED}),
    ImportStatus.PROCESSING: frozenset({ImportStatus.COMPLETED, ImportStatus.FAILED}),
    ImportStatus.COMPLETED: frozenset({ImportStatus.CANCELLED}),
    ImportStatus.FAILED: frozenset({ImportStatus.CANCELLED}),
    ImportStatus.CANCELLED: frozenset(),
}


class TransactionType(str, Enum):
    EXPENSE = "expense"
    INCOME = "income"


class TransactionStatus(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class ExtractionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Category:
    id: int
    name: str
    slug: str
    category_type: str = "expense"  # income or expense
    keywords: list[str] = field(default_factory=list)
    is_active: bool = True


@dataclass
class RowError:
    row_index: int
    message: str

    def to_dict(self) -> dict:
        return {"row_index": self.row_index, "message": self.message}


@dataclass
class ParseReport:
    """Rows dropped while reading or resolving a statement file."""
    skipped: list[RowError] = field(default_factory=list)
    row_limit: int | None = None  # data lines to read, skipped lines included

    def reached_limit(self, row_index: int) -> bool:
        return self.row_limit is not None and row_index >= self.row_limit

    def skip(self, row_index: int, reason: str) -> None:
        self.skipped.append(RowError(row_index=row_index, message=reason))

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


@dataclass
class CandidateTransaction:
    """A parsed, normalized row that has not been committed yet."""
    date: str  # ISO 8601
    description: str
    amount: Decimal  # always >= 0, sign lives in type/original_amount
    type: TransactionType
    original_amount: Decimal
    row_index: int
    category_id: int | None = None
    operation_type: str | None = None
    reference: str | None = None
    memo: str | None = None
    source_category: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "row_index": self.row_index,
            "date": self.date,
            "description": self.description,
            "amount": str(self.amount),
            "type": self.type.value,
            "category_id": self.category_id,
            "operation_type": self.operation_type,
            "reference": self.reference,
            "memo": self.memo,
            "source_category": self.source_category,
            "original_amount": str(self.original_amount),
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "CandidateTransaction":
        """Rebuild a candidate from a (possibly user-edited) mapping."""
        amount = Decimal(str(data["amount"]))
        return cls(
            date=data["date"],
            description=data["description"],
            amount=amount,
            type=TransactionType(data["type"]),
            original_amount=Decimal(str(data.get("original_amount", amount))),
            row_index=int(data.get("row_index", 0)),
            category_id=data.get("category_id"),
            operation_type=data.get("operation_type"),
            reference=data.get("reference"),
            memo=data.get("memo"),
            source_category=data.get("source_category"),
            warnings=list(data.get("warnings", [])),
        )


@dataclass
class ImportJob:
    id: int | None
    owner_id: int
    file_name: str
    file_type: str
    file_size: int
    status: ImportStatus = ImportStatus.PENDING
    total_rows: int = 0
    processed_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    skipped_rows: int = 0
    preview_sample: list[CandidateTransaction] = field(default_factory=list)
    error_log: list[RowError] = field(default_factory=list)
    checksum: str | None = None
    created_at: str | None = None
    completed_at: str | None = None
    # Rows found by the bounded preview pass. Not persisted.
    candidates: list[CandidateTransaction] = field(default_factory=list, repr=False, compare=False)

    def transition(self, new_status: ImportStatus) -> None:
        if new_status not in IMPORT_TRANSITIONS[self.status]:
            raise InvalidState(
                f"Import {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def finish(self) -> None:
        """Close a processing job from its row counters."""
        self.processed_rows = self.successful_rows + self.failed_rows
        if self.successful_rows == 0 and self.failed_rows > 0:
            self.transition(ImportStatus.FAILED)
        else:
            self.transition(ImportStatus.COMPLETED)
        self.completed_at = datetime.now().isoformat(timespec="seconds")


@dataclass
class ImportOutcome:
    import_id: int
    imported: int
    failed: int
    errors: list[RowError]
    status: ImportStatus


@dataclass
class Upload:
    file_name: str
    content: bytes
    size: int | None = None

    @property
    def byte_size(self) -> int:
        return self.size if self.size is not None else len(self.content)

    @property
    def extension(self) -> str:
        _, dot, ext = self.file_name.rpartition(".")
        return ext.lower() if dot else ""


@dataclass
class Transaction:
    id: int | None
    owner_id: int
    date: str
    description: str
    amount: Decimal
    type: TransactionType
    category_id: int | None = None
    operation_type: str | None = None
    reference: str | None = None
    source: str | None = None
    import_id: int | None = None
    status: TransactionStatus = TransactionStatus.ACTIVE
    metadata: dict = field(default_factory=dict)


@dataclass
class DocumentReference:
    id: str
    name: str
    url: str | None = None
    size: int | None = None
    modified_at: str | None = None


@dataclass
class Extraction:
    confidence: float
    invoice_number: str | None = None
    invoice_date: str | None = None
    amount: Decimal | None = None
    vendor: str | None = None


@dataclass
class Invoice:
    id: int | None
    owner_id: int
    document_id: str
    file_name: str
    file_url: str | None = None
    file_size: int | None = None
    extraction_status: ExtractionStatus = ExtractionStatus.PENDING
    extraction_confidence: float | None = None
    invoice_number: str | None = None
    invoice_date: str | None = None
    invoice_amount: Decimal | None = None
    vendor: str | None = None
    notes: str | None = None


@dataclass
class MatchSuggestion:
    invoice_id: int
    score: float
    reasons: list[str] = field(default_factory=list)


@dataclass
class ReaderInfo:
    """Metadata and row generator for one statement file format."""
    key: str
    name: str
    file_extensions: list[str]
    read: Callable[..., Iterator[tuple[int, RawRow]]]
    version: str = "1.0"
