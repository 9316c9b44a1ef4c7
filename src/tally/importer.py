import hashlib
import logging
from dataclasses import replace
from datetime import date, datetime
from decimal import InvalidOperation
from pathlib import PurePath
from typing import Iterable, Mapping

from tally.categorizer import AutoCategorizer
from tally.errors import (
    FileTooLarge,
    ImportNotFound,
    ImportProcessingError,
    InvalidAmount,
    InvalidState,
    StoreError,
    UnsupportedFormat,
)
from tally.models import (
    CandidateTransaction,
    ImportJob,
    ImportOutcome,
    ImportStatus,
    ParseReport,
    RawRow,
    ReaderInfo,
    RowError,
    TransactionType,
    Upload,
)
from tally.normalizers import normalize_date, parse_amount, sanitize_text, split_amount
from tally.readers import RowStream
from tally.registry import ReaderRegistry, registry
from tally.resolver import FieldResolver
from tally.settings import ImportConfig
from tally.stores import ImportStore, TransactionStore

logger = logging.getLogger(__name__)

INCOME_SOURCE = "Bank import"


def compute_checksum(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def build_candidate(
    row_index: int,
    raw: RawRow,
    resolver: FieldResolver,
    categorizer: AutoCategorizer,
    report: ParseReport,
    today: date | None = None,
) -> CandidateTransaction | None:
    """Turn one raw row into a candidate, or record why it was dropped."""
    fields = resolver.resolve(raw)
    if not fields.is_complete:
        missing = ", ".join(fields.missing())
        logger.warning("Row %d skipped: missing %s", row_index, missing)
        report.skip(row_index, f"missing {missing}")
        return None
    try:
        signed = parse_amount(fields.amount)
    except InvalidAmount as e:
        logger.warning("Row %d skipped: %s", row_index, e)
        report.skip(row_index, str(e))
        return None
    description = sanitize_text(fields.description)
    if not description:
        report.skip(row_index, "missing description")
        return None

    iso_date, fell_back = normalize_date(fields.date, today=today)
    warnings = []
    if fell_back:
        warnings.append(f"unparseable date {fields.date!r} replaced with {iso_date}")

    amount, kind = split_amount(signed)
    operation_type = sanitize_text(fields.operation_type) or None
    category_id = None
    if kind == TransactionType.EXPENSE:
        if fields.category:
            category_id = categorizer.categorize_label(fields.category, operation_type, description, signed)
        else:
            category_id = categorizer.categorize(operation_type, description, signed)

    return CandidateTransaction(
        date=iso_date,
        description=description,
        amount=amount,
        type=kind,
        original_amount=signed,
        row_index=row_index,
        category_id=category_id,
        operation_type=operation_type,
        reference=sanitize_text(fields.reference) or None,
        memo=sanitize_text(fields.memo) or None,
        source_category=sanitize_text(fields.category) or None,
        warnings=warnings,
    )


def parse_candidates(
    rows: Iterable[tuple[int, RawRow]],
    resolver: FieldResolver,
    categorizer: AutoCategorizer,
    report: ParseReport,
    limit: int | None = None,
    today: date | None = None,
) -> list[CandidateTransaction]:
    """Build candidates from reader rows. ``limit`` caps data lines by row index."""
    candidates = []
    for row_index, raw in rows:
        if limit is not None and row_index >= limit:
            break
        candidate = build_candidate(row_index, raw, resolver, categorizer, report, today=today)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def clean_candidate(candidate: CandidateTransaction) -> CandidateTransaction:
    """Re-apply text normalization to a row that may have been edited."""
    description = sanitize_text(candidate.description)
    if not description:
        raise ValueError("description is empty")
    return replace(
        candidate,
        description=description,
        operation_type=sanitize_text(candidate.operation_type) or None,
        reference=sanitize_text(candidate.reference) or None,
        memo=sanitize_text(candidate.memo) or None,
        source_category=sanitize_text(candidate.source_category) or None,
    )


class ImportService:
    """Owns the lifecycle of import jobs, from upload to commit or cancel."""

    def __init__(
        self,
        imports: ImportStore,
        transactions: TransactionStore,
        categorizer: AutoCategorizer,
        config: ImportConfig | None = None,
        resolver: FieldResolver | None = None,
        readers: ReaderRegistry = registry,
    ):
        self.imports = imports
        self.transactions = transactions
        self.categorizer = categorizer
        self.config = (config or ImportConfig()).validate()
        self.resolver = resolver or FieldResolver()
        self.readers = readers

    def validate_upload(self, upload: Upload) -> ReaderInfo:
        if upload.extension not in self.config.supported_extensions:
            raise UnsupportedFormat(
                f"Unsupported file type '{upload.extension}'. "
                f"Accepted types: {', '.join(self.config.supported_extensions)}"
            )
        info = self.readers.get_for_extension(upload.extension)
        if upload.byte_size > self.config.max_file_size:
            limit_mb = self.config.max_file_size / (1024 * 1024)
            raise FileTooLarge(f"{upload.file_name} is too large (max {limit_mb:g}MB)")
        return info

    def read_candidates(
        self, file_name: str, content: bytes, limit: int | None = None,
    ) -> tuple[list[CandidateTransaction], ParseReport]:
        """Parse a file into candidates. ``limit`` caps the data lines read."""
        stream = RowStream(self.readers.get_for_file(file_name), content, limit=limit)
        report = ParseReport()
        rows = iter(stream)
        candidates = parse_candidates(rows, self.resolver, self.categorizer, report, limit=limit)
        report.skipped = stream.report.skipped + report.skipped
        return candidates, report

    def start_import(self, owner_id: int, upload: Upload) -> ImportJob:
        self.validate_upload(upload)
        job = ImportJob(
            id=None,
            owner_id=owner_id,
            file_name=PurePath(upload.file_name).name,
            file_type=upload.extension,
            file_size=upload.byte_size,
            checksum=compute_checksum(upload.content),
            created_at=datetime.now().isoformat(timespec="seconds"),
        )
        job.id = self.imports.create(job)
        logger.info("Import %d created for %s (%s)", job.id, job.file_name, job.file_type)

        try:
            candidates, report = self.read_candidates(
                upload.file_name, upload.content, limit=self.config.preview_rows,
            )
        except Exception as e:
            job.transition(ImportStatus.FAILED)
            job.error_log = [RowError(row_index=0, message=str(e))]
            self.imports.save(job)
            raise ImportProcessingError(f"Could not read {job.file_name}: {e}") from e

        job.total_rows = len(candidates)
        job.skipped_rows = report.skipped_count
        job.preview_sample = candidates[: self.config.sample_rows]
        self.imports.save(job)
        job.candidates = candidates
        logger.info(
            "Import %d preview: %d rows detected, %d skipped", job.id, job.total_rows, job.skipped_rows,
        )
        return job

    def get_import(self, owner_id: int, import_id: int) -> ImportJob:
        job = self.imports.get(owner_id, import_id)
        if job is None:
            raise ImportNotFound(f"Import {import_id} not found")
        return job

    def get_preview(self, owner_id: int, import_id: int) -> list[CandidateTransaction]:
        return self.get_import(owner_id, import_id).preview_sample

    def list_imports(self, owner_id: int, limit: int = 20) -> list[ImportJob]:
        return self.imports.list_for_owner(owner_id, limit)

    def _transaction_fields(self, job: ImportJob, candidate: CandidateTransaction, position: int) -> dict:
        metadata = {
            "import_row": candidate.row_index if candidate.row_index is not None else position,
            "original_amount": str(candidate.original_amount),
        }
        if candidate.memo:
            metadata["memo"] = candidate.memo
        if candidate.warnings:
            metadata["warnings"] = list(candidate.warnings)
        return {
            "date": candidate.date,
            "description": candidate.description,
            "amount": candidate.amount,
            "type": candidate.type.value,
            "category_id": candidate.category_id,
            "source": INCOME_SOURCE if candidate.type == TransactionType.INCOME else None,
            "operation_type": candidate.operation_type,
            "reference": candidate.reference,
            "import_id": job.id,
            "metadata": metadata,
        }

    def _record_failure(self, job: ImportJob, position: int, message: str) -> None:
        logger.warning("Import %d row %d failed: %s", job.id, position, message)
        job.failed_rows += 1
        job.error_log.append(RowError(row_index=position, message=message))

    def confirm_import(
        self,
        owner_id: int,
        import_id: int,
        rows: Iterable[CandidateTransaction | Mapping],
    ) -> ImportOutcome:
        """Commit the reviewed rows of a pending import.

        Each row is committed on its own; a rejected row is logged in the
        job's error log and the batch carries on. Rows are numbered from 1
        in the order given.
        """
        job = self.get_import(owner_id, import_id)
        if job.status != ImportStatus.PENDING:
            raise InvalidState(f"Import {import_id} has already been processed ({job.status.value})")
        if not self.imports.compare_and_set_status(job.id, ImportStatus.PENDING, ImportStatus.PROCESSING):
            raise InvalidState(f"Import {import_id} is already being processed")
        job.transition(ImportStatus.PROCESSING)
        logger.info("Import %d processing", job.id)

        position = 0
        try:
            for position, row in enumerate(rows, start=1):
                try:
                    candidate = row if isinstance(row, CandidateTransaction) else CandidateTransaction.from_dict(row)
                    candidate = clean_candidate(candidate)
                except (KeyError, TypeError, ValueError, InvalidOperation) as e:
                    self._record_failure(job, position, f"invalid row: {e}")
                    continue
                try:
                    self.transactions.create(owner_id, self._transaction_fields(job, candidate, position))
                except StoreError as e:
                    self._record_failure(job, position, str(e))
                    continue
                job.successful_rows += 1
        except Exception as e:
            job.error_log.append(RowError(row_index=position, message=f"batch aborted: {e}"))
            job.processed_rows = job.successful_rows + job.failed_rows
            job.transition(ImportStatus.FAILED)
            job.completed_at = datetime.now().isoformat(timespec="seconds")
            self.imports.save(job)
            raise

        job.finish()
        self.imports.save(job)
        logger.info(
            "Import %d %s: %d imported, %d failed",
            job.id, job.status.value, job.successful_rows, job.failed_rows,
        )
        return ImportOutcome(
            import_id=job.id,
            imported=job.successful_rows,
            failed=job.failed_rows,
            errors=list(job.error_log),
            status=job.status,
        )

    def cancel_import(self, owner_id: int, import_id: int) -> ImportJob:
        """Cancel an import and withdraw the transactions it created."""
        job = self.get_import(owner_id, import_id)
        previous = job.status
        job.transition(ImportStatus.CANCELLED)
        if not self.imports.compare_and_set_status(job.id, previous, ImportStatus.CANCELLED):
            raise InvalidState(f"Import {import_id} changed state while cancelling")
        withdrawn = 0
        for transaction_id in self.transactions.list_by_import(job.id):
            self.transactions.soft_delete(transaction_id, owner_id)
            withdrawn += 1
        logger.info("Import %d cancelled, %d transactions withdrawn", job.id, withdrawn)
        return job
