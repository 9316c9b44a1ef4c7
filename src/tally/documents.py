import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

from tally.errors import InvoiceNotFound
from tally.models import DocumentReference, Extraction
from tally.normalizers import parse_date

logger = logging.getLogger(__name__)

COMMON_VENDORS = {
    "edf": "EDF",
    "orange": "Orange",
    "sfr": "SFR",
    "free": "Free",
    "carrefour": "Carrefour",
    "leclerc": "E.Leclerc",
    "total": "Total",
    "shell": "Shell",
    "amazon": "Amazon",
    "fnac": "FNAC",
}

_DATE_IN_NAME = re.compile(r"(\d{4}-\d{2}-\d{2}|\d{2}[-_.]\d{2}[-_.]\d{4})")
_AMOUNT_IN_NAME = re.compile(r"(\d+[.,]\d{2})(?:\s*(?:eur|€))?", re.IGNORECASE)
_NUMBER_IN_NAME = re.compile(r"(?<![a-z])((?:inv|fac)[-_]?\d[0-9a-z-]*)", re.IGNORECASE)


class LocalDocumentProvider:
    """Documents are files in one directory; the document id is the file name."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, document_id: str) -> Path:
        path = (self.directory / document_id).resolve()
        if self.directory.resolve() not in path.parents or not path.is_file():
            raise InvoiceNotFound(f"Document {document_id!r} not found in {self.directory}")
        return path

    def resolve(self, document_id: str) -> DocumentReference:
        path = self._path(document_id)
        stat = path.stat()
        return DocumentReference(
            id=document_id,
            name=path.name,
            url=path.as_uri(),
            size=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime).isoformat(timespec="seconds"),
        )


class FilenameExtractor:
    """Cheap extraction provider that reads what it can from the file name.

    Meant as a stand-in until a real OCR provider is plugged in, so the
    confidence it reports stays low.
    """

    confidence = 0.3

    def extract(self, document_id: str) -> Extraction:
        name = Path(document_id).stem
        lowered = name.lower()

        vendor = next((label for key, label in COMMON_VENDORS.items() if key in lowered), None)

        invoice_date = None
        date_match = _DATE_IN_NAME.search(name)
        if date_match:
            invoice_date = parse_date(re.sub(r"[_.]", "-", date_match.group(1)))

        amount = None
        without_date = _DATE_IN_NAME.sub(" ", name)
        amount_match = _AMOUNT_IN_NAME.search(without_date)
        if amount_match:
            try:
                amount = Decimal(amount_match.group(1).replace(",", "."))
            except InvalidOperation:
                logger.debug("Ignoring amount-like text %r in %s", amount_match.group(1), document_id)

        number_match = _NUMBER_IN_NAME.search(name)
        invoice_number = number_match.group(1).upper() if number_match else None

        return Extraction(
            confidence=self.confidence,
            invoice_number=invoice_number,
            invoice_date=invoice_date,
            amount=amount,
            vendor=vendor,
        )
