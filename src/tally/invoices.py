import logging

from tally.errors import InvalidState, InvoiceNotFound, TransactionNotFound
from tally.matcher import InvoiceMatcher
from tally.models import ExtractionStatus, Invoice, MatchSuggestion, Transaction
from tally.normalizers import parse_date
from tally.stores import DocumentProvider, ExtractionProvider, InvoiceStore, TransactionStore

logger = logging.getLogger(__name__)

MATCH_CONFIDENCE = {
    "manual": 1.0,
    "suggested": 0.8,
    "automatic": 0.8,
}


class InvoiceService:
    def __init__(
        self,
        invoices: InvoiceStore,
        transactions: TransactionStore,
        documents: DocumentProvider,
        extractor: ExtractionProvider,
        matcher: InvoiceMatcher | None = None,
    ):
        self.invoices = invoices
        self.transactions = transactions
        self.documents = documents
        self.extractor = extractor
        self.matcher = matcher or InvoiceMatcher()

    def _get_invoice(self, owner_id: int, invoice_id: int) -> Invoice:
        invoice = self.invoices.get(owner_id, invoice_id)
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_id} not found")
        return invoice

    def _get_transaction(self, owner_id: int, transaction_id: int) -> Transaction:
        transaction = self.transactions.get(owner_id, transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return transaction

    def register_document(self, owner_id: int, document_id: str) -> Invoice:
        """Create the invoice record for a document, or return the existing one."""
        existing = self.invoices.get_by_document(owner_id, document_id)
        if existing is not None:
            return existing
        ref = self.documents.resolve(document_id)
        invoice = Invoice(
            id=None,
            owner_id=owner_id,
            document_id=ref.id,
            file_name=ref.name,
            file_url=ref.url,
            file_size=ref.size,
        )
        invoice.id = self.invoices.create(invoice)
        logger.info("Invoice %d registered for document %s", invoice.id, document_id)
        return invoice

    def extract(self, owner_id: int, invoice_id: int) -> Invoice:
        """Run the extraction provider and store what it found.

        On failure the invoice is left ``failed`` with the error in its notes
        and the provider's exception is raised again.
        """
        invoice = self._get_invoice(owner_id, invoice_id)
        if invoice.extraction_status == ExtractionStatus.PROCESSING:
            raise InvalidState(f"Invoice {invoice_id} is already being extracted")
        invoice.extraction_status = ExtractionStatus.PROCESSING
        self.invoices.save(invoice)

        try:
            extraction = self.extractor.extract(invoice.document_id)
        except Exception as e:
            invoice.extraction_status = ExtractionStatus.FAILED
            invoice.notes = f"Extraction failed: {e}"
            self.invoices.save(invoice)
            logger.warning("Extraction failed for invoice %d: %s", invoice.id, e)
            raise

        invoice.extraction_status = ExtractionStatus.COMPLETED
        invoice.extraction_confidence = extraction.confidence
        invoice.invoice_number = extraction.invoice_number
        invoice.invoice_date = parse_date(extraction.invoice_date)
        invoice.invoice_amount = extraction.amount
        invoice.vendor = extraction.vendor
        invoice.notes = None
        self.invoices.save(invoice)
        logger.info("Invoice %d extracted (confidence %.2f)", invoice.id, extraction.confidence)
        return invoice

    def list_invoices(self, owner_id: int) -> list[Invoice]:
        return self.invoices.list_for_owner(owner_id)

    def suggest_invoices(self, owner_id: int, transaction_id: int) -> list[MatchSuggestion]:
        transaction = self._get_transaction(owner_id, transaction_id)
        return self.matcher.suggest(transaction, self.invoices.list_unlinked(owner_id))

    def link(self, owner_id: int, transaction_id: int, invoice_id: int, match_type: str = "manual") -> int:
        if match_type not in MATCH_CONFIDENCE:
            raise ValueError(f"Unknown match type: {match_type!r}")
        self._get_transaction(owner_id, transaction_id)
        self._get_invoice(owner_id, invoice_id)
        link_id = self.invoices.link(transaction_id, invoice_id, match_type, MATCH_CONFIDENCE[match_type])
        logger.info("Invoice %d linked to transaction %d (%s)", invoice_id, transaction_id, match_type)
        return link_id

    def unlink(self, owner_id: int, transaction_id: int, invoice_id: int) -> bool:
        self._get_transaction(owner_id, transaction_id)
        self._get_invoice(owner_id, invoice_id)
        return self.invoices.unlink(transaction_id, invoice_id)

    def verify(self, owner_id: int, transaction_id: int, invoice_id: int) -> bool:
        self._get_transaction(owner_id, transaction_id)
        self._get_invoice(owner_id, invoice_id)
        return self.invoices.verify(transaction_id, invoice_id, owner_id)

    def linked_invoices(self, owner_id: int, transaction_id: int) -> list[Invoice]:
        self._get_transaction(owner_id, transaction_id)
        return self.invoices.linked_invoices(transaction_id)

    def delete_invoice(self, owner_id: int, invoice_id: int) -> None:
        """Delete an invoice record and its links. The document itself is kept."""
        self._get_invoice(owner_id, invoice_id)
        self.invoices.delete(owner_id, invoice_id)
        logger.info("Invoice %d deleted", invoice_id)
