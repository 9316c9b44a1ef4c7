"""Scoring of invoices against a bank transaction.

Three signals are added together: how close the dates are, how close the
amounts are, and how many words the transaction description shares with the
invoice file name and vendor. Each signal contributes a fixed band value, so
the total stays within [0, 1].
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import PurePath

from tally.models import Invoice, MatchSuggestion, Transaction
from tally.normalizers import fold, parse_date
from tally.settings import MatchConfig

logger = logging.getLogger(__name__)

# (max days apart, contribution), checked in order
DATE_BANDS = ((7, 0.3), (30, 0.2), (90, 0.1))
# (max relative difference, contribution), checked in order
AMOUNT_BANDS = ((Decimal("0.05"), 0.4), (Decimal("0.10"), 0.3), (Decimal("0.20"), 0.2))
LEXICAL_STEP = 0.1
LEXICAL_CAP = 0.3

_TOKEN_SPLIT = re.compile(r"[\W_]+")


@dataclass
class SignalScore:
    signal: str
    score: float
    reason: str


def tokenize(text: str | None) -> set[str]:
    if not text:
        return set()
    return {token for token in _TOKEN_SPLIT.split(fold(text)) if token}


def invoice_tokens(invoice: Invoice) -> set[str]:
    """Words of the file name without its extension, plus the vendor."""
    stem = PurePath(invoice.file_name).stem if invoice.file_name else ""
    return tokenize(stem) | tokenize(invoice.vendor)


def date_signal(transaction_date: str, invoice_date: str | None) -> SignalScore | None:
    invoice_iso = parse_date(invoice_date) if invoice_date else None
    if invoice_iso is None:
        return None
    days = abs((date.fromisoformat(transaction_date) - date.fromisoformat(invoice_iso)).days)
    for limit, score in DATE_BANDS:
        if days <= limit:
            return SignalScore("date", score, f"Dates {days} day(s) apart")
    return None


def amount_signal(transaction_amount: Decimal, invoice_amount: Decimal | None) -> SignalScore | None:
    if invoice_amount is None:
        return None
    tx, inv = abs(Decimal(transaction_amount)), abs(Decimal(invoice_amount))
    largest = max(tx, inv)
    if largest == 0:
        return None
    difference = abs(tx - inv)
    ratio = difference / largest
    for limit, score in AMOUNT_BANDS:
        if ratio <= limit:
            return SignalScore("amount", score, f"Amounts differ by {difference:.2f} ({ratio:.1%})")
    return None


def lexical_signal(description: str, invoice: Invoice) -> SignalScore | None:
    common = sorted(tokenize(description) & invoice_tokens(invoice))
    if not common:
        return None
    score = min(LEXICAL_CAP, LEXICAL_STEP * len(common))
    return SignalScore("lexical", score, f"Common words: {', '.join(common[:3])}")


class InvoiceMatcher:
    def __init__(self, config: MatchConfig | None = None):
        self.config = (config or MatchConfig()).validate()

    def signals(self, transaction: Transaction, invoice: Invoice) -> list[SignalScore]:
        """Nonzero signals, in date, amount, lexical order."""
        found = [
            date_signal(transaction.date, invoice.invoice_date),
            amount_signal(transaction.amount, invoice.invoice_amount),
            lexical_signal(transaction.description, invoice),
        ]
        return [s for s in found if s is not None]

    def score(self, transaction: Transaction, invoice: Invoice) -> tuple[float, list[str]]:
        signals = self.signals(transaction, invoice)
        total = round(sum(s.score for s in signals), 4)
        return total, [s.reason for s in signals]

    def suggest(self, transaction: Transaction, invoices: list[Invoice]) -> list[MatchSuggestion]:
        """Rank invoices for a transaction, best first.

        Invoices scoring under the threshold are dropped. Ties keep the order
        the invoices were given in.
        """
        suggestions = []
        for invoice in invoices:
            total, reasons = self.score(transaction, invoice)
            if total < self.config.threshold:
                continue
            suggestions.append(MatchSuggestion(invoice_id=invoice.id, score=total, reasons=reasons))
        suggestions.sort(key=lambda s: s.score, reverse=True)
        logger.debug(
            "Transaction %s: %d of %d invoices above %.2f",
            transaction.id, len(suggestions), len(invoices), self.config.threshold,
        )
        return suggestions[: self.config.max_suggestions]
