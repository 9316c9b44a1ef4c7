from decimal import Decimal

import pytest

from tally.matcher import InvoiceMatcher, amount_signal, date_signal, invoice_tokens, tokenize
from tally.models import Invoice, Transaction, TransactionType
from tally.settings import MatchConfig


def _txn(date="2025-06-16", amount="100.00", description="Achat restaurant") -> Transaction:
    return Transaction(
        id=1, owner_id=1, date=date, description=description,
        amount=Decimal(amount), type=TransactionType.EXPENSE,
    )


def _invoice(invoice_id=1, file_name="facture_restaurant.pdf", invoice_date="2025-06-16",
             amount="100.00", vendor=None) -> Invoice:
    return Invoice(
        id=invoice_id, owner_id=1, document_id=file_name, file_name=file_name,
        invoice_date=invoice_date, invoice_amount=Decimal(amount) if amount is not None else None,
        vendor=vendor,
    )


def test_restaurant_invoice_scores_on_every_signal():
    score, reasons = InvoiceMatcher().score(_txn(), _invoice())
    assert score >= 0.7
    assert score == pytest.approx(0.8)
    assert len(reasons) == 3
    assert reasons[0].startswith("Dates")
    assert reasons[1].startswith("Amounts")
    assert "restaurant" in reasons[2]


def test_tokenize_splits_on_punctuation_and_underscores():
    assert tokenize("Achat RESTAURANT-Paris_11") == {"achat", "restaurant", "paris", "11"}
    assert tokenize(None) == set()


def test_invoice_tokens_drop_extension_and_add_vendor():
    assert invoice_tokens(_invoice(file_name="edf_2025.pdf", vendor="EDF Énergie")) == {"edf", "2025", "energie"}


@pytest.mark.parametrize("days,expected", [(0, 0.3), (7, 0.3), (8, 0.2), (30, 0.2), (31, 0.1), (90, 0.1)])
def test_date_bands(days, expected):
    from datetime import date, timedelta

    invoice_date = (date(2025, 6, 16) - timedelta(days=days)).isoformat()
    assert date_signal("2025-06-16", invoice_date).score == expected


def test_date_signal_absent_or_far():
    assert date_signal("2025-06-16", None) is None
    assert date_signal("2025-06-16", "2025-01-01") is None
    assert date_signal("2025-06-16", "garbage") is None


def test_date_signal_accepts_other_formats():
    assert date_signal("2025-06-16", "15/06/2025").score == 0.3


@pytest.mark.parametrize("invoice_amount,expected", [
    ("100", 0.4), ("95", 0.4), ("91", 0.3), ("90", 0.3), ("85", 0.2), ("80", 0.2),
])
def test_amount_bands(invoice_amount, expected):
    assert amount_signal(Decimal("100"), Decimal(invoice_amount)).score == expected


def test_amount_signal_absent_or_far():
    assert amount_signal(Decimal("100"), None) is None
    assert amount_signal(Decimal("100"), Decimal("50")) is None
    assert amount_signal(Decimal("0"), Decimal("0")) is None


def test_score_is_monotonic_in_date_distance():
    matcher = InvoiceMatcher()
    scores = [
        matcher.score(_txn(), _invoice(invoice_date=d))[0]
        for d in ("2025-06-16", "2025-06-01", "2025-04-01", "2024-01-01")
    ]
    assert scores == sorted(scores, reverse=True)


def test_score_is_monotonic_in_amount_distance():
    matcher = InvoiceMatcher()
    scores = [matcher.score(_txn(), _invoice(amount=a))[0] for a in ("100", "92", "83", "10")]
    assert scores == sorted(scores, reverse=True)


def test_lexical_signal_is_capped():
    txn = _txn(description="edf gaz electricite facture juin", amount="1", date="2020-01-01")
    score, reasons = InvoiceMatcher().score(txn, _invoice(file_name="edf_gaz_electricite_facture_juin.pdf"))
    assert score == pytest.approx(0.3)
    assert len(reasons) == 1


def test_missing_fields_score_zero():
    score, reasons = InvoiceMatcher().score(
        _txn(description="VIREMENT"), _invoice(file_name="scan.pdf", invoice_date=None, amount=None),
    )
    assert score == 0
    assert reasons == []


def test_suggest_drops_low_scores():
    matcher = InvoiceMatcher()
    weak = _invoice(invoice_id=2, file_name="scan.pdf", invoice_date="2025-05-10", amount="1000")
    assert matcher.suggest(_txn(), [weak]) == []


def test_suggest_sorts_by_score_and_truncates():
    matcher = InvoiceMatcher()
    invoices = [_invoice(invoice_id=i, file_name=f"doc{i}.pdf", amount=str(100 + i)) for i in range(1, 8)]
    invoices.append(_invoice(invoice_id=99))
    suggestions = matcher.suggest(_txn(), invoices)
    assert len(suggestions) == 5
    assert suggestions[0].invoice_id == 99
    assert [s.score for s in suggestions] == sorted((s.score for s in suggestions), reverse=True)


def test_suggest_keeps_input_order_for_ties():
    matcher = InvoiceMatcher()
    invoices = [_invoice(invoice_id=i, file_name=f"doc{i}.pdf") for i in (5, 3, 8)]
    assert [s.invoice_id for s in matcher.suggest(_txn(), invoices)] == [5, 3, 8]


def test_suggest_respects_config():
    matcher = InvoiceMatcher(MatchConfig(threshold=0.75, max_suggestions=1))
    invoices = [_invoice(invoice_id=1, file_name="doc.pdf"), _invoice(invoice_id=2), _invoice(invoice_id=3)]
    suggestions = matcher.suggest(_txn(), invoices)
    assert [s.invoice_id for s in suggestions] == [2]
