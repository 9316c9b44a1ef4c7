import logging
import re
from dataclasses import dataclass
from decimal import Decimal

from tally.models import Category
from tally.normalizers import fold
from tally.stores import CategoryStore, TransactionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeywordRule:
    category: str  # category name as stored
    keywords: tuple[str, ...]
    match_type: str = "contains"  # contains, starts_with, regex


# Evaluated top to bottom, first match wins. Merchant and vendor groups come
# before the groups keyed on the kind of operation (withdrawal, cheque,
# direct debit, transfer) so "PRLV EDF" lands in Energie, not Prélèvements.
DEFAULT_KEYWORD_RULES: list[KeywordRule] = [
    KeywordRule("Alimentation", (
        "restaurant", "resto", "mcdo", "mcdonald", "burger king", "kfc", "boulangerie", "patisserie",
        "carrefour", "leclerc", "auchan", "intermarche", "lidl", "aldi", "monoprix", "franprix",
        "super u", "supermarche", "picard", "biocoop", "uber eats", "deliveroo",
    )),
    KeywordRule("Transport", (
        "sncf", "ratp", "navigo", "uber", "bolt", "taxi", "blablacar", "totalenergies", "esso", "shell",
        "carburant", "station service", "peage", "autoroute", "parking", "air france", "easyjet", "ryanair",
    )),
    KeywordRule("Energie", ("edf", "engie", "gdf", "electricite", "gaz", "veolia")),
    KeywordRule("Télécommunications", ("orange", "sfr", "bouygues", "free mobile", "freebox", "sosh")),
    KeywordRule("Logement", ("loyer", "syndic", "foncia", "nexity", "copropriete")),
    KeywordRule("Santé", (
        "pharmacie", "medecin", "docteur", "dentiste", "hopital", "clinique", "laboratoire", "cpam", "mutuelle",
    )),
    KeywordRule("Assurances", ("assurance", "axa", "maif", "macif", "matmut", "allianz", "groupama", "generali")),
    KeywordRule("Banque/Frais", (
        "frais bancaire", "frais tenue", "commission", "cotisation carte", "agios", "interets debiteurs", "frais",
    )),
    KeywordRule("Impôts/Taxes", ("impot", "dgfip", "tresor public", "taxe", "urssaf", "amende")),
    KeywordRule("Shopping/Achats", (
        "amazon", "fnac", "darty", "cdiscount", "decathlon", "ikea", "zara", "h&m", "leroy merlin", "boulanger",
    )),
    KeywordRule("Loisirs", (
        "netflix", "spotify", "deezer", "disney", "canal+", "cinema", "ugc", "pathe", "theatre", "concert",
        "steam", "playstation",
    )),
    KeywordRule("Éducation", ("ecole", "universite", "formation", "librairie", "cantine")),
    KeywordRule("Épargne/Investissement", ("livret", "epargne", "bourse", "placement")),
    KeywordRule("Retraits espèces", ("retrait", "dab", "distributeur")),
    KeywordRule("Chèques", ("cheque", "chq")),
    KeywordRule("Prélèvements", ("prelevement", "prlv")),
    KeywordRule("Virements", ("virement", "vir ")),
]

# Category labels found in QIF files, mapped to category names.
QIF_CATEGORY_LABELS: dict[str, str] = {
    "Food": "Alimentation",
    "Gas": "Transport",
    "Groceries": "Alimentation",
    "Restaurant": "Alimentation",
    "Salary": "Salaires",
    "Utilities": "Energie",
    "Phone": "Télécommunications",
    "Insurance": "Assurances",
    "Medical": "Santé",
    "Shopping": "Shopping/Achats",
    "Entertainment": "Loisirs",
    "Education": "Éducation",
    "Investment": "Épargne/Investissement",
    "Tax": "Impôts/Taxes",
    "Bank Fee": "Banque/Frais",
}


def _matches(text: str, pattern: str, match_type: str) -> bool:
    if match_type == "contains":
        return fold(pattern) in text
    elif match_type == "starts_with":
        return text.startswith(fold(pattern))
    elif match_type == "regex":
        return bool(re.search(pattern, text, re.IGNORECASE))
    return False


class AutoCategorizer:
    """Keyword categorizer over the category store.

    The rule table is resolved against the store once, on first use. Rules
    naming a category the store does not have are skipped. Categories that
    carry their own keywords are appended after the built-in rules, in id
    order.
    """

    def __init__(
        self,
        categories: CategoryStore,
        rules: list[KeywordRule] | None = None,
        labels: dict[str, str] | None = None,
    ):
        self.categories = categories
        self.rules = list(rules if rules is not None else DEFAULT_KEYWORD_RULES)
        self.labels = dict(labels if labels is not None else QIF_CATEGORY_LABELS)
        self._table: list[tuple[int, KeywordRule]] | None = None
        self._by_name: dict[str, Category] = {}

    def add_rules(self, rules: list[KeywordRule]) -> None:
        self.rules.extend(rules)
        self._table = None

    def _resolve(self) -> list[tuple[int, KeywordRule]]:
        if self._table is not None:
            return self._table
        active = self.categories.list_active()
        self._by_name = {c.name: c for c in active}
        table = []
        for rule in self.rules:
            category = self._by_name.get(rule.category)
            if category is None:
                logger.debug("No category named %r, skipping its keywords", rule.category)
                continue
            table.append((category.id, rule))
        for category in sorted(active, key=lambda c: c.id):
            if category.keywords:
                table.append((category.id, KeywordRule(category.name, tuple(category.keywords))))
        self._table = table
        return table

    def match(self, text: str) -> int | None:
        folded = fold(text)
        for category_id, rule in self._resolve():
            if any(_matches(folded, keyword, rule.match_type) for keyword in rule.keywords):
                return category_id
        return None

    def categorize(
        self, operation_type: str | None, description: str | None, amount: Decimal | None = None,
    ) -> int | None:
        """Return a category id for an expense, None when nothing matches.

        ``amount`` is the signed amount; income (positive) is never categorized.
        """
        if amount is not None and amount > 0:
            return None
        return self.match(f"{operation_type or ''} {description or ''}")

    def categorize_label(
        self,
        label: str | None,
        operation_type: str | None,
        description: str | None,
        amount: Decimal | None = None,
    ) -> int | None:
        """Map a label supplied by the file, then fall back to keywords."""
        if amount is not None and amount > 0:
            return None
        if label:
            self._resolve()
            name = self.labels.get(label.strip())
            category = self._by_name.get(name) if name else None
            if category is not None:
                return category.id
        return self.categorize(operation_type, description, amount)


def recategorize(owner_id: int, transactions: TransactionStore, categorizer: AutoCategorizer) -> dict:
    """Apply the categorizer to all uncategorized expenses. Returns counts."""
    categorized = 0
    still_uncategorized = 0
    for txn in transactions.list_uncategorized_expenses(owner_id):
        category_id = categorizer.categorize(txn.operation_type, txn.description, -txn.amount)
        if category_id is None:
            still_uncategorized += 1
            continue
        transactions.set_category(owner_id, txn.id, category_id)
        categorized += 1
    return {"categorized": categorized, "still_uncategorized": still_uncategorized}
