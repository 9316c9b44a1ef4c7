import unicodedata
from dataclasses import dataclass

from tally.models import RawRow

# Ordered header aliases per canonical field. The first alias present with a
# non-empty value wins.
DEFAULT_ALIASES: dict[str, list[str]] = {
    "date": ["Date d'opération", "Date", "date", "Date opération", "Date de valeur"],
    "amount": ["Montant", "montant", "Amount", "amount", "Débit", "Crédit", "Solde"],
    "description": ["Description", "description", "Libellé", "libelle", "Payee"],
    "operation_type": ["Type de l'opération", "Type", "type", "Opération", "Mode"],
    "reference": ["Référence de l'opération", "Référence", "reference", "Ref", "ID"],
    "category": ["category", "Catégorie", "Category"],
    "memo": ["memo", "Memo", "Note"],
}

# Numbered detail columns, concatenated in order to build the description.
DEFAULT_DETAIL_COLUMNS = [f"Détail {i}" for i in range(1, 7)]


def _key(name: str) -> str:
    return unicodedata.normalize("NFC", name).replace("’", "'").strip()


@dataclass
class ResolvedFields:
    date: str | None = None
    amount: str | None = None
    description: str | None = None
    operation_type: str | None = None
    reference: str | None = None
    category: str | None = None
    memo: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.date) and bool(self.amount) and bool(self.description)

    def missing(self) -> list[str]:
        return [name for name in ("date", "amount", "description") if not getattr(self, name)]


class FieldResolver:
    def __init__(
        self,
        aliases: dict[str, list[str]] | None = None,
        detail_columns: list[str] | None = None,
    ):
        source = aliases if aliases is not None else DEFAULT_ALIASES
        self.aliases = {name: list(values) for name, values in source.items()}
        self.detail_columns = list(detail_columns if detail_columns is not None else DEFAULT_DETAIL_COLUMNS)

    def add_aliases(self, field_name: str, aliases: list[str]) -> None:
        """Append aliases for a canonical field, after the existing ones."""
        if field_name == "detail":
            self.detail_columns.extend(aliases)
            return
        existing = self.aliases.setdefault(field_name, [])
        existing.extend(a for a in aliases if a not in existing)

    def _first(self, row: dict[str, str], field_name: str) -> str | None:
        for alias in self.aliases.get(field_name, []):
            value = row.get(_key(alias))
            if value is not None and value.strip():
                return value.strip()
        return None

    def _description(self, row: dict[str, str]) -> str | None:
        parts = []
        for column in self.detail_columns:
            value = row.get(_key(column))
            if value and value.strip():
                parts.append(value.strip())
        if parts:
            return " ".join(parts)
        return self._first(row, "description")

    def resolve(self, raw: RawRow) -> ResolvedFields:
        row = {_key(k): (v if v is not None else "") for k, v in raw.items() if k is not None}
        return ResolvedFields(
            date=self._first(row, "date"),
            amount=self._first(row, "amount"),
            description=self._description(row),
            operation_type=self._first(row, "operation_type"),
            reference=self._first(row, "reference"),
            category=self._first(row, "category"),
            memo=self._first(row, "memo"),
        )
