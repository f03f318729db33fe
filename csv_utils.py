import csv
from datetime import datetime
from io import StringIO
from typing import Iterable, Mapping, Optional, Sequence

from models import TransactionType
from schemas import CSVRow, Category, Transaction, parse_amount

BOM = "\ufeff"
HEADER = ["Data", "Tipo", "Importo", "Categoria", "Nota", "Tag"]
TAG_SEPARATOR = "; "
MISSING_CATEGORY = "N/A"

TYPE_LABELS = {
    TransactionType.income: "Entrata",
    TransactionType.expense: "Uscita",
}
LABEL_TYPES = {label.lower(): kind for kind, label in TYPE_LABELS.items()}


def quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def format_amount(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def parse_date(value: str):
    value = value.strip()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return datetime.strptime(value, "%d/%m/%Y").date()


def parse_type(value: str) -> TransactionType:
    clean = value.strip().lower()
    if clean in LABEL_TYPES:
        return LABEL_TYPES[clean]
    return TransactionType(clean)


def export_transactions(
    transactions: Sequence[Transaction],
    categories: Iterable[Category] = (),
    tags_by_transaction: Optional[Mapping[str, Sequence[str]]] = None,
) -> str:
    """CSV text with a leading BOM, one row per transaction."""
    names = {c.id: c.name for c in categories}
    tags_by_transaction = tags_by_transaction or {}
    lines = [",".join(HEADER)]
    for txn in transactions:
        category = names.get(txn.category_id or "", MISSING_CATEGORY)
        tags = TAG_SEPARATOR.join(tags_by_transaction.get(txn.id, ()))
        lines.append(
            ",".join(
                [
                    txn.date.isoformat(),
                    TYPE_LABELS[txn.type],
                    format_amount(txn.amount),
                    quote(category),
                    quote(txn.note or ""),
                    quote(tags),
                ]
            )
        )
    return BOM + "\n".join(lines)


def parse_csv(content: str) -> tuple[list[CSVRow], list[str]]:
    reader = csv.DictReader(StringIO(content.lstrip(BOM)))
    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            category = (raw.get("Categoria") or "").strip()
            note = raw.get("Nota") or ""
            tags_raw = raw.get("Tag") or ""
            rows.append(
                CSVRow(
                    date=parse_date(raw.get("Data") or ""),
                    type=parse_type(raw.get("Tipo") or ""),
                    amount=parse_amount(raw.get("Importo") or ""),
                    category="" if category == MISSING_CATEGORY else category,
                    note=note if note else None,
                    tags=[t.strip() for t in tags_raw.split(";") if t.strip()],
                )
            )
        except Exception as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors
