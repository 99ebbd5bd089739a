import csv
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Optional, Sequence

from models import Transaction, TransactionType
from schemas import CSVRow


CSV_HEADER = ["Date", "Type", "Amount", "Description", "Category", "Account", "Notes"]

# Exports from Brazilian banks use Portuguese headers.
COLUMN_ALIASES = {
    "date": "Date",
    "data": "Date",
    "type": "Type",
    "tipo": "Type",
    "amount": "Amount",
    "valor": "Amount",
    "description": "Description",
    "descrição": "Description",
    "descricao": "Description",
    "category": "Category",
    "categoria": "Category",
    "notes": "Notes",
    "observações": "Notes",
    "observacoes": "Notes",
}

TYPE_ALIASES = {
    "receita": TransactionType.income,
    "entrada": TransactionType.income,
    "despesa": TransactionType.expense,
    "saída": TransactionType.expense,
    "saida": TransactionType.expense,
    "transferência": TransactionType.transfer,
}

_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")
_SHELL_LIKE = re.compile(r"^(cmd|powershell|bash|sh)\b|^\.|^https?://", re.IGNORECASE)


def sanitize_csv_value(value: Optional[str]) -> str:
    """Neutralize cells a spreadsheet would run as a formula or open as a link."""
    text = (value or "").strip()
    if text and (text.startswith(_FORMULA_PREFIXES) or _SHELL_LIKE.match(text)):
        return "\t" + text
    return text


def parse_date(value: str) -> date:
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {value!r}")


def format_brl(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    text = f"{abs(cents) / 100:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"{sign}R$ {text}"


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = (
        value.strip()
        .upper()
        .replace("R$", "")
        .replace("$", "")
        .replace("€", "")
        .replace(" ", "")
    )
    # "1.234,56" and "1,234.56" both become "1234.56"
    if "," in clean and "." in clean:
        if clean.rfind(",") > clean.rfind("."):
            clean = clean.replace(".", "").replace(",", ".")
        else:
            clean = clean.replace(",", "")
    else:
        clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        head, _, tail = clean.rpartition(".")
        clean = head.replace(".", "") + "." + tail
    try:
        cents = int((Decimal(clean) * 100).quantize(Decimal("1")))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def _parse_type(raw: str, amount_cents: int) -> TransactionType:
    key = raw.strip().lower()
    if not key:
        return TransactionType.expense if amount_cents < 0 else TransactionType.income
    if key in TYPE_ALIASES:
        return TYPE_ALIASES[key]
    return TransactionType(key)


def _normalize_row(raw: dict) -> dict[str, str]:
    row: dict[str, str] = {}
    for name, value in raw.items():
        if name is None:
            continue
        canonical = COLUMN_ALIASES.get(name.strip().lower())
        if canonical:
            row[canonical] = (value or "").strip()
    return row


def parse_csv(content: str) -> tuple[list[CSVRow], list[str]]:
    """Parse an import file; bad rows are reported, not raised."""
    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(csv.DictReader(StringIO(content)), start=1):
        row = _normalize_row(raw)
        try:
            amount = parse_amount(row.get("Amount") or "0", allow_negative=True)
            if amount == 0:
                raise ValueError("Amount must be non-zero")
            description = row.get("Description", "")
            if not description:
                raise ValueError("Description is required")
            rows.append(
                CSVRow(
                    date=parse_date(row.get("Date", "")),
                    type=_parse_type(row.get("Type", ""), amount),
                    amount_cents=amount,
                    description=description,
                    category=row.get("Category") or None,
                    notes=row.get("Notes") or None,
                )
            )
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def owner_label(txn: Transaction) -> str:
    if txn.account is not None:
        return txn.account.name
    if txn.credit_card is not None:
        return txn.credit_card.name
    return ""


def export_transactions(transactions: Sequence[Transaction]) -> str:
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    writer.writerows(
        [
            txn.date.isoformat(),
            txn.type.value,
            f"{txn.amount_cents / 100:.2f}",
            sanitize_csv_value(txn.description),
            sanitize_csv_value(txn.category.name if txn.category else ""),
            sanitize_csv_value(owner_label(txn)),
            sanitize_csv_value(txn.notes),
        ]
        for txn in transactions
    )
    return buffer.getvalue()
