import csv
import re
from datetime import date, datetime
from io import StringIO
from typing import Any, Sequence

from models import Transaction

IMPORT_COLUMNS = {
    "date": "date",
    "description": "description",
    "amount": "amount",
    "type": "type",
    "category": "category",
    "account": "account",
    "toaccount": "to_account",
    "to_account": "to_account",
}

EXPORT_HEADER = [
    "Date",
    "Description",
    "Amount",
    "Type",
    "Category",
    "Account",
    "ToAccount",
    "Tags",
    "Notes",
]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: Any) -> date:
    """Accept a date, a datetime, ISO text (date or timestamp) or DD.MM.YYYY."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Unsupported date value: {value!r}")
    value = value.strip()
    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        return datetime.strptime(value, "%d.%m.%Y").date()


def clean_amount(value: str) -> str:
    """Strip currency marks and thousands separators from a CSV amount cell.

    With both ``,`` and ``.`` present the last one is the decimal mark. A lone
    separator kind is a thousands separator when it repeats, or when it appears
    once after a non-zero integer part and is followed by exactly three digits
    (``1,234`` and ``1.234`` are both 1234).
    """
    clean = re.sub(r"[^\d,.\-+]", "", value.strip())
    if "," in clean and "." in clean:
        decimal_mark = "," if clean.rfind(",") > clean.rfind(".") else "."
        thousands = "." if decimal_mark == "," else ","
        return clean.replace(thousands, "").replace(decimal_mark, ".")

    separator = "," if "," in clean else "."
    count = clean.count(separator)
    if count == 0:
        return clean
    if count > 1:
        return clean.replace(separator, "")
    whole, fraction = clean.split(separator)
    if len(fraction) == 3 and whole.lstrip("+-").lstrip("0"):
        return whole + fraction
    return whole + "." + fraction


def parse_import_csv(content: str) -> list[dict[str, Any]]:
    """Turn an uploaded CSV into raw import rows.

    Values are left as text; the import pipeline validates each row and reports
    problems by row number.
    """
    reader = csv.DictReader(StringIO(content.lstrip("\ufeff")))
    rows: list[dict[str, Any]] = []
    for raw in reader:
        row: dict[str, Any] = {}
        for header, cell in raw.items():
            if header is None:
                continue
            key = IMPORT_COLUMNS.get(header.strip().lower().replace(" ", ""))
            if not key:
                continue
            text = (cell or "").strip()
            if not text:
                continue
            row[key] = clean_amount(text) if key == "amount" else text
        if row:
            rows.append(row)
    return rows


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(txn.description),
                f"{txn.amount:.2f}",
                txn.transaction_type.value,
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.account.name),
                sanitize_csv_value(txn.to_account.name if txn.to_account else ""),
                sanitize_csv_value(";".join(txn.tag_names)),
                sanitize_csv_value(txn.notes or ""),
            ]
        )
    return output.getvalue()
