import csv
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Mapping, Optional, Sequence

from models import CubeRow, TransactionType
from schemas import CSVRow


TRUTHY = {"1", "true", "yes", "y", "on"}


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    if value.startswith(("=", "+", "-", "@", "\t", "\r")):
        return "\t" + value

    for pattern in (r"^cmd\s*", r"^powershell\s*", r"^http[s]?://"):
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str):
    value = value.strip()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return datetime.strptime(value, "%d.%m.%Y").date()


def parse_amount(value: str) -> int:
    clean = value.strip().replace("$", "").replace(" ", "").replace(",", "")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0:
        raise ValueError("Amount must be positive")
    return cents


def parse_ledger_csv(content: str) -> tuple[list[CSVRow], list[str]]:
    """Parse ledger rows with columns Date, Account, Type, Amount, Category,
    Recurring and Description. Bad rows are reported, not raised."""
    reader = csv.DictReader(StringIO(content))
    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            category = (raw.get("Category") or "").strip()
            rows.append(
                CSVRow(
                    date=parse_date(raw.get("Date") or ""),
                    account=(raw.get("Account") or "").strip(),
                    type=TransactionType((raw.get("Type") or "").strip().upper()),
                    amount_cents=parse_amount(raw.get("Amount") or "0"),
                    category=category or None,
                    is_recurring=(raw.get("Recurring") or "").strip().lower() in TRUTHY,
                    description=(raw.get("Description") or "").strip(),
                )
            )
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_cube_rows(
    rows: Sequence[CubeRow],
    account_names: Mapping[int, str],
    category_names: Mapping[int, str],
) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            "Granularity",
            "PeriodStart",
            "PeriodEnd",
            "Account",
            "Category",
            "Type",
            "Recurring",
            "Amount",
            "Count",
        ]
    )
    for row in rows:
        category: Optional[str] = None
        if row.category_id is not None:
            category = category_names.get(row.category_id, str(row.category_id))
        writer.writerow(
            [
                row.period_type.value,
                row.period_start.isoformat(),
                row.period_end.isoformat(),
                sanitize_csv_value(account_names.get(row.account_id, str(row.account_id))),
                sanitize_csv_value(category or ""),
                row.transaction_type.value,
                "1" if row.is_recurring else "0",
                f"{row.amount_sum_cents / 100:.2f}",
                row.transaction_count,
            ]
        )
    return output.getvalue()
