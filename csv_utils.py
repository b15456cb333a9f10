import csv
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Optional, Sequence

from models import FLOW_TYPE_CODES, FlowType
from schemas import CategoryCSVRow, HomeBankRow, PayeeCSVRow

DATE_FORMATS = ("DD-MM-YYYY", "MM-DD-YYYY", "YYYY-MM-DD")
DEFAULT_DATE_FORMAT = "DD-MM-YYYY"
CATEGORY_PATH_SEPARATOR = ":"
LINE_BREAK = "\r\n"


def normalize_date(value, date_format: Optional[str] = None) -> date:
    """Parse a day-granularity date into a ``date``.

    Accepts ``-``, ``.`` and ``/`` separators. A four-digit first field is
    always read as year-first; otherwise ``date_format`` decides between
    day-first (the default) and month-first.
    """
    if isinstance(value, date):
        return value
    raw = (value or "").strip()
    if not raw:
        raise ValueError("Missing date")
    raw = raw[:10] if re.match(r"^\d{4}-\d{2}-\d{2}T", raw) else raw
    parts = re.split(r"[-./]", raw)
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid date '{value}'")
    if len(parts[0]) == 4:
        year, month, day = parts
    elif len(parts[2]) == 4:
        if date_format == "MM-DD-YYYY":
            month, day, year = parts
        else:
            day, month, year = parts
    else:
        raise ValueError(f"Invalid date '{value}'")
    try:
        return date(int(year), int(month), int(day))
    except ValueError as exc:
        raise ValueError(f"Invalid date '{value}'") from exc


def format_date(value: date, date_format: Optional[str] = None) -> str:
    if date_format == "YYYY-MM-DD":
        return value.isoformat()
    if date_format == "MM-DD-YYYY":
        return value.strftime("%m-%d-%Y")
    return value.strftime("%d-%m-%Y")


def parse_amount(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    clean = (value or "").strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    if not clean:
        raise ValueError("Missing amount")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount '{value}'") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount '{value}'")
    return amount


def format_amount(amount: Decimal, decimal_separator: str = ",") -> str:
    text = f"{Decimal(amount):.2f}"
    return text.replace(".", decimal_separator)


def split_category_path(value: str) -> list[str]:
    return [part.strip() for part in (value or "").split(CATEGORY_PATH_SEPARATOR) if part.strip()]


def category_path(name: Optional[str], parent_name: Optional[str]) -> str:
    if not name:
        return ""
    if parent_name:
        return f"{parent_name}{CATEGORY_PATH_SEPARATOR}{name}"
    return name


def safe_filename(value: str) -> str:
    stripped = re.sub(r"[\r\n]", "", value or "")
    return re.sub(r"[^a-zA-Z0-9._-]", "_", stripped)


def safe_account_filename(account_name: str, on_date: date) -> str:
    safe_name = re.sub(r'[/\\?%*:|"<>]', "-", account_name or "account")
    return f"{safe_name}-{on_date.isoformat()}.csv"


def _reader(content: str):
    return csv.reader(StringIO(content or ""), delimiter=";")


def _is_blank(parts: Sequence[str]) -> bool:
    return not any(part.strip() for part in parts)


def format_row(fields: Sequence) -> str:
    """One ``;`` separated line; fields with ``;``, quotes or line breaks are quoted."""
    output = StringIO()
    writer = csv.writer(output, delimiter=";", lineterminator=LINE_BREAK)
    writer.writerow(["" if value is None else value for value in fields])
    return output.getvalue()[: -len(LINE_BREAK)]


def parse_homebank_transactions(
    content: str, date_format: Optional[str] = None
) -> tuple[list[HomeBankRow], list[str]]:
    """Parse ``date;payment;info;payee;memo;amount;category;tags`` lines."""
    rows: list[HomeBankRow] = []
    errors: list[str] = []
    reader = _reader(content)
    for parts in reader:
        if _is_blank(parts):
            continue
        if parts[0].strip().lower() in ("date", "data"):
            continue
        if len(parts) < 5:
            continue
        parts = [part.strip() for part in parts] + [""] * (8 - len(parts))
        date_raw, pay_raw, _info, payee, memo, amount_raw, category = parts[:7]
        try:
            txn_date = normalize_date(date_raw, date_format)
            amount = parse_amount(amount_raw)
        except ValueError as exc:
            errors.append(f"Line {reader.line_num}: {exc}")
            continue
        try:
            payment_type = int(pay_raw)
        except ValueError:
            payment_type = 0
        rows.append(
            HomeBankRow(
                line=reader.line_num,
                date=txn_date,
                payment_type=payment_type,
                payee=payee,
                memo=memo,
                amount=amount,
                category=category,
            )
        )
    return rows, errors


def format_homebank_row(
    txn_date: date,
    payment_type: Optional[int],
    payee: Optional[str],
    memo: Optional[str],
    amount: Decimal,
    category: str,
    *,
    date_format: Optional[str] = None,
    decimal_separator: str = ",",
) -> str:
    return format_row(
        [
            format_date(txn_date, date_format or DEFAULT_DATE_FORMAT),
            str(payment_type or 0),
            "",
            payee,
            memo,
            format_amount(amount, decimal_separator),
            category,
            "",
        ]
    )


def join_lines(lines: Sequence[str]) -> str:
    return LINE_BREAK.join(lines)


def flow_type_from_code(code: str) -> FlowType:
    if code == "+":
        return FlowType.income
    if code == "-":
        return FlowType.expense
    return FlowType.neutral


def flow_type_code(flow_type: FlowType) -> str:
    # HomeBank only knows income and expense categories
    return "+" if flow_type == FlowType.income else FLOW_TYPE_CODES[FlowType.expense]


def parse_category_csv(content: str) -> list[CategoryCSVRow]:
    rows: list[CategoryCSVRow] = []
    for parts in _reader(content):
        if _is_blank(parts) or parts[0].strip().lower() in ("level", "lvl"):
            continue
        if len(parts) < 3:
            continue
        level_raw, type_raw, name = parts[0].strip(), parts[1], parts[2].strip()
        if not name or not level_raw.isdigit():
            continue
        rows.append(
            CategoryCSVRow(
                level=int(level_raw),
                type=flow_type_from_code(type_raw.strip() or " "),
                name=name,
            )
        )
    return rows


def parse_payee_csv(content: str) -> list[PayeeCSVRow]:
    rows: list[PayeeCSVRow] = []
    for parts in _reader(content):
        if _is_blank(parts) or parts[0].strip().lower() in ("name", "payee"):
            continue
        parts = [part.strip() for part in parts] + [""] * (3 - len(parts))
        name, category, payment_name = parts[:3]
        if not name:
            continue
        rows.append(
            PayeeCSVRow(name=name, category=category, payment_name=payment_name)
        )
    return rows
