import csv
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Iterable, Iterator, Mapping, Optional

from errors import ValidationError
from models import Expense

UTF8_BOM = b"\xef\xbb\xbf"
IMPORT_FIELDS = ("Date", "Name", "Price", "Note", "CurrencyCode")
EXPORT_HEADER = [
    "Date",
    "Name",
    "Amount",
    "CurrencyCode",
    "Description",
    "CategoryID",
    "Category",
]
PLACEHOLDER_NAME = "No Name"


def is_csv_filename(filename: Optional[str]) -> bool:
    return bool(filename) and filename.lower().endswith(".csv")


def decode_upload(content: bytes) -> str:
    """Decode an upload, keeping bytes that are not UTF-8 as surrogates.

    Records holding such bytes are rejected one by one by ``read_records``.
    """
    if content.startswith(UTF8_BOM):
        content = content[len(UTF8_BOM):]
    return content.decode("utf-8", errors="surrogateescape")


def _is_utf8(fields: list[str]) -> bool:
    try:
        for value in fields:
            value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def read_header(reader: Iterator[list[str]]) -> list[str]:
    try:
        header = next((row for row in reader if row), None)
    except csv.Error as exc:
        raise ValidationError("Could not read CSV header", "invalid_header") from exc
    if header is None or len(header) != len(IMPORT_FIELDS) or not _is_utf8(header):
        raise ValidationError("Could not read CSV header", "invalid_header")
    return header


def read_records(text: str) -> Iterator[tuple[int, Optional[list[str]]]]:
    """Yield ``(line_number, fields)`` for every data record after the header.

    ``fields`` is None when the record could not be parsed. Blank lines are
    skipped without consuming a line number.
    """
    reader = csv.reader(StringIO(text, newline=""))
    read_header(reader)

    line = 2
    while True:
        try:
            row = next(reader)
        except StopIteration:
            return
        except csv.Error:
            row = None
        else:
            if not row:
                continue
            if not _is_utf8(row):
                row = None
        yield line, row
        line += 1


def parse_us_date(value: str) -> date:
    """Parse ``M/D/YYYY`` (zero padding optional)."""
    return datetime.strptime(value.strip(), "%m/%d/%Y").date()


def format_us_date(value: date) -> str:
    return f"{value.month}/{value.day}/{value.year}"


def parse_price(value: str) -> Decimal:
    try:
        price = Decimal(value.strip())
    except InvalidOperation as exc:
        raise ValueError("Invalid price") from exc
    if not price.is_finite():
        raise ValueError("Invalid price")
    return price


def scale_amount(
    amount: Decimal, currency_code: str, scaled_currency: str, factor: int
) -> Decimal:
    """Source sheets record ``scaled_currency`` prices in thousands."""
    if currency_code == scaled_currency:
        return amount * factor
    return amount


def export_expenses(
    expenses: Iterable[Expense], category_names: Mapping[str, str]
) -> bytes:
    output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    for expense in expenses:
        category_id = expense.category_id or ""
        writer.writerow(
            [
                format_us_date(expense.date),
                expense.name,
                f"{expense.amount:.2f}",
                expense.currency_code,
                expense.description or "",
                category_id,
                category_names.get(category_id, "") if category_id else "",
            ]
        )
    return UTF8_BOM + output.getvalue().encode("utf-8")
