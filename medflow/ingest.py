import csv
from datetime import datetime
from pathlib import Path
import re

from medflow.errors import InvalidFormatError
from medflow.schemas import InvalidRow, Metrics, ParseResult, Record


RECORD_FIELDS = (
    "delivery_date",
    "supplier_id",
    "category",
    "license_no",
    "model",
    "lot_no",
    "serial_no",
    "customer_id",
    "quantity",
)

# Header labels are compared after lowercasing and dropping spaces, "_" and "-".
COLUMN_ALIASES = {
    "delivery_date": ("date", "deliverdate", "deliverydate", "delivered"),
    "supplier_id": ("supplier", "supplierid", "vendor", "vendorid"),
    "category": ("category", "cat"),
    "license_no": ("license", "licenseno", "licence", "licenceno"),
    "model": ("model",),
    "lot_no": ("lot", "lotno", "batch"),
    "serial_no": ("serial", "serialno", "serno", "sn"),
    "customer_id": ("customer", "customerid", "client", "clientid"),
    "quantity": ("qty", "quantity", "number", "units", "count"),
}

_DATE_PATTERN = re.compile(r"^([0-9]{4})[-/]?([0-9]{2})[-/]?([0-9]{2})$")


def _normalize_label(label: str) -> str:
    return re.sub(r"[\s_\-]", "", label).lower()


_ALIAS_LOOKUP = {alias: field for field, aliases in COLUMN_ALIASES.items() for alias in aliases}


def load_text(input_path: Path, encoding: str = "utf-8") -> str:
    if not input_path.exists():
        raise FileNotFoundError(f"input file not found: {input_path}")
    return input_path.read_text(encoding=encoding)


def map_header(header: list[str]) -> dict[str, int]:
    """Return the column index of every recognized record field.

    The first column matching a field wins; unrecognized columns are ignored.
    """
    positions: dict[str, int] = {}
    for index, label in enumerate(header):
        field = _ALIAS_LOOKUP.get(_normalize_label(label))
        if field and field not in positions:
            positions[field] = index
    return positions


def canonical_date(value: str) -> str | None:
    """Return ``value`` as ``YYYYMMDD`` when it names a real calendar date."""
    match = _DATE_PATTERN.match(value.strip())
    if not match:
        return None
    candidate = "".join(match.groups())
    try:
        datetime.strptime(candidate, "%Y%m%d")
    except ValueError:
        return None
    return candidate


def parse_quantity(value: str) -> int | None:
    text = value.strip()
    if not (text.isascii() and text.isdigit()):
        return None
    return int(text)


def _split(line: str, delimiter: str) -> list[str]:
    return next(csv.reader([line], delimiter=delimiter))


def parse_rows(raw_text: str, delimiter: str = ",") -> ParseResult:
    lines = [(number, line) for number, line in enumerate(raw_text.splitlines(), start=1) if line.strip()]
    if not lines:
        raise InvalidFormatError("input has no header line")

    header_line_number, header_line = lines[0]
    header = _split(header_line, delimiter)
    positions = map_header(header)
    if "quantity" not in positions:
        raise InvalidFormatError(f"header on line {header_line_number} has no quantity column: {header_line!r}")

    records: list[Record] = []
    invalid: list[InvalidRow] = []
    valid_dates: list[str] = []
    invalid_dates = 0

    for line_number, line in lines[1:]:
        fields = _split(line, delimiter)
        if len(fields) != len(header):
            invalid.append(
                InvalidRow(line_number, line, f"expected {len(header)} fields, found {len(fields)}")
            )
            continue

        quantity = parse_quantity(fields[positions["quantity"]])
        if quantity is None:
            invalid.append(InvalidRow(line_number, line, "quantity must be a non-negative integer"))
            continue

        values = {
            field: fields[positions[field]].strip() if field in positions else ""
            for field in RECORD_FIELDS
            if field != "quantity"
        }
        date_value = canonical_date(values["delivery_date"])
        if date_value is None:
            invalid_dates += 1
        else:
            values["delivery_date"] = date_value
            valid_dates.append(date_value)

        records.append(Record(quantity=quantity, **values))

    metrics = Metrics(
        total_rows=len(lines) - 1,
        parsed_rows=len(records),
        total_units=sum(record.quantity for record in records),
        unique_suppliers=len({record.supplier_id for record in records}),
        parse_failures=len(invalid),
        invalid_dates=invalid_dates,
        date_range=(min(valid_dates), max(valid_dates)) if valid_dates else (),
    )
    return ParseResult(records=tuple(records), metrics=metrics, invalid_rows=tuple(invalid))
