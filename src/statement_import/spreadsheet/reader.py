"""
Spreadsheet reader (upload boundary).

Reads the rows of an uploaded bank statement as lists of cell strings.
Every sheet of a workbook is read in order; fully empty rows are dropped
so row numbers count only rows that carry data.
"""

import csv
import io
import logging
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

import openpyxl

from ..schemas.dedupe import compute_file_hash

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".csv", ".xlsx", ".xlsm")

# Non-UTF-8 exports of Turkish banks are Windows-1254
CSV_ENCODINGS = ("utf-8-sig", "cp1254")


class SpreadsheetError(Exception):
    """Raised when a file cannot be read as a statement."""

    def __init__(self, message: str, path: Path | None = None):
        super().__init__(message)
        self.path = path


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        # 1234.5 stays 1234.5, not 1234.5000000001
        return format(Decimal(repr(value)), "f")
    return str(value).strip()


def _keep(row: list[str]) -> bool:
    return any(cell for cell in row)


def _decode_csv(path: Path) -> str:
    data = path.read_bytes()
    for encoding in CSV_ENCODINGS:
        try:
            text = data.decode(encoding)
        except UnicodeDecodeError:
            logger.debug("%s is not %s", path.name, encoding)
            continue
        if encoding != CSV_ENCODINGS[0]:
            logger.info("Read %s as %s", path.name, encoding)
        return text
    raise SpreadsheetError(
        f"Cannot decode {path.name} (tried {', '.join(CSV_ENCODINGS)})", path
    )


def _read_csv(path: Path) -> list[list[str]]:
    text = _decode_csv(path)
    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel
    reader = csv.reader(io.StringIO(text, newline=""), dialect)
    rows = ([cell.strip() for cell in row] for row in reader)
    return [row for row in rows if _keep(row)]


def _read_xlsx(path: Path) -> list[list[str]]:
    try:
        wb = openpyxl.load_workbook(str(path), read_only=True, data_only=True)
    except Exception as e:
        raise SpreadsheetError(f"Cannot open workbook {path.name}: {e}", path) from e

    rows: list[list[str]] = []
    try:
        for ws in wb.worksheets:
            for values in ws.iter_rows(values_only=True):
                row = [_cell_text(v) for v in values]
                # Trailing empty cells are layout noise
                while row and not row[-1]:
                    row.pop()
                if _keep(row):
                    rows.append(row)
    finally:
        wb.close()
    return rows


def read_rows(path: Path) -> list[list[str]]:
    """
    Read all non-empty rows of a CSV or XLSX statement.

    Raises:
        SpreadsheetError: Missing file, unsupported format or undecodable CSV.
    """
    path = Path(path)
    if not path.exists():
        raise SpreadsheetError(f"File not found: {path}", path)

    suffix = path.suffix.lower()
    if suffix == ".csv":
        rows = _read_csv(path)
    elif suffix in (".xlsx", ".xlsm"):
        rows = _read_xlsx(path)
    else:
        raise SpreadsheetError(
            f"Unsupported file type '{suffix}' (expected one of {', '.join(SUPPORTED_SUFFIXES)})",
            path,
        )

    logger.info("Read %d rows from %s", len(rows), path.name)
    return rows


def compute_file_fingerprint(path: Path) -> str:
    """SHA256 of the file bytes."""
    return compute_file_hash(Path(path).read_bytes())
