"""Spreadsheet to text extraction for uploaded files.

Only the first worksheet is read. The header row supplies the keys and
every following non-empty row becomes one JSON object.
"""
import csv
import io
import json
import zipfile
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Tuple

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

SUPPORTED_SUFFIXES = (".xlsx", ".xlsm", ".csv")


class UnsupportedSpreadsheet(ValueError):
    pass


def _cell_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def _rows_to_records(rows: List[Tuple[Any, ...]]) -> List[Dict[str, Any]]:
    if not rows:
        return []

    header = [
        str(cell).strip() if cell is not None and str(cell).strip() else f"column_{idx + 1}"
        for idx, cell in enumerate(rows[0])
    ]
    records = []
    for row in rows[1:]:
        if all(cell is None or cell == "" for cell in row):
            continue
        record = {}
        for key, cell in zip(header, row):
            if cell is None or cell == "":
                continue
            record[key] = _cell_value(cell)
        records.append(record)
    return records


def _read_xlsx(data: bytes) -> List[Dict[str, Any]]:
    workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0]
        rows = [tuple(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()
    return _rows_to_records(rows)


def _read_csv(data: bytes) -> List[Dict[str, Any]]:
    text = data.decode("utf-8-sig", errors="replace")
    rows = [tuple(row) for row in csv.reader(io.StringIO(text))]
    return _rows_to_records(rows)


def extract_records(filename: str, data: bytes) -> List[Dict[str, Any]]:
    """
    Read the first sheet of an uploaded spreadsheet.

    Raises:
        UnsupportedSpreadsheet: unknown extension or unreadable workbook
    """
    suffix = Path(filename or "").suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise UnsupportedSpreadsheet(f"Unsupported file type: {suffix or 'none'}")

    if suffix == ".csv":
        return _read_csv(data)

    try:
        return _read_xlsx(data)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as e:
        raise UnsupportedSpreadsheet("Could not read workbook") from e


def records_to_text(records: List[Dict[str, Any]]) -> str:
    return json.dumps(records, indent=2, ensure_ascii=False, default=str)
