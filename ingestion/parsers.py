import csv
import io
import logging
import zipfile
from typing import Dict, List, Tuple

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from run_engine.exceptions import ParseError

logger = logging.getLogger(__name__)

CSV_DELIMITERS = [',', '\t', '|', ';']


def parse_file_content(file_bytes: bytes, file_name: str) -> Tuple[List[str], List[Dict]]:
    """
    Read an uploaded CSV or Excel file into (headers, records).

    Each record maps header -> raw value. Fully empty lines are dropped.
    Raises ParseError when the file has no worksheet or no data rows.
    """
    if not file_bytes:
        raise ParseError("No data found in file")

    if str(file_name or '').lower().endswith('.csv'):
        headers, records = _parse_csv(file_bytes)
    else:
        headers, records = _parse_excel(file_bytes)

    if not headers or not records:
        raise ParseError("No data found in file")

    logger.info(f"Parsed {file_name}: {len(headers)} columns, {len(records)} records")
    return headers, records


def _guess_delimiter(header_line: str) -> str:
    counts = {d: header_line.count(d) for d in CSV_DELIMITERS}
    best = max(CSV_DELIMITERS, key=lambda d: counts[d])
    return best if counts[best] > 0 else ','


def _parse_csv(file_bytes):
    try:
        text = file_bytes.decode('utf-8-sig')
    except UnicodeDecodeError as e:
        raise ParseError(f"File is not valid UTF-8 text: {e}") from e

    header_line = next((line for line in text.splitlines() if line.strip()), None)
    if header_line is None:
        return [], []

    # Blank lines are dropped by the reader, never before it: quoted cells may span them.
    reader = csv.reader(io.StringIO(text, newline=''), delimiter=_guess_delimiter(header_line))
    rows = [values for values in reader if any(v.strip() for v in values)]
    if not rows:
        return [], []
    headers = [h.strip() for h in rows[0]]

    records = []
    for values in rows[1:]:
        records.append(_to_record(headers, [v.strip() for v in values]))
    return [h for h in headers if h], records


def _cell_value(value):
    # Excel stores phone numbers as floats; 5551234567.0 must not gain a digit.
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return value.strip()
    return value


def _parse_excel(file_bytes):
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise ParseError(f"Unable to read spreadsheet: {e}") from e

    try:
        if not workbook.worksheets:
            raise ParseError("No worksheet found")
        sheet = workbook.worksheets[0]
        rows = [row for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()

    rows = [row for row in rows if any(cell not in (None, '') for cell in row)]
    if not rows:
        return [], []

    headers = ['' if cell is None else str(cell).strip() for cell in rows[0]]
    records = [
        _to_record(headers, [_cell_value(cell) for cell in row])
        for row in rows[1:]
    ]
    return [h for h in headers if h], records


def _to_record(headers, values):
    record = {}
    for index, header in enumerate(headers):
        if not header:
            continue
        value = values[index] if index < len(values) else ''
        record[header] = '' if value is None else value
    return record
