import math
import re
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import EmptyFileError, MissingColumnError
from .schemas import (
    BIRTH_DATE_FIELD,
    DEFAULT_STATUS,
    HEADER_SYNONYMS,
    MIN_PHONE_DIGITS,
    PHONE_FIELD,
    REQUIRED_COLUMN,
)

# Day zero of spreadsheet serial dates (accounts for the 1900 leap-year bug)
SPREADSHEET_EPOCH = datetime(1899, 12, 30)
DATE_FORMAT = "%d/%m/%Y"

_ACCENTS = (("ç", "c"), ("ã", "a"), ("é", "e"))
_ORDINALS = re.compile(r"[ºª]")
_WHITESPACE = re.compile(r"\s+")
_PHONE_SEPARATORS = re.compile(r"[,;/]")
_NON_DIGITS = re.compile(r"\D")
_SERIAL_STRING = re.compile(r"^\d+(\.\d+)?$")


def normalize_header(header: Any) -> str:
    if is_blank(header):
        return ""
    h = str(header).strip().lower()
    for accented, plain in _ACCENTS:
        h = h.replace(accented, plain)
    h = _ORDINALS.sub("", h)
    h = h.replace(".", "")
    return _WHITESPACE.sub("_", h)


def canonical_header(header: Any) -> str:
    h = normalize_header(header)
    return HEADER_SYNONYMS.get(h, h)


def normalize_headers(headers: Sequence[Any]) -> List[str]:
    return [canonical_header(h) for h in headers]


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return False
    return bool(pd.isna(value))


def to_python(value: Any) -> Any:
    """Unwrap numpy/pandas scalars so values can be stored as BSON."""
    if isinstance(value, np.generic):
        value = value.item()
    if hasattr(value, "to_pydatetime"):
        value = value.to_pydatetime()
    if isinstance(value, time):
        return value.strftime("%H:%M:%S" if value.second else "%H:%M")
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, float) and not math.isnan(value) and value.is_integer():
        return int(value)
    return value


def parse_yes_no(value: str) -> Any:
    flag = value.strip().upper()
    if flag == "SIM":
        return True
    if flag in ("NÃO", "NAO"):
        return False
    return value


def parse_phones(value: Any) -> List[str]:
    phones = []
    for part in _PHONE_SEPARATORS.split(str(to_python(value))):
        digits = _NON_DIGITS.sub("", part)
        if len(digits) >= MIN_PHONE_DIGITS:
            phones.append(digits)
    return phones


def serial_to_date_string(serial: float) -> Optional[str]:
    try:
        moment = SPREADSHEET_EPOCH + timedelta(days=float(serial))
    except (OverflowError, ValueError):
        return None
    return moment.strftime(DATE_FORMAT)


def format_birth_date(value: Any) -> str:
    value = to_python(value)
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, (int, float)):
        return serial_to_date_string(value) or str(value)
    s = str(value).strip()
    if _SERIAL_STRING.match(s):
        return serial_to_date_string(float(s)) or s
    return s


def shift_date_string(value: Any, days: int) -> Optional[str]:
    """Move a DD/MM/YYYY string by ``days``; None when it is not such a date."""
    if not isinstance(value, str):
        return None
    parts = value.strip().split("/")
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(p) for p in parts)
        moved = date(year, month, day) + timedelta(days=days)
    except (ValueError, OverflowError):
        return None
    return moved.strftime(DATE_FORMAT)


def clean_cell(header: str, value: Any) -> Any:
    value = to_python(value)
    processed = value
    if isinstance(value, str):
        processed = parse_yes_no(value)
    if is_blank(value):
        return None
    if header == PHONE_FIELD:
        return parse_phones(value)
    if header == BIRTH_DATE_FIELD:
        return format_birth_date(value)
    return processed


def registration_number(value: Any) -> Optional[str]:
    value = to_python(value)
    if is_blank(value) or value is False:
        return None
    return str(value).strip()


def map_row(row: Sequence[Any], headers: Sequence[str]) -> Optional[Dict[str, Any]]:
    """Turn one spreadsheet row into a student record; None when it has no RM."""
    student: Dict[str, Any] = {}
    for index, value in enumerate(row):
        if index >= len(headers):
            break
        header = headers[index]
        if not header:
            continue
        student[header] = clean_cell(header, value)

    rm = registration_number(student.get(REQUIRED_COLUMN))
    if not rm:
        return None
    student[REQUIRED_COLUMN] = rm
    student["status"] = DEFAULT_STATUS
    return student


def normalize_rows(table: Sequence[Sequence[Any]]) -> Tuple[List[Dict[str, Any]], int]:
    """Map a header row plus data rows to student records.

    Returns the records and the number of rows dropped for lacking an RM.
    The whole table is rejected when the RM column is missing.
    """
    if not table or len(table) < 2:
        raise EmptyFileError("The file needs a header row and at least one data row.")
    headers = normalize_headers(table[0])
    if REQUIRED_COLUMN not in headers:
        raise MissingColumnError("RM", "The spreadsheet needs an 'RM' column to identify each student.")

    records: List[Dict[str, Any]] = []
    dropped = 0
    for row in table[1:]:
        student = map_row(row, headers)
        if student is None:
            dropped += 1
            continue
        records.append(student)
    return records, dropped


def parse_grade(value: Any) -> Optional[float]:
    value = to_python(value)
    if is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip().replace(",", "."))
    except ValueError:
        return None


def chunked(items: Iterable[Any], size: int) -> Iterable[List[Any]]:
    batch: List[Any] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
