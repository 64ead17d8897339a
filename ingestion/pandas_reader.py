import io
import json
import os
import zipfile
from typing import Any, List

import pandas as pd

from .errors import EmptyFileError, IngestionError, UnsupportedFileError
from .schemas import SUPPORTED_EXTENSIONS


def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def _decode(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        # Spreadsheets exported on Windows are often Latin-1
        return raw.decode("latin-1")


def read_xlsx(stream) -> List[List[Any]]:
    df = pd.read_excel(stream, sheet_name=0, header=None, dtype=object, engine="openpyxl")
    return df.values.tolist()


def read_csv(stream) -> List[List[Any]]:
    text = _decode(stream.read())
    if not text.strip():
        return []
    first_line = text.splitlines()[0]
    sep = ";" if first_line.count(";") > first_line.count(",") else ","
    df = pd.read_csv(io.StringIO(text), header=None, dtype=str, keep_default_na=False, sep=sep)
    return df.values.tolist()


def read_json(stream) -> List[List[Any]]:
    data = json.loads(_decode(stream.read()) or "null")
    if data is None:
        return []
    if not isinstance(data, list):
        raise IngestionError("A JSON upload must contain a list of rows or objects.")
    if not data:
        return []
    if all(isinstance(item, list) for item in data):
        return data
    if all(isinstance(item, dict) for item in data):
        headers: List[str] = []
        for item in data:
            for key in item:
                if key not in headers:
                    headers.append(key)
        return [headers] + [[item.get(h) for h in headers] for item in data]
    raise IngestionError("A JSON upload must contain only lists or only objects.")


def read_table(file_storage, allowed=SUPPORTED_EXTENSIONS) -> List[List[Any]]:
    """Read the first sheet of an uploaded file as a list of rows (header first)."""
    ext = file_extension(getattr(file_storage, "filename", ""))
    if ext not in allowed:
        raise UnsupportedFileError(
            "Unsupported file type. Please upload a valid " + ", ".join(allowed) + " file."
        )
    file_storage.stream.seek(0)
    try:
        if ext == ".xlsx":
            rows = read_xlsx(file_storage.stream)
        elif ext == ".csv":
            rows = read_csv(file_storage.stream)
        else:
            rows = read_json(file_storage.stream)
    except IngestionError:
        raise
    except (ValueError, zipfile.BadZipFile, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise IngestionError(f"Could not read {file_storage.filename}: {e}") from e
    if not rows:
        raise EmptyFileError("The selected file contains no data.")
    return rows
