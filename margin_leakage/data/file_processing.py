# margin_leakage/data/file_processing.py
"""Spreadsheet/CSV parsing into columns and string rows."""

from __future__ import annotations

import csv
import io
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..core.exceptions import FileProcessingError

Row = Dict[str, str]

# -----------------------------------------------------------------------------
# Format detection
# -----------------------------------------------------------------------------
def is_csv(filename: Optional[str], content_type: Optional[str]) -> bool:
    """CSV when the content type says so, or when a .csv name is not contradicted by an Excel type."""
    ct = (content_type or "").lower()
    if "csv" in ct:
        return True
    if "excel" in ct or "spreadsheet" in ct:
        return False
    return (filename or "").lower().endswith(".csv")

def guess_content_type(filename: str) -> str:
    lower = (filename or "").lower()
    if lower.endswith(".csv"):
        return "text/csv"
    if lower.endswith(".xls"):
        return "application/vnd.ms-excel"
    return "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

def sheet_name_for(filename: Optional[str]) -> str:
    """Display name for a file: text before the first dot."""
    base = (filename or "").split(".")[0]
    return base or "Unnamed Sheet"

# -----------------------------------------------------------------------------
# Cell / header normalisation
# -----------------------------------------------------------------------------
_COLUMN_JUNK = re.compile(r"[^a-zA-Z0-9\s_-]")

def clean_column_name(value: Any) -> str:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return "Unnamed"
    cleaned = _COLUMN_JUNK.sub("", str(value).strip()).strip()
    return cleaned or "Unnamed"

def _is_index_header(value: Any) -> bool:
    """A numeric first header cell marks a written-out index column."""
    if isinstance(value, (bool, np.bool_)):
        return False
    if isinstance(value, (int, float, np.integer, np.floating)):
        return not pd.isna(value)
    return isinstance(value, str) and value.strip() == "0"

def cell_to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (float, np.floating)):
        if np.isnan(value):
            return ""
        if float(value).is_integer():
            return str(int(value))
    return str(value).strip()

def _is_blank(value: Any) -> bool:
    return cell_to_str(value) == ""

# -----------------------------------------------------------------------------
# Readers
# -----------------------------------------------------------------------------
def _read_csv_frame(buffer: bytes) -> pd.DataFrame:
    text = buffer.decode("utf-8-sig", errors="replace")
    records = [
        [cell.strip() for cell in record]
        for record in csv.reader(io.StringIO(text))
        if any(cell.strip() for cell in record)
    ]
    # csv.reader instead of pd.read_csv, which rejects rows longer than the header; the
    # DataFrame constructor pads short rows with None
    return pd.DataFrame(records, dtype=object)

def _read_excel_frame(buffer: bytes) -> pd.DataFrame:
    return pd.read_excel(io.BytesIO(buffer), sheet_name=0, header=None, dtype=object)

def frame_to_records(raw: pd.DataFrame) -> Tuple[List[str], List[Row]]:
    """Turn a header-less frame (first row = header) into column names and string rows."""
    if raw is None or raw.empty:
        return [], []

    values = [row for row in raw.values.tolist() if not all(_is_blank(v) for v in row)]
    if not values:
        return [], []

    header, body = values[0], values[1:]
    if header and _is_index_header(header[0]):
        header = header[1:]
        body = [r[1:] for r in body]

    columns = [clean_column_name(h) for h in header]
    rows: List[Row] = []
    for record in body:
        row = {col: cell_to_str(record[i]) if i < len(record) else "" for i, col in enumerate(columns)}
        if any(row.values()):
            rows.append(row)
    return columns, rows

def process_file_data(buffer: bytes, filename: str, content_type: Optional[str] = None) -> Tuple[List[str], List[Row]]:
    """Parse a stored CSV or Excel (first sheet) file into (columns, rows)."""
    if not buffer:
        return [], []
    try:
        if is_csv(filename, content_type):
            raw = _read_csv_frame(buffer)
        else:
            raw = _read_excel_frame(buffer)
    except Exception as e:
        raise FileProcessingError(f"Failed to process file: {filename}", details=str(e))
    return frame_to_records(raw)

# -----------------------------------------------------------------------------
# Prompt helpers
# -----------------------------------------------------------------------------
def describe_for_combine(filename: str, columns: List[str], rows: List[Row], sample_rows: int = 3) -> str:
    """Compact text block describing one dataset for the combine prompt."""
    lines = [f"[File: {filename}]", f"Columns: {', '.join(columns)}", "Sample Rows:"]
    for row in rows[:sample_rows]:
        lines.append("|".join(v for v in row.values() if v))
    return "\n".join(lines) + "\n"

def rows_to_frame(columns: List[str], rows: Iterable[Row]) -> pd.DataFrame:
    return pd.DataFrame(list(rows), columns=columns)

# -----------------------------------------------------------------------------
# Numeric helpers
# -----------------------------------------------------------------------------
NUMBER_NOISE = re.compile(r"[\s$€£¥%]")

def to_number(value: Any) -> Optional[float]:
    """Lenient numeric coercion: currency symbols, thousands separators, (100) negatives, %.

    Scientific notation is kept; values with other letters in them (product codes) are not numbers.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, np.integer, np.floating)):
        return None if pd.isna(value) else float(value)
    s = str(value).strip().replace("\u00a0", "").replace(",", "")
    if not s:
        return None
    s = re.sub(r"^\((.*)\)$", r"-\1", s)   # (100) -> -100
    s = NUMBER_NOISE.sub("", s)
    try:
        number = float(s)
    except ValueError:
        return None
    return number if np.isfinite(number) else None

def coerce_numeric(df: pd.DataFrame, cols: List[str]) -> pd.DataFrame:
    """Coerce the given columns to numeric, leaving NaN where a value is unusable."""
    out = df.copy()
    for c in cols:
        if c in out.columns:
            series = out[c].astype(str)
            series = (
                series
                .str.replace("\u00a0", "", regex=False)    # nbsp
                .str.replace(",", "", regex=False)
                .str.replace(r"^\((.*)\)$", r"-\1", regex=True)  # (100) -> -100
                .str.replace(NUMBER_NOISE.pattern, "", regex=True)
            )
            out[c] = pd.to_numeric(series, errors="coerce").replace([np.inf, -np.inf], np.nan)
    return out

def find_column(columns: List[str], hints: List[str]) -> Optional[str]:
    """Find a column by name hints: exact (case-insensitive) match first, then substring."""
    normalized = {c.strip().lower().replace(" ", "_"): c for c in columns}
    for h in hints:
        if h.lower() in normalized:
            return normalized[h.lower()]
    for c in columns:
        lc = c.lower()
        if any(h.lower() in lc for h in hints):
            return c
    return None
