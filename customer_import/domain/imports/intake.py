"""
File intake and row extraction.

Checks the byte size and container signature of an uploaded file before any
decoding, then decodes the first sheet (or the delimited text) with pandas
into a header list and ``RawRow`` objects that keep their spreadsheet row
number. The row ceiling is enforced while reading, so oversized files are
rejected without materializing every row.
"""
import csv
import hashlib
import io
import logging
import os
import re
from datetime import date, datetime
from typing import Any, Callable, List, Tuple

import pandas as pd

from customer_import.domain.imports.errors import (
    FileTooLargeError,
    InvalidFormatError,
    TooManyRowsError,
)
from customer_import.domain.imports.fingerprinting import calculate_fingerprint
from customer_import.domain.imports.types import ExtractedFile, RawRow

logger = logging.getLogger(__name__)

ZIP_SIGNATURE = b"PK\x03\x04"
OLE2_SIGNATURE = bytes.fromhex("D0CF11E0A1B11AE1")

SUPPORTED_EXTENSIONS = {".csv": "csv", ".xlsx": "xlsx", ".xls": "xls"}
CSV_DELIMITERS = ",;\t|"
CSV_SAMPLE_BYTES = 8192

_ALLOWED_CONTROL_BYTES = {0x09, 0x0A, 0x0D}
_UNSAFE_FILE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._ -]")


def sanitize_file_name(file_name: str, max_length: int = 255) -> str:
    """
    Restrict a client-supplied file name to ``[A-Za-z0-9._ -]`` and cap its length.

    Directory components are dropped and the extension is preserved when the
    name has to be shortened.
    """
    base = os.path.basename((file_name or "").replace("\\", "/")).strip()
    cleaned = _UNSAFE_FILE_NAME_CHARS.sub("_", base).strip(" .") or "upload"
    if len(cleaned) <= max_length:
        return cleaned
    stem, ext = os.path.splitext(cleaned)
    if len(ext) >= max_length:
        return cleaned[:max_length]
    return stem[: max_length - len(ext)] + ext


def detect_file_type(file_name: str) -> str:
    """Map the declared extension to ``csv``, ``xlsx`` or ``xls``."""
    ext = os.path.splitext(file_name or "")[1].lower()
    file_type = SUPPORTED_EXTENSIONS.get(ext)
    if file_type is None:
        raise InvalidFormatError(
            f"Unsupported file type '{ext or file_name}'. Upload a .csv, .xlsx or .xls file."
        )
    return file_type


def check_signature(content: bytes, file_type: str) -> None:
    """
    Reject content whose leading bytes do not match the declared extension.

    Workbooks must start with a ZIP (xlsx) or OLE2 (legacy xls) container
    signature. Delimited text must not look like a container and its sample
    must be free of binary control bytes.
    """
    head = content[:8]
    if file_type in ("xlsx", "xls"):
        if not (head.startswith(ZIP_SIGNATURE) or head.startswith(OLE2_SIGNATURE)):
            raise InvalidFormatError(
                f"File content does not match the .{file_type} format (unrecognized container signature)"
            )
        return

    if head.startswith(ZIP_SIGNATURE) or head.startswith(OLE2_SIGNATURE):
        raise InvalidFormatError("File content is a spreadsheet workbook, not delimited text")

    sample = content[:CSV_SAMPLE_BYTES]
    for byte in sample:
        if byte < 0x20 and byte not in _ALLOWED_CONTROL_BYTES:
            raise InvalidFormatError("File contains binary data and cannot be read as CSV")


def _decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info("CSV is not valid UTF-8; falling back to Windows-1252")
        return content.decode("cp1252", errors="replace")


def sniff_delimiter(text: str) -> str:
    """Pick the delimiter among ``, ; TAB |`` that best explains the sample."""
    sample = "\n".join(text[:CSV_SAMPLE_BYTES].splitlines()[:20])
    try:
        return csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS).delimiter
    except csv.Error:
        first_line = sample.split("\n", 1)[0]
        counts = {delimiter: first_line.count(delimiter) for delimiter in CSV_DELIMITERS}
        best = max(counts, key=counts.get)
        return best if counts[best] > 0 else ","


def _leading_blank_lines(text: str) -> Tuple[str, int]:
    """Strip whitespace-only lines from the top of ``text``; returns (rest, count)."""
    skipped = 0
    while text:
        line, sep, rest = text.partition("\n")
        if line.strip():
            break
        text = rest if sep else ""
        skipped += 1
    return text, skipped


def _frame_reader(content: bytes, file_type: str) -> Tuple[Callable[[int], pd.DataFrame], int]:
    """
    Return ``(read, line_offset)`` where ``read(nrows)`` decodes at most
    ``nrows`` rows from the top of the sheet.

    ``line_offset`` counts leading blank lines dropped from delimited text
    before parsing; they still count towards spreadsheet row numbers.
    """
    if file_type == "csv":
        text, line_offset = _leading_blank_lines(_decode_text(content))
        if not text:
            raise InvalidFormatError("File has no header row")
        delimiter = sniff_delimiter(text)
        sample = text[:CSV_SAMPLE_BYTES].splitlines()[:50]
        width = max((len(cells) for cells in csv.reader(sample, delimiter=delimiter)), default=1)

        def read_csv(nrows: int) -> pd.DataFrame:
            try:
                return pd.read_csv(
                    io.StringIO(text),
                    sep=delimiter,
                    header=None,
                    names=list(range(width)),
                    dtype=str,
                    keep_default_na=False,
                    skip_blank_lines=False,
                    nrows=nrows,
                )
            except pd.errors.EmptyDataError as exc:
                raise InvalidFormatError("File has no header row") from exc
            except pd.errors.ParserError as exc:
                raise InvalidFormatError(f"Could not parse delimited file: {exc}") from exc

        return read_csv, line_offset

    engine = "openpyxl" if content.startswith(ZIP_SIGNATURE) else None

    def read_workbook(nrows: int) -> pd.DataFrame:
        try:
            return pd.read_excel(
                io.BytesIO(content),
                sheet_name=0,
                header=None,
                dtype=object,
                nrows=nrows,
                engine=engine,
            )
        except ImportError as exc:
            raise InvalidFormatError(
                "Legacy .xls workbooks cannot be decoded on this server; save the file as .xlsx"
            ) from exc
        except Exception as exc:
            raise InvalidFormatError(f"Could not read workbook: {exc}") from exc

    return read_workbook, 0


def normalize_cell(value: Any) -> Any:
    """Convert a decoded cell to a JSON-friendly scalar; blanks become None."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    if isinstance(value, datetime):
        if (value.hour, value.minute, value.second, value.microsecond) == (0, 0, 0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        # numpy scalars
        value = value.item()
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    return value


def _build_headers(header_cells: List[Any]) -> List[str]:
    headers: List[str] = []
    seen = {}
    for index, cell in enumerate(header_cells):
        value = normalize_cell(cell)
        name = str(value) if value is not None else f"column_{index + 1}"
        key = name.lower()
        if key in seen:
            seen[key] += 1
            name = f"{name}_{seen[key]}"
        else:
            seen[key] = 1
        headers.append(name)
    return headers


def _is_blank(values: List[Any]) -> bool:
    return all(value is None for value in values)


def _decode_records(frame: pd.DataFrame) -> List[List[Any]]:
    return [[normalize_cell(cell) for cell in row] for row in frame.itertuples(index=False, name=None)]


def extract_rows(
    content: bytes,
    file_type: str,
    max_rows: int,
) -> Tuple[List[str], List[RawRow]]:
    """
    Decode ``content`` into headers and raw rows.

    The first non-blank row is the header. Row numbers are 1-based spreadsheet
    positions, so the first data row under a header on line 1 is row 2.
    Fully blank rows are skipped but keep their position in the numbering.
    The row ceiling counts rows below the header, so banner or blank rows
    above it never shrink the read window.

    Raises:
        InvalidFormatError: undecodable content or no header row
        TooManyRowsError: more than ``max_rows`` data rows
    """
    read, line_offset = _frame_reader(content, file_type)

    # One header row plus one row past the ceiling is enough to detect overflow.
    window = max_rows + 2
    records = _decode_records(read(window))
    header_index = next((i for i, cells in enumerate(records) if not _is_blank(cells)), None)
    if header_index is None:
        if len(records) >= window:
            raise InvalidFormatError(f"No header row within the first {window} rows")
        raise InvalidFormatError("File has no header row")
    if header_index > 0 and len(records) >= window:
        records = _decode_records(read(header_index + window))

    data_records = records[header_index + 1:]
    if len(data_records) > max_rows:
        raise TooManyRowsError(f"File has more than {max_rows} data rows")

    header_cells = records[header_index]
    # Drop trailing columns that have neither a header nor any value.
    width = len(header_cells)
    while width > 0 and header_cells[width - 1] is None and all(
        len(cells) < width or cells[width - 1] is None for cells in data_records
    ):
        width -= 1
    headers = _build_headers(header_cells[:width])

    rows: List[RawRow] = []
    for offset, cells in enumerate(data_records):
        cells = list(cells[:width]) + [None] * max(0, width - len(cells))
        if _is_blank(cells):
            continue
        row_number = line_offset + header_index + offset + 2
        rows.append(RawRow(row_number=row_number, values=dict(zip(headers, cells))))

    return headers, rows


def extract_file(
    content: bytes,
    file_name: str,
    *,
    max_bytes: int,
    max_rows: int,
    file_name_max_length: int = 255,
) -> ExtractedFile:
    """
    Validate and decode an uploaded file.

    Checks run cheapest first: type, emptiness, byte ceiling, signature, then
    decoding under the row ceiling.
    """
    file_type = detect_file_type(file_name)
    safe_name = sanitize_file_name(file_name, file_name_max_length)

    if not content:
        raise InvalidFormatError("File is empty")
    if len(content) > max_bytes:
        raise FileTooLargeError(
            f"File is {len(content)} bytes; the limit is {max_bytes} bytes"
        )
    check_signature(content, file_type)

    headers, rows = extract_rows(content, file_type, max_rows)
    if not rows:
        raise InvalidFormatError("File contains a header row but no data rows")

    fingerprint, _ = calculate_fingerprint(headers)
    logger.info(
        "Extracted %d rows x %d columns from '%s' (%s, %d bytes)",
        len(rows), len(headers), safe_name, file_type, len(content),
    )
    return ExtractedFile(
        file_name=safe_name,
        file_type=file_type,
        file_size_bytes=len(content),
        file_hash=hashlib.sha256(content).hexdigest(),
        column_fingerprint=fingerprint,
        headers=headers,
        rows=rows,
    )
