"""
ScholarSync Spreadsheet Reader

Reads an uploaded container into a raw cell matrix. No header is assumed:
row 0 of the matrix is row 0 of the sheet, so the header inferencer sees
the title rows too.

Supported: .xlsx/.xlsm (openpyxl), .xls (xlrd), .xlsb (pyxlsb),
.ods (odfpy), .csv/.txt.
"""

from __future__ import annotations

import csv
import hashlib
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from import_errors import SpreadsheetUnreadable

logger = logging.getLogger(__name__)

EXCEL_ENGINES: dict[str, str] = {
    ".xlsx": "openpyxl",
    ".xlsm": "openpyxl",
    ".xls": "xlrd",
    ".xlsb": "pyxlsb",
    ".ods": "odf",
}
TEXT_SUFFIXES: frozenset[str] = frozenset({".csv", ".txt"})
SUPPORTED_SUFFIXES: frozenset[str] = frozenset(EXCEL_ENGINES) | TEXT_SUFFIXES


@dataclass
class SheetMatrix:
    rows: list[list]
    file_name: str
    sheet_name: Optional[str]
    digest: str

    @property
    def row_count(self) -> int:
        return len(self.rows)


def file_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:12]


def _frame_to_rows(frame: pd.DataFrame) -> list[list]:
    frame = frame.astype(object).where(pd.notna(frame), None)
    return frame.values.tolist()


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("cp1252", errors="replace")


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _read_delimited(data: bytes) -> pd.DataFrame:
    """
    CSV/TXT into a frame. Title rows are usually shorter than the data rows,
    so every row gets as many columns as the widest one.
    """
    text = _decode(data)
    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel
    width = max((len(r) for r in csv.reader(io.StringIO(text), dialect)), default=0)
    if width == 0:
        return pd.DataFrame(dtype=object)
    frame = pd.read_csv(
        io.StringIO(text),
        sep=dialect.delimiter,
        quotechar=dialect.quotechar or '"',
        header=None,
        names=range(width),
        dtype=object,
        keep_default_na=False,
        na_values=[""],
        skip_blank_lines=False,
    )
    return frame.apply(lambda col: col.map(_blank_to_none))


def _unreadable(file_name: str, reason: str, *steps: str) -> SpreadsheetUnreadable:
    return SpreadsheetUnreadable(
        reason=reason,
        affected_file=file_name,
        operator_fix_steps=list(steps) or [
            "Open the file in a spreadsheet program and save it again as .xlsx.",
        ],
    )


def read_matrix(
    source: Union[str, Path, bytes],
    file_name: Optional[str] = None,
    sheet: Union[int, str] = 0,
) -> SheetMatrix:
    """
    Raw cells of one sheet.

    Parameters
    ----------
    source : str | Path | bytes
        Path on disk, or the uploaded bytes.
    file_name : str, optional
        Required with bytes; its suffix selects the reader.
    sheet : int | str
        Sheet index or name. Defaults to the first sheet.

    Raises
    ------
    SpreadsheetUnreadable
        Missing file, unsupported type, or a container the reader rejects.
    """
    if isinstance(source, (str, Path)):
        path = Path(source)
        file_name = file_name or path.name
        if not path.exists():
            raise _unreadable(
                str(path), "File not found",
                f"Verify the path is correct: {path}",
            )
        data = path.read_bytes()
    else:
        data = bytes(source)
        if not file_name:
            raise ValueError("file_name is required when reading from bytes.")

    suffix = Path(file_name).suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise _unreadable(
            file_name, f"Unsupported file type '{suffix or '(none)'}'",
            "Upload an .xlsx, .xls, .xlsb, .ods or .csv file.",
        )
    if not data:
        raise _unreadable(file_name, "File is empty", "Check that the upload finished.")

    sheet_name: Optional[str] = None
    try:
        if suffix in TEXT_SUFFIXES:
            frame = _read_delimited(data)
        else:
            with pd.ExcelFile(io.BytesIO(data), engine=EXCEL_ENGINES[suffix]) as book:
                if isinstance(sheet, int):
                    if sheet >= len(book.sheet_names):
                        raise _unreadable(
                            file_name, f"Sheet {sheet} does not exist",
                            f"The workbook has {len(book.sheet_names)} sheet(s).",
                        )
                    sheet_name = book.sheet_names[sheet]
                else:
                    sheet_name = sheet
                frame = book.parse(
                    sheet_name,
                    header=None,
                    dtype=object,
                    keep_default_na=False,
                    na_values=[""],
                )
    except SpreadsheetUnreadable:
        raise
    except ImportError as e:
        raise _unreadable(
            file_name, f"No reader installed for '{suffix}' files",
            f"Install the reader for this format: {e}",
            "Or save the file as .xlsx and upload it again.",
        ) from e
    except Exception as e:
        raise _unreadable(
            file_name, "File is not parseable",
            "Verify the file is a valid spreadsheet.",
            f"Parse error: {e}",
        ) from e

    rows = _frame_to_rows(frame)
    logger.info(
        "[spreadsheet_reader] %s%s: %d rows x %d columns",
        file_name, f" [{sheet_name}]" if sheet_name else "", len(rows), frame.shape[1],
    )
    return SheetMatrix(rows=rows, file_name=file_name, sheet_name=sheet_name, digest=file_digest(data))
