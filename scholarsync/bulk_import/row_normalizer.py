"""
ScholarSync Row Normalizer

Turns the raw data rows under a HeaderBlock into canonical ImportRecords.

- Empty rows and stray header/section-title rows are discarded and counted.
- Amounts lose currency symbols and thousands separators.
- Date cells holding spreadsheet serials are decoded to calendar dates.
- Text is trimmed; integral floats lose their ".0" (LRNs, zip codes).
- A missing or #N/A-style scholarship program is derived from the award
  number prefix when possible. A valid program is never overwritten.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

import pandas as pd

from academic_year import normalize_academic_year, normalize_semester
from alias_dictionary import (
    AMOUNT_FIELDS,
    BOOLEAN_FIELDS,
    CURRICULUM_YEAR_LEVEL,
    DATE_FIELDS,
    STUDENT_FIELDS,
)
from header_inferencer import (
    HeaderBlock,
    StaticFieldRef,
    cell_text,
    is_header_like,
)
from import_config import DEFAULT_PROGRAM_PREFIX_RULES, ProgramPrefixRule, order_prefix_rules
from import_errors import RowDiscarded
from import_records import DisbursementRecord, ImportRecord, PeriodKey, is_empty

logger = logging.getLogger(__name__)

# 1900 date system; serial 1 is 1900-01-01 and the epoch absorbs the
# phantom 1900-02-29.
SPREADSHEET_EPOCH = date(1899, 12, 30)
MAX_DATE_SERIAL = 2958465  # 9999-12-31

DATE_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%Y/%m/%d",
    "%m/%d/%y",
    "%d-%b-%Y",
    "%d %B %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%m/%d/%Y %H:%M",
)

_FORMULA_ERROR = re.compile(r"^#[A-Z][A-Z0-9/_]*[!?]?$")
_CURRENCY_PREFIX = re.compile(r"^(?:₱|php|p(?=\s*\d))\.?\s*", re.IGNORECASE)
_NUMERIC = re.compile(r"^-?\d+(?:\.\d+)?$")
_WHITESPACE = re.compile(r"\s+")

_TRUE_WORDS = {"yes", "y", "true", "1", "✓", "✔", "x", "priority"}
_FALSE_WORDS = {"no", "n", "false", "0", "non-priority", "nonpriority"}

DISCARD_EMPTY = "Empty row"
DISCARD_HEADER_FRAGMENT = "Repeated header or section title"


@dataclass
class NormalizationResult:
    records: list[ImportRecord]
    discarded: list[RowDiscarded] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)

    @property
    def discarded_count(self) -> int:
        return sum(d.count for d in self.discarded)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def is_formula_error(value) -> bool:
    return isinstance(value, str) and bool(_FORMULA_ERROR.match(value.strip().upper()))


def clean_text(value) -> Optional[str]:
    text = cell_text(value)
    if not text:
        return None
    return _WHITESPACE.sub(" ", text)


def decode_date(value):
    """
    Calendar date for a date-like cell.

    Datetimes lose their time part; numbers (and numeric strings) are read as
    spreadsheet serials; text is tried against DATE_FORMATS. Anything else is
    returned as trimmed text so the operator still sees it.
    """
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    if isinstance(value, (datetime, pd.Timestamp)):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _serial_to_date(float(value)) or clean_text(value)
    text = clean_text(value)
    if text is None:
        return None
    if _NUMERIC.match(text):
        return _serial_to_date(float(text)) or text
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return text


def _serial_to_date(serial: float) -> Optional[date]:
    if not 1 <= serial <= MAX_DATE_SERIAL:
        return None
    return SPREADSHEET_EPOCH + timedelta(days=int(serial))


def parse_amount(value):
    """Float for "₱12,500.00" / "12 500" / 12500; other text is kept as-is."""
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = clean_text(value)
    if text is None:
        return None
    stripped = _CURRENCY_PREFIX.sub("", text).replace(",", "").replace(" ", "")
    if _NUMERIC.match(stripped):
        return float(stripped)
    return text


def parse_bool(value):
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    if isinstance(value, bool):
        return value
    text = clean_text(value)
    if text is None:
        return None
    word = text.lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    return text


def coerce_value(field_id: str, raw) -> Any:
    if field_id in DATE_FIELDS:
        return decode_date(raw)
    if field_id in AMOUNT_FIELDS:
        return parse_amount(raw)
    if field_id in BOOLEAN_FIELDS:
        return parse_bool(raw)
    return clean_text(raw)


def derive_program(
    award_number, rules: tuple[ProgramPrefixRule, ...]
) -> Optional[str]:
    if is_empty(award_number):
        return None
    text = str(award_number)
    for rule in rules:
        if rule.matches(text):
            return rule.program
    return None


def apply_program_fallback(
    fields: dict[str, Any], rules: tuple[ProgramPrefixRule, ...]
) -> Optional[str]:
    """
    Fill scholarship_program from the award number when it is empty or a
    formula error. Returns the derived program, if any.
    """
    current = fields.get("scholarship_program")
    if not is_empty(current) and not is_formula_error(current):
        return None
    derived = derive_program(fields.get("award_number"), rules)
    if derived is not None:
        fields["scholarship_program"] = derived
    elif is_formula_error(current):
        fields["scholarship_program"] = None
    return derived


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


def _raw_cell(row: list, col: int):
    return row[col] if col < len(row) else None


def _build_record(
    row_index: int,
    row: list,
    header: HeaderBlock,
    rules: tuple[ProgramPrefixRule, ...],
    flags: list[str],
) -> ImportRecord:
    fields: dict[str, Any] = {f: None for f in STUDENT_FIELDS}
    periods: dict[PeriodKey, dict[str, Any]] = defaultdict(dict)
    row_scoped: dict[str, dict[str, Any]] = defaultdict(dict)
    year_levels: dict[str, Any] = {}

    for binding in header.column_map:
        ref = binding.field_ref
        value = coerce_value(ref.field_id, _raw_cell(row, binding.column_index))
        if isinstance(ref, StaticFieldRef):
            fields[ref.field_id] = value
        elif ref.academic_year is None:
            row_scoped[ref.semester or ""][ref.field_id] = value
        elif ref.field_id == CURRICULUM_YEAR_LEVEL:
            year_levels[ref.academic_year] = value
        else:
            periods[PeriodKey(ref.academic_year, ref.semester or "")][ref.field_id] = value

    row_year = None
    row_semester = None
    if header.has_field("academic_year"):
        row_year = normalize_academic_year(fields.get("academic_year"))
        if row_year:
            fields["academic_year"] = row_year
    if header.has_field("semester"):
        row_semester = normalize_semester(fields.get("semester"))
        if row_semester:
            fields["semester"] = row_semester

    for header_semester, values in row_scoped.items():
        level = values.pop(CURRICULUM_YEAR_LEVEL, None)
        if row_year and not is_empty(level):
            year_levels.setdefault(row_year, level)
        if not any(not is_empty(v) for v in values.values()):
            continue
        if not row_year:
            flags.append(
                f"Row {row_index}: disbursement values without an academic year were dropped"
            )
            continue
        semester = header_semester or row_semester or ""
        periods[PeriodKey(row_year, semester)].update(values)

    disbursements: dict[PeriodKey, DisbursementRecord] = {}
    for key in sorted(periods):
        record = DisbursementRecord(
            academic_year=key.academic_year,
            semester=key.semester,
            fields=periods[key],
            curriculum_year_level=clean_text(year_levels.get(key.academic_year)),
        )
        if record.has_data():
            disbursements[key] = record

    derived = apply_program_fallback(fields, rules)
    if derived is not None:
        logger.info(
            "[row_normalizer] row %d: scholarship_program derived from award number → %s",
            row_index, derived,
        )

    return ImportRecord(row_index=row_index, fields=fields, disbursements=disbursements)


def normalize_rows(
    matrix: list[list],
    header: HeaderBlock,
    *,
    program_rules: Optional[tuple[ProgramPrefixRule, ...]] = None,
    file_label: str = "",
) -> NormalizationResult:
    """
    Normalize every data row below the header.

    Parameters
    ----------
    matrix : list[list]
        The same raw matrix the header was inferred from.
    header : HeaderBlock
        Result of infer_header().
    program_rules : tuple[ProgramPrefixRule, ...], optional
        Award-number prefix table; defaults to DEFAULT_PROGRAM_PREFIX_RULES.
        Applied longest prefix first whatever order it is given in.

    Returns
    -------
    NormalizationResult
        Records in sheet order, discard counts and flags.
    """
    rules = order_prefix_rules(DEFAULT_PROGRAM_PREFIX_RULES if program_rules is None else program_rules)
    records: list[ImportRecord] = []
    flags: list[str] = []
    discarded: dict[str, list[int]] = {}

    for row_index in range(header.data_start_row, len(matrix)):
        row = list(matrix[row_index])
        texts = [cell_text(c) for c in row]
        if not any(texts):
            discarded.setdefault(DISCARD_EMPTY, []).append(row_index)
            continue
        if is_header_like(texts):
            discarded.setdefault(DISCARD_HEADER_FRAGMENT, []).append(row_index)
            logger.info("[row_normalizer] %s: row %d looks like a header; discarded", file_label or "sheet", row_index)
            continue
        records.append(_build_record(row_index, row, header, rules, flags))

    # Trailing blank rows are sheet padding, not discards worth reporting.
    empties = discarded.get(DISCARD_EMPTY, [])
    last_data_row = max((r.row_index for r in records), default=-1)
    empties[:] = [i for i in empties if i < last_data_row]
    if not empties:
        discarded.pop(DISCARD_EMPTY, None)

    report = [RowDiscarded(reason, len(rows), rows) for reason, rows in discarded.items()]
    logger.info(
        "[row_normalizer] %s: %d records, %d rows discarded",
        file_label or "sheet", len(records), sum(d.count for d in report),
    )
    return NormalizationResult(records=records, discarded=report, flags=flags)


def records_frame(records: list[ImportRecord]) -> pd.DataFrame:
    """Flat preview table: one row per record, student fields plus disbursement count."""
    rows = []
    for record in records:
        row = {"row_index": record.row_index, **record.fields}
        row["disbursement_periods"] = ", ".join(k.label() for k in sorted(record.disbursements))
        rows.append(row)
    return pd.DataFrame(rows)
