"""
ScholarSync Header Inferencer

Finds the header of a loosely structured grantee spreadsheet and maps every
column to a canonical field.

The header may sit anywhere in the first rows of the sheet and may be
stacked over up to three rows (merged academic-year and semester cells
above the disbursement columns). Each candidate, single row or stacked
block, is scored by how many distinct canonical fields it names.

RULES:
- Same matrix in, same HeaderBlock out.
- Best score below MIN_HEADER_MATCHES halts the import. No partial mapping.
- No surname and no first-name column halts the import.
- Every column that maps to nothing is reported, never silently dropped.

Public API:
  infer_header(matrix, ...) -> HeaderBlock
  fill_forward(row, width) -> list[str]
  score_header_candidate(row) -> int
  combine_rows(rows, width) -> list[str]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union

import pandas as pd

from academic_year import AcademicYearBlock, derive_context
from alias_dictionary import (
    CURRICULUM_YEAR_LEVEL,
    is_disbursement_field,
    match_field,
)
from import_config import (
    HEADER_SCAN_ROWS,
    HEADER_TOKEN_RATIO,
    MAX_HEADER_SPAN,
    MIN_HEADER_MATCHES,
)
from import_errors import HeaderNotRecognized, MissingIdentityColumns

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StaticFieldRef:
    field_id: str


@dataclass(frozen=True)
class DynamicFieldRef:
    """
    A field bound to a disbursement period.

    academic_year is None for row-scoped columns: the period is read from the
    row's own academic_year / semester cells.
    """
    academic_year: Optional[str]
    semester: Optional[str]
    field_id: str


FieldRef = Union[StaticFieldRef, DynamicFieldRef]


@dataclass(frozen=True)
class ColumnBinding:
    column_index: int
    field_ref: FieldRef
    label: str


@dataclass(frozen=True)
class HeaderBlock:
    header_row_index: int
    header_row_span: int
    column_map: tuple[ColumnBinding, ...]
    academic_years: tuple[AcademicYearBlock, ...]
    unmatched_columns: tuple[tuple[int, str], ...]
    score: int
    width: int

    @property
    def data_start_row(self) -> int:
        return self.header_row_index + self.header_row_span

    @property
    def static_fields(self) -> frozenset[str]:
        return frozenset(
            b.field_ref.field_id for b in self.column_map
            if isinstance(b.field_ref, StaticFieldRef)
        )

    def has_field(self, field_id: str) -> bool:
        return field_id in self.static_fields

    def alias_map(self) -> dict[str, str]:
        """{label: target} for the report."""
        out: dict[str, str] = {}
        for binding in self.column_map:
            ref = binding.field_ref
            if isinstance(ref, StaticFieldRef):
                target = ref.field_id
            else:
                period = " ".join(p for p in (ref.academic_year or "<row>", ref.semester) if p)
                target = f"{period} / {ref.field_id}"
            out[f"[{binding.column_index}] {binding.label}"] = target
        return out


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------


def cell_text(value) -> str:
    """Display text of a raw cell. Empty, NaN and NaT become ""."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (datetime, date, pd.Timestamp)):
        if pd.isna(value):
            return ""
        return value.date().isoformat() if isinstance(value, datetime) else value.isoformat()
    if isinstance(value, float):
        if pd.isna(value):
            return ""
        if value.is_integer():
            return str(int(value))
    text = str(value).strip()
    if text.lower() in {"nan", "none", "nat"}:
        return ""
    return text


def _pad(row: list[str], width: int) -> list[str]:
    return list(row[:width]) + [""] * max(0, width - len(row))


def fill_forward(row: list[str], width: int) -> list[str]:
    """
    Carry each non-empty label rightward over the blank cells after it.

    fill_forward(["A", "", "", "B"], 4) == ["A", "A", "A", "B"]
    Cells before the first label stay blank.
    """
    out: list[str] = []
    current = ""
    for cell in _pad(row, width):
        if cell:
            current = cell
        out.append(current)
    return out


def combine_rows(rows: list[list[str]], width: int) -> list[str]:
    """Per column, the first non-empty cell scanning bottom-up (leaf → mid → top)."""
    padded = [_pad(r, width) for r in rows]
    combined: list[str] = []
    for col in range(width):
        value = ""
        for row in reversed(padded):
            if row[col]:
                value = row[col]
                break
        combined.append(value)
    return combined


def _resolve_label(label: str) -> Optional[str]:
    field_id = match_field(label)
    if field_id is not None:
        return field_id
    residual = derive_context(label).residual
    if residual and residual != label:
        return match_field(residual)
    return None


def score_header_candidate(row: list[str]) -> int:
    """Number of distinct canonical fields named by the row's cells."""
    matched: set[str] = set()
    for cell in row:
        if not cell:
            continue
        field_id = _resolve_label(cell)
        if field_id is not None:
            matched.add(field_id)
    return len(matched)


def is_header_token(text: str) -> bool:
    """Alias label, or a period label such as "AY 2024-2025" / "1st Semester"."""
    if not text or not any(ch.isalpha() for ch in text):
        return False
    if _resolve_label(text) is not None:
        return True
    ctx = derive_context(text)
    return (ctx.academic_year is not None or ctx.semester is not None) and not ctx.residual


def is_period_label(text: str) -> bool:
    """"AY 2024-2025", "2024-2025", "1st Semester": period context and nothing else."""
    if not text:
        return False
    ctx = derive_context(text)
    return (ctx.academic_year is not None or ctx.semester is not None) and not ctx.residual


def is_period_row(row: list[str]) -> bool:
    cells = [c for c in row if c]
    return bool(cells) and all(is_period_label(c) for c in cells)


def header_token_share(row: list[str]) -> float:
    cells = [c for c in row if c]
    if not cells:
        return 0.0
    return sum(1 for c in cells if is_header_token(c)) / len(cells)


def is_header_like(row: list[str]) -> bool:
    return header_token_share(row) >= HEADER_TOKEN_RATIO


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------


def _select_header_candidate(
    rows: list[list[str]], width: int, scan_rows: int
) -> tuple[int, int, int]:
    """
    Best (score, top, span) over single rows and stacked 2- and 3-row blocks.

    Ties prefer the shorter span, then the earlier row.
    """
    limit = min(scan_rows, len(rows))
    candidates: list[tuple[int, int, int]] = []
    for top in range(limit):
        for span in range(1, MAX_HEADER_SPAN + 1):
            if top + span > len(rows):
                break
            block = rows[top:top + span]
            candidate = block[0] if span == 1 else combine_rows(block, width)
            score = score_header_candidate(candidate)
            candidates.append((score, top, span))
            logger.debug("[header_inferencer] rows %d-%d: score=%d", top, top + span - 1, score)
    if not candidates:
        return 0, 0, 1
    return min(candidates, key=lambda c: (-c[0], c[2], c[1]))


def _settle_span(rows: list[list[str]], top: int, span: int) -> tuple[int, int]:
    """
    Drop leading title rows from a stacked block, then grow it over the
    period rows above it and the sub-header rows below it.
    """
    while span > 1 and not (is_header_like(rows[top]) or is_period_row(rows[top])):
        top += 1
        span -= 1
    while span < MAX_HEADER_SPAN and top > 0 and is_period_row(rows[top - 1]):
        top -= 1
        span += 1
    while span < MAX_HEADER_SPAN and top + span < len(rows) and is_header_like(rows[top + span]):
        span += 1
    return top, span


def _bind_column(
    col: int, labels_leaf_first: list[str]
) -> tuple[Optional[FieldRef], str]:
    academic_year = None
    semester = None
    field_id = None
    label = ""
    for text in labels_leaf_first:
        if not text:
            continue
        ctx = derive_context(text)
        academic_year = academic_year or ctx.academic_year
        semester = semester or ctx.semester
        if field_id is None:
            candidate = match_field(text) or (match_field(ctx.residual) if ctx.residual else None)
            if candidate is not None:
                field_id = candidate
                label = text
            elif not label and ctx.residual:
                label = text
    if not label:
        label = next((t for t in labels_leaf_first if t), "")
    if field_id is None:
        return None, label
    if field_id == CURRICULUM_YEAR_LEVEL:
        return DynamicFieldRef(academic_year, None, field_id), label
    if is_disbursement_field(field_id):
        return DynamicFieldRef(academic_year, semester, field_id), label
    return StaticFieldRef(field_id), label


def infer_header(
    matrix: list[list],
    *,
    scan_rows: int = HEADER_SCAN_ROWS,
    min_matches: int = MIN_HEADER_MATCHES,
    file_label: str = "",
) -> HeaderBlock:
    """
    Locate the header block of a raw cell matrix and map its columns.

    Parameters
    ----------
    matrix : list[list]
        Raw sheet cells, row-major, heterogeneous types.
    scan_rows : int
        How many leading rows may hold the header.
    min_matches : int
        Minimum distinct canonical fields the header must name.
    file_label : str
        Used in errors and log messages only.

    Raises
    ------
    HeaderNotRecognized
        Best candidate names fewer than `min_matches` fields.
    MissingIdentityColumns
        Neither a surname nor a first-name column resolved.
    """
    rows = [[cell_text(c) for c in row] for row in matrix]
    width = max((len(r) for r in rows), default=0)

    score, top, span = _select_header_candidate(rows, width, scan_rows)
    if score < min_matches:
        raise HeaderNotRecognized(
            reason="No header row recognized",
            affected_file=file_label,
            details=[f"best candidate matched {score} known field(s); {min_matches} required"],
            operator_fix_steps=[
                f"Make sure the column headers are within the first {scan_rows} rows.",
                "Use recognizable headers such as Surname, First Name, Award Number, "
                "Scholarship Program, Name of Institution.",
            ],
            best_score=score,
            best_row=top if rows else None,
        )

    top, span = _settle_span(rows, top, span)
    logger.info(
        "[header_inferencer] %s: header at row %d spanning %d row(s), %d fields matched",
        file_label or "sheet", top, span, score,
    )

    block = [_pad(r, width) for r in rows[top:top + span]]
    parents = [fill_forward(r, width) for r in block[:-1]]
    leaf = block[-1]

    bindings: list[ColumnBinding] = []
    unmatched: list[tuple[int, str]] = []
    seen: set[FieldRef] = set()
    years: list[str] = []

    for col in range(width):
        labels = [leaf[col]] + [p[col] for p in reversed(parents)]
        ref, label = _bind_column(col, labels)
        if ref is None:
            if label:
                unmatched.append((col, label))
            continue
        if ref in seen:
            logger.warning(
                "[header_inferencer] %s: column %d '%s' repeats an earlier column; ignored",
                file_label or "sheet", col, label,
            )
            unmatched.append((col, label))
            continue
        seen.add(ref)
        bindings.append(ColumnBinding(col, ref, label))
        if isinstance(ref, DynamicFieldRef) and ref.academic_year and ref.academic_year not in years:
            years.append(ref.academic_year)
        logger.info("[header_inferencer] %s: column %d '%s' → %s", file_label or "sheet", col, label, ref)

    static = {b.field_ref.field_id for b in bindings if isinstance(b.field_ref, StaticFieldRef)}
    if "surname" not in static and "first_name" not in static:
        raise MissingIdentityColumns(
            reason="No surname or first-name column found",
            affected_file=file_label,
            details=sorted(static),
            operator_fix_steps=[
                "Add a 'Surname' and a 'First Name' column to the header.",
                "Check that the name columns are not merged into a single 'Name' column.",
            ],
        )

    return HeaderBlock(
        header_row_index=top,
        header_row_span=span,
        column_map=tuple(bindings),
        academic_years=tuple(AcademicYearBlock.from_label(y) for y in years),
        unmatched_columns=tuple(unmatched),
        score=score,
        width=width,
    )
