"""
Academic-year and semester context from free-text labels.

All header heuristics for periods live here so they can be extended without
touching the inference pipeline:

  derive_context("AY 2024-2025 1st Sem Amount")
      -> LabelContext(academic_year="2024-2025", semester="First", residual="Amount")
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from import_config import MAX_ACADEMIC_YEAR_SPAN

FIRST_SEMESTER = "First"
SECOND_SEMESTER = "Second"
SUMMER_TERM = "Summer"

_AY_PREFIX = r"(?:\b(?:a\.?\s*y\.?|s\.?\s*y\.?|academic\s+year|school\s+year)\s*:?\s*)?"
_YEAR_PAIR = re.compile(
    _AY_PREFIX + r"(?<!\d)((?:19|20)\d{2})\s*[-/–—]\s*((?:19|20)?\d{2})(?!\d)",
    re.IGNORECASE,
)
_BARE_YEAR = re.compile(_AY_PREFIX + r"(?<!\d)((?:19|20)\d{2})(?!\d)", re.IGNORECASE)

_SEMESTER_WORD = r"(?:semester|sem|term)\.?"
_OPTIONAL_WORD = r"(?:" + _SEMESTER_WORD + r")?"
_SEMESTER_PATTERNS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"\b(?:1st|first)\b(?!\s*name)\s*" + _OPTIONAL_WORD, re.IGNORECASE), FIRST_SEMESTER),
    (re.compile(r"\b(?:2nd|second)\b(?!\s*name)\s*" + _OPTIONAL_WORD, re.IGNORECASE), SECOND_SEMESTER),
    (re.compile(r"\b(?:summer|mid-?year)\b\s*" + _OPTIONAL_WORD, re.IGNORECASE), SUMMER_TERM),
    (re.compile(r"\b" + _SEMESTER_WORD + r"\s*1\b", re.IGNORECASE), FIRST_SEMESTER),
    (re.compile(r"\b" + _SEMESTER_WORD + r"\s*2\b", re.IGNORECASE), SECOND_SEMESTER),
)

# Bare values accepted in a per-row "Semester" data column.
_SEMESTER_VALUES: dict[str, str] = {
    "1": FIRST_SEMESTER,
    "2": SECOND_SEMESTER,
    "3": SUMMER_TERM,
    "first": FIRST_SEMESTER,
    "second": SECOND_SEMESTER,
    "summer": SUMMER_TERM,
}


@dataclass(frozen=True)
class LabelContext:
    academic_year: Optional[str]
    semester: Optional[str]
    residual: str


@dataclass(frozen=True)
class AcademicYearBlock:
    label: str
    id: str

    @classmethod
    def from_label(cls, label: str) -> "AcademicYearBlock":
        return cls(label=label, id=academic_year_id(label))


def academic_year_id(label: str) -> str:
    return "ay_" + label.replace("-", "_")


def _validated_pair(start: int, end: int) -> Optional[str]:
    if end <= start or end - start > MAX_ACADEMIC_YEAR_SPAN:
        return None
    return f"{start}-{end}"


def _expand_end_year(start: int, end_raw: str) -> int:
    if len(end_raw) == 4:
        return int(end_raw)
    end = (start // 100) * 100 + int(end_raw)
    if end < start:
        # 1999-00
        end += 100
    return end


def normalize_academic_year(text) -> Optional[str]:
    """
    Canonical "YYYY-YYYY" label, or None.

    Accepts "2024-2025", "2024/2025", "2024-25", "AY 2024-2025" and a bare
    "2024" (read as 2024-2025). A year pair whose end does not exceed its
    start, or that spans more than ten years, is rejected outright.
    """
    if text is None:
        return None
    value = str(text).strip()
    if not value:
        return None
    pair = _YEAR_PAIR.search(value)
    if pair:
        start = int(pair.group(1))
        return _validated_pair(start, _expand_end_year(start, pair.group(2)))
    bare = _BARE_YEAR.search(value)
    if bare:
        start = int(bare.group(1))
        return f"{start}-{start + 1}"
    return None


def detect_semester(text) -> Optional[str]:
    if text is None:
        return None
    value = str(text)
    for pattern, semester in _SEMESTER_PATTERNS:
        if pattern.search(value):
            return semester
    return None


def normalize_semester(value) -> Optional[str]:
    """Semester from a data cell: words, ordinals, or bare 1/2/3."""
    if value is None:
        return None
    text = str(value).strip()
    if text.endswith(".0"):
        text = text[:-2]
    bare = _SEMESTER_VALUES.get(text.lower())
    if bare:
        return bare
    return detect_semester(text)


def _strip(pattern: re.Pattern, text: str) -> str:
    return pattern.sub(" ", text)


def derive_context(label) -> LabelContext:
    """
    Split a header label into academic year, semester and the remaining text.

    Context tokens are stripped from the residual only when they carry a
    value; a plain "Semester" or "Academic Year" label is left intact so it
    can still resolve to the per-row period columns.
    """
    text = "" if label is None else str(label)
    academic_year = None
    residual = text

    pair = _YEAR_PAIR.search(text)
    if pair:
        start = int(pair.group(1))
        academic_year = _validated_pair(start, _expand_end_year(start, pair.group(2)))
        residual = _strip(_YEAR_PAIR, residual)
    else:
        bare = _BARE_YEAR.search(text)
        if bare:
            start = int(bare.group(1))
            academic_year = f"{start}-{start + 1}"
            residual = _strip(_BARE_YEAR, residual)

    semester = None
    for pattern, candidate in _SEMESTER_PATTERNS:
        if pattern.search(residual):
            semester = candidate
            residual = _strip(pattern, residual)
            break

    residual = re.sub(r"\s+", " ", residual).strip(" -/:|,()")
    return LabelContext(academic_year=academic_year, semester=semester, residual=residual)
