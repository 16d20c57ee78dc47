"""
Canonical import records and the value rules shared by every stage.

A field value is one of: None (empty), str, float, datetime.date, bool.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, NamedTuple, Optional

from alias_dictionary import DISBURSEMENT_FIELDS, IDENTITY_FIELDS, STUDENT_FIELDS, normalize_token

_WHITESPACE = re.compile(r"\s+")


def is_empty(value) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def canonical_value(value) -> str:
    """
    Comparison form of a value: case-folded, whitespace-collapsed text;
    numbers without trailing zeros; dates as ISO. Empty is "".
    """
    if is_empty(value):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        number = float(value)
        return str(int(number)) if number.is_integer() else repr(number)
    if isinstance(value, date):
        return value.isoformat()
    text = _WHITESPACE.sub(" ", str(value)).strip().casefold()
    if re.match(r"-?0\d", text):
        # zero-padded identifiers (LRN, zip, phone) compare as text
        return text
    try:
        number = float(text.replace(",", ""))
    except ValueError:
        return text
    if math.isfinite(number) and re.fullmatch(r"-?[\d,]*\.?\d+", text):
        return str(int(number)) if number.is_integer() else repr(number)
    return text


def values_equal(left, right) -> bool:
    return canonical_value(left) == canonical_value(right)


def jsonable(value) -> Any:
    if is_empty(value):
        return None
    if isinstance(value, date):
        return value.isoformat()
    return value


class PeriodKey(NamedTuple):
    academic_year: str
    semester: str = ""

    def label(self) -> str:
        return f"{self.academic_year} {self.semester}".strip()


@dataclass
class DisbursementRecord:
    academic_year: str
    semester: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    curriculum_year_level: Optional[str] = None

    @property
    def key(self) -> PeriodKey:
        return PeriodKey(self.academic_year, self.semester)

    def has_data(self) -> bool:
        return any(not is_empty(v) for v in self.fields.values())

    def signature(self) -> tuple[tuple[str, str], ...]:
        """Exact content of the period, for batch comparison."""
        items = [
            (f, repr(jsonable(self.fields.get(f))))
            for f in DISBURSEMENT_FIELDS
            if not is_empty(self.fields.get(f))
        ]
        items.append(("curriculum_year_level", repr(jsonable(self.curriculum_year_level))))
        return tuple(items)

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "academic_year": self.academic_year,
            "semester": self.semester or None,
            "curriculum_year_level": jsonable(self.curriculum_year_level),
        }
        for f in DISBURSEMENT_FIELDS:
            payload[f] = jsonable(self.fields.get(f))
        return payload


@dataclass
class ImportRecord:
    row_index: int
    fields: dict[str, Any] = field(default_factory=dict)
    disbursements: dict[PeriodKey, DisbursementRecord] = field(default_factory=dict)

    def get(self, field_id: str):
        return self.fields.get(field_id)

    @property
    def identity_key(self) -> str:
        surname, first, middle = (normalize_token(self.fields.get(f) or "") for f in IDENTITY_FIELDS)
        if not surname and not first:
            return ""
        return surname + first + middle

    def student_payload(self) -> dict[str, Any]:
        return {f: jsonable(self.fields.get(f)) for f in STUDENT_FIELDS}

    def sorted_disbursements(self) -> list[DisbursementRecord]:
        return [self.disbursements[k] for k in sorted(self.disbursements)]
