"""
ScholarSync Merge Resolution Engine

Three-way comparison of an uploaded row with the persisted record it
matched.

Per field:
  existing empty, import non-empty        → fill (applied automatically)
  both non-empty and different            → FieldDiff (operator chooses)
  equal, or import empty                  → nothing to do

Values are compared after normalization, so "  Cruz " equals "CRUZ",
12500 equals "12,500.00" and a date equals its ISO text.

RULES:
- A FieldDiff never exists where the existing value is empty.
- A FieldDiff changes only through choose() / clear().
- Diffs are recomputed here from the store's snapshots; the store's own
  classification is advisory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from academic_year import normalize_academic_year, normalize_semester
from alias_dictionary import (
    BOOLEAN_FIELDS,
    CURRICULUM_YEAR_LEVEL,
    DATE_FIELDS,
    DISBURSEMENT_FIELDS,
    STUDENT_FIELDS,
)
from duplicate_matcher import EXTERNAL_MATCH
from import_errors import StoreRejected
from import_records import (
    DisbursementRecord,
    ImportRecord,
    PeriodKey,
    canonical_value,
    is_empty,
    jsonable,
    values_equal,
)
from row_normalizer import coerce_value

logger = logging.getLogger(__name__)

CLEAN = "clean"
AUTO_MERGE = "auto_merge"
CONFLICT = "conflict"

CHOICE_EXISTING = "existing"
CHOICE_IMPORT = "import"
CHOICES: frozenset[str] = frozenset({CHOICE_EXISTING, CHOICE_IMPORT})

DISBURSEMENT_DIFF_FIELDS: tuple[str, ...] = DISBURSEMENT_FIELDS + (CURRICULUM_YEAR_LEVEL,)


# ---------------------------------------------------------------------------
# Field level
# ---------------------------------------------------------------------------


@dataclass
class FieldDiff:
    field: str
    existing_value: Any
    import_value: Any
    resolution_choice: Optional[str] = None

    def __post_init__(self) -> None:
        if is_empty(self.existing_value):
            raise ValueError(f"FieldDiff for '{self.field}' needs a non-empty existing value.")

    def choose(self, choice: str) -> None:
        if choice not in CHOICES:
            raise ValueError(f"Choice must be 'existing' or 'import', got {choice!r}.")
        self.resolution_choice = choice

    def clear(self) -> None:
        self.resolution_choice = None

    @property
    def is_open(self) -> bool:
        return self.resolution_choice is None

    @property
    def chosen_value(self):
        if self.resolution_choice == CHOICE_IMPORT:
            return self.import_value
        return self.existing_value

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.field, canonical_value(self.existing_value), canonical_value(self.import_value))


def diff_fields(
    existing: dict[str, Any],
    incoming: dict[str, Any],
    fields: Iterable[str],
) -> tuple[dict[str, Any], list[FieldDiff]]:
    """Split `fields` into fills and conflicts. Pass-through fields are omitted."""
    fills: dict[str, Any] = {}
    conflicts: list[FieldDiff] = []
    for field_id in fields:
        import_value = incoming.get(field_id)
        if is_empty(import_value):
            continue
        existing_value = existing.get(field_id)
        if is_empty(existing_value):
            fills[field_id] = import_value
        elif not values_equal(existing_value, import_value):
            conflicts.append(FieldDiff(field_id, existing_value, import_value))
    return fills, conflicts


# ---------------------------------------------------------------------------
# Persisted snapshots
# ---------------------------------------------------------------------------


def _persisted_fields(raw: dict[str, Any], field_ids) -> dict[str, Any]:
    """Stored values, with flags and dates read the way upload cells are."""
    return {
        f: coerce_value(f, raw.get(f)) if f in BOOLEAN_FIELDS or f in DATE_FIELDS else raw.get(f)
        for f in field_ids
    }


@dataclass
class PersistedDisbursement:
    id: Any
    academic_year: str
    semester: str
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> PeriodKey:
        return PeriodKey(self.academic_year, self.semester)

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> "PersistedDisbursement":
        year_raw = raw.get("academic_year")
        academic_year = normalize_academic_year(year_raw) or str(year_raw or "")
        semester = normalize_semester(raw.get("semester")) or ""
        fields = _persisted_fields(raw, DISBURSEMENT_DIFF_FIELDS)
        return cls(id=raw.get("id"), academic_year=academic_year, semester=semester, fields=fields)


@dataclass
class PersistedRecord:
    seq: Any
    fields: dict[str, Any] = field(default_factory=dict)
    disbursements: list[PersistedDisbursement] = field(default_factory=list)

    @classmethod
    def from_payload(cls, db_student: dict[str, Any], db_disbursements: list[dict[str, Any]]) -> "PersistedRecord":
        return cls(
            seq=db_student.get("seq"),
            fields=_persisted_fields(db_student, STUDENT_FIELDS),
            disbursements=[PersistedDisbursement.from_payload(d) for d in db_disbursements or []],
        )

    def disbursement_for(self, key: PeriodKey) -> Optional[PersistedDisbursement]:
        for disbursement in self.disbursements:
            if disbursement.key == key:
                return disbursement
        return None


# ---------------------------------------------------------------------------
# Row level
# ---------------------------------------------------------------------------


@dataclass
class DisbursementDiff:
    period: PeriodKey
    persisted_id: Any
    fills: dict[str, Any] = field(default_factory=dict)
    conflicts: list[FieldDiff] = field(default_factory=list)

    def conflict(self, field_id: str) -> FieldDiff:
        for diff in self.conflicts:
            if diff.field == field_id:
                return diff
        raise KeyError(f"No conflict on '{field_id}' for {self.period.label()}.")

    @property
    def has_changes(self) -> bool:
        return bool(self.fills) or bool(self.conflicts)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.persisted_id,
            "academic_year": self.period.academic_year,
            "semester": self.period.semester or None,
            "fills": {f: jsonable(v) for f, v in self.fills.items()},
            "field_resolutions": {d.field: jsonable(d.chosen_value) for d in self.conflicts},
        }


def _disbursement_values(record: DisbursementRecord) -> dict[str, Any]:
    return {**record.fields, CURRICULUM_YEAR_LEVEL: record.curriculum_year_level}


@dataclass
class RowResolution:
    """Merge plan for one uploaded row against one persisted record."""
    row_index: int
    persisted: PersistedRecord
    match_type: str = ""
    fills: dict[str, Any] = field(default_factory=dict)
    conflicts: list[FieldDiff] = field(default_factory=list)
    disbursement_diffs: list[DisbursementDiff] = field(default_factory=list)
    new_disbursements: list[DisbursementRecord] = field(default_factory=list)
    skipped: bool = False

    @property
    def classification(self) -> str:
        return CONFLICT if self.all_diffs() else AUTO_MERGE

    def all_diffs(self) -> list[FieldDiff]:
        diffs = list(self.conflicts)
        for disbursement in self.disbursement_diffs:
            diffs.extend(disbursement.conflicts)
        return diffs

    def open_conflicts(self) -> list[FieldDiff]:
        if self.skipped:
            return []
        return [d for d in self.all_diffs() if d.is_open]

    @property
    def is_resolved(self) -> bool:
        return not self.open_conflicts()

    def conflict(self, field_id: str) -> FieldDiff:
        for diff in self.conflicts:
            if diff.field == field_id:
                return diff
        raise KeyError(f"Row {self.row_index} has no conflict on '{field_id}'.")

    def disbursement_diff(self, period: PeriodKey) -> DisbursementDiff:
        for diff in self.disbursement_diffs:
            if diff.period == period:
                return diff
        raise KeyError(f"Row {self.row_index} has no persisted disbursement for {period.label()}.")

    def choose(self, field_id: str, choice: str) -> None:
        self.conflict(field_id).choose(choice)

    def choose_disbursement(self, period: PeriodKey, field_id: str, choice: str) -> None:
        self.disbursement_diff(period).conflict(field_id).choose(choice)

    def skip(self) -> None:
        self.skipped = True

    def accept_import(self) -> None:
        """Resolve every diff of the row, student and disbursement level, with the uploaded value."""
        self.skipped = False
        for diff in self.all_diffs():
            diff.choose(CHOICE_IMPORT)

    def reset(self) -> None:
        self.skipped = False
        for diff in self.all_diffs():
            diff.clear()

    def to_payload(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "persisted_key": self.persisted.seq,
            "fills": {f: jsonable(v) for f, v in self.fills.items()},
            "new_disbursements": [d.to_payload() for d in self.new_disbursements],
            "field_resolutions": {d.field: jsonable(d.chosen_value) for d in self.conflicts},
            "disbursement_resolutions": [
                d.to_payload() for d in self.disbursement_diffs if d.has_changes
            ],
        }


def resolve_match(record: ImportRecord, persisted: PersistedRecord, match_type: str = "") -> RowResolution:
    """Diff one uploaded record against its persisted match."""
    fills, conflicts = diff_fields(persisted.fields, record.fields, STUDENT_FIELDS)
    disbursement_diffs: list[DisbursementDiff] = []
    new_disbursements: list[DisbursementRecord] = []
    for disbursement in record.sorted_disbursements():
        existing = persisted.disbursement_for(disbursement.key)
        if existing is None:
            new_disbursements.append(disbursement)
            continue
        d_fills, d_conflicts = diff_fields(
            existing.fields, _disbursement_values(disbursement), DISBURSEMENT_DIFF_FIELDS
        )
        disbursement_diffs.append(
            DisbursementDiff(disbursement.key, existing.id, fills=d_fills, conflicts=d_conflicts)
        )
    return RowResolution(
        row_index=record.row_index,
        persisted=persisted,
        match_type=match_type,
        fills=fills,
        conflicts=conflicts,
        disbursement_diffs=disbursement_diffs,
        new_disbursements=new_disbursements,
    )


# ---------------------------------------------------------------------------
# Upload level
# ---------------------------------------------------------------------------


@dataclass
class ResolutionSet:
    clean_rows: list[int] = field(default_factory=list)
    resolutions: dict[int, RowResolution] = field(default_factory=dict)
    summary: dict[str, Any] = field(default_factory=dict)

    def classification_of(self, row_index: int) -> Optional[str]:
        if row_index in self.resolutions:
            return self.resolutions[row_index].classification
        if row_index in self.clean_rows:
            return CLEAN
        return None

    def rows(self, classification: str) -> list[int]:
        if classification == CLEAN:
            return list(self.clean_rows)
        return sorted(r for r, res in self.resolutions.items() if res.classification == classification)

    def open_conflicts(self) -> dict[int, list[FieldDiff]]:
        out = {}
        for row_index, resolution in sorted(self.resolutions.items()):
            open_diffs = resolution.open_conflicts()
            if open_diffs:
                out[row_index] = open_diffs
        return out

    def counts(self) -> dict[str, int]:
        return {
            CLEAN: len(self.clean_rows),
            AUTO_MERGE: len(self.rows(AUTO_MERGE)),
            CONFLICT: len(self.rows(CONFLICT)),
        }


def build_resolve_payload(records: list[ImportRecord], upload_id: str = "") -> dict[str, Any]:
    students = []
    disbursements = []
    for record in records:
        students.append({"row_index": record.row_index, **record.student_payload()})
        for disbursement in record.sorted_disbursements():
            disbursements.append({"row_index": record.row_index, **disbursement.to_payload()})
    return {"upload_id": upload_id, "students": students, "disbursements": disbursements}


def _matched_entry(entry: Any, records_by_row: dict[int, ImportRecord], group: str) -> tuple[int, PersistedRecord, str]:
    row_index = entry.get("row_index") if isinstance(entry, dict) else None
    if row_index not in records_by_row:
        raise StoreRejected(
            reason="Resolve response names a row that was not uploaded",
            details=[f"{group}: row_index={row_index!r}"],
            operator_fix_steps=["Run the duplicate check again."],
        )
    db_student = entry.get("db_student")
    if not isinstance(db_student, dict):
        raise StoreRejected(
            reason="Resolve response is missing the persisted student",
            details=[f"{group}: row_index={row_index}"],
        )
    persisted = PersistedRecord.from_payload(db_student, entry.get("db_disbursements") or [])
    return row_index, persisted, str(entry.get("match_type") or "")


def parse_resolve_response(
    response: dict[str, Any],
    records: list[ImportRecord],
) -> ResolutionSet:
    """
    Build RowResolutions from a resolve-import response.

    The store's auto_merge / conflicts split is compared with the local
    recomputation and disagreements are logged; the local result wins.
    """
    records_by_row = {r.row_index: r for r in records}
    result = ResolutionSet(summary=dict(response.get("summary") or {}))

    for entry in response.get("clean") or []:
        row_index = entry.get("row_index") if isinstance(entry, dict) else entry
        if row_index not in records_by_row:
            raise StoreRejected(
                reason="Resolve response names a row that was not uploaded",
                details=[f"clean: row_index={row_index!r}"],
            )
        result.clean_rows.append(row_index)

    for group, expected in (("auto_merge", AUTO_MERGE), ("conflicts", CONFLICT)):
        for entry in response.get(group) or []:
            row_index, persisted, match_type = _matched_entry(entry, records_by_row, group)
            resolution = resolve_match(records_by_row[row_index], persisted, match_type)
            if resolution.classification != expected:
                logger.warning(
                    "[merge_resolution] row %d: store says %s, local diff says %s",
                    row_index, expected, resolution.classification,
                )
            result.resolutions[row_index] = resolution

    seen = set(result.clean_rows) | set(result.resolutions)
    for row_index in records_by_row:
        if row_index not in seen:
            logger.warning("[merge_resolution] row %d not classified by the store; treated as clean", row_index)
            result.clean_rows.append(row_index)
    result.clean_rows.sort()

    counts = result.counts()
    logger.info(
        "[merge_resolution] %d clean, %d auto_merge, %d conflict",
        counts[CLEAN], counts[AUTO_MERGE], counts[CONFLICT],
    )
    return result


def _scoped_diffs(resolution: RowResolution) -> list[tuple[Optional[PeriodKey], FieldDiff]]:
    scoped: list[tuple[Optional[PeriodKey], FieldDiff]] = [(None, d) for d in resolution.conflicts]
    for disbursement in resolution.disbursement_diffs:
        scoped.extend((disbursement.period, d) for d in disbursement.conflicts)
    return scoped


def carry_over_choices(previous: ResolutionSet, current: ResolutionSet) -> int:
    """
    Copy operator choices from an earlier validation into a fresh one.

    A choice survives when the row still matches the same persisted record
    and the diff (field, existing value, import value) is unchanged. Returns
    the number of choices carried over.
    """
    carried = 0
    for row_index, resolution in current.resolutions.items():
        old = previous.resolutions.get(row_index)
        if old is None or old.persisted.seq != resolution.persisted.seq:
            continue
        resolution.skipped = old.skipped
        old_choices = {
            (period, d.key): d.resolution_choice
            for period, d in _scoped_diffs(old) if not d.is_open
        }
        for period, diff in _scoped_diffs(resolution):
            choice = old_choices.get((period, diff.key))
            if choice is not None:
                diff.choose(choice)
                carried += 1
    if carried:
        logger.info("[merge_resolution] kept %d earlier choice(s) after revalidation", carried)
    return carried


def classify_record(
    batch_tags: Iterable[str],
    external_match: bool,
    classification: Optional[str],
) -> frozenset[str]:
    """Full, non-exclusive classification of one row."""
    tags = set(batch_tags)
    if external_match:
        tags.add(EXTERNAL_MATCH)
    if classification is not None:
        tags.add(classification)
    return frozenset(tags)
