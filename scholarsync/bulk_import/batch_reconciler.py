"""
ScholarSync Batch Reconciler

Cross-checks the normalized records of one upload against each other.

Tags (all blocking):
  missing_status   scholarship_status is empty
  batch_conflict   same person, different student details
  exact_duplicate  same person, same periods, same disbursement content
  disb_conflict    same person, one period reported with different content

Records whose identity key is empty are never grouped. Tags do not depend on
row order; only the reported row indices do.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations

import pandas as pd

from alias_dictionary import STATUS_FIELD, STUDENT_FIELDS
from import_records import ImportRecord, canonical_value, is_empty

logger = logging.getLogger(__name__)

MISSING_STATUS = "missing_status"
BATCH_CONFLICT = "batch_conflict"
EXACT_DUPLICATE = "exact_duplicate"
DISB_CONFLICT = "disb_conflict"

BLOCKING_TAGS: frozenset[str] = frozenset({
    MISSING_STATUS,
    BATCH_CONFLICT,
    EXACT_DUPLICATE,
    DISB_CONFLICT,
})


@dataclass(frozen=True)
class RowIssue:
    row_index: int
    tag: str
    message: str
    related_rows: tuple[int, ...] = ()
    fields: tuple[str, ...] = ()
    periods: tuple[str, ...] = ()

    @property
    def blocking(self) -> bool:
        return self.tag in BLOCKING_TAGS


@dataclass
class BatchReport:
    issues: list[RowIssue] = field(default_factory=list)

    def issues_for(self, row_index: int) -> list[RowIssue]:
        return [i for i in self.issues if i.row_index == row_index]

    def tags_for(self, row_index: int) -> frozenset[str]:
        return frozenset(i.tag for i in self.issues_for(row_index))

    def blocking_rows(self) -> dict[int, list[str]]:
        out: dict[int, list[str]] = {}
        for issue in self.issues:
            if issue.blocking:
                out.setdefault(issue.row_index, []).append(issue.tag)
        return out

    @property
    def has_blockers(self) -> bool:
        return any(i.blocking for i in self.issues)

    def count(self, tag: str) -> int:
        return sum(1 for i in self.issues if i.tag == tag)


def student_fingerprint(record: ImportRecord) -> tuple[tuple[str, str], ...]:
    """Comparable form of the student-level fields."""
    return tuple((f, canonical_value(record.get(f))) for f in STUDENT_FIELDS)


def _differing_fields(members: list[ImportRecord]) -> tuple[str, ...]:
    return tuple(
        f for f in STUDENT_FIELDS
        if len({canonical_value(m.get(f)) for m in members}) > 1
    )


class _IssueCollector:
    """Merges repeated findings for one (row, tag) into a single RowIssue."""

    def __init__(self) -> None:
        self._related: dict[tuple[int, str], set[int]] = {}
        self._fields: dict[tuple[int, str], set[str]] = {}
        self._periods: dict[tuple[int, str], set[str]] = {}

    def add(
        self,
        row_index: int,
        tag: str,
        related: tuple[int, ...] = (),
        fields: tuple[str, ...] = (),
        periods: tuple[str, ...] = (),
    ) -> None:
        key = (row_index, tag)
        self._related.setdefault(key, set()).update(r for r in related if r != row_index)
        self._fields.setdefault(key, set()).update(fields)
        self._periods.setdefault(key, set()).update(periods)

    def issues(self) -> list[RowIssue]:
        out = []
        for key in sorted(self._related):
            row_index, tag = key
            related = tuple(sorted(self._related[key]))
            fields = tuple(f for f in STUDENT_FIELDS if f in self._fields[key])
            periods = tuple(sorted(self._periods[key]))
            out.append(RowIssue(
                row_index=row_index,
                tag=tag,
                message=_message(tag, related, fields, periods),
                related_rows=related,
                fields=fields,
                periods=periods,
            ))
        return out


def _message(tag: str, related: tuple[int, ...], fields: tuple[str, ...], periods: tuple[str, ...]) -> str:
    rows = ", ".join(str(r) for r in related)
    if tag == MISSING_STATUS:
        return "Scholarship status is empty"
    if tag == BATCH_CONFLICT:
        return f"Same student as row(s) {rows} with different {', '.join(fields)}"
    if tag == EXACT_DUPLICATE:
        return f"Exact duplicate of row(s) {rows}"
    return f"Disbursement for {', '.join(periods)} differs from row(s) {rows}"


def _compare_disbursements(a: ImportRecord, b: ImportRecord, collector: _IssueCollector) -> None:
    shared = set(a.disbursements) & set(b.disbursements)
    differing = sorted(
        k for k in shared
        if a.disbursements[k].signature() != b.disbursements[k].signature()
    )
    if differing:
        labels = tuple(k.label() for k in differing)
        collector.add(a.row_index, DISB_CONFLICT, (b.row_index,), periods=labels)
        collector.add(b.row_index, DISB_CONFLICT, (a.row_index,), periods=labels)
        return
    if set(a.disbursements) == set(b.disbursements):
        collector.add(a.row_index, EXACT_DUPLICATE, (b.row_index,))
        collector.add(b.row_index, EXACT_DUPLICATE, (a.row_index,))
    # Disjoint or nested period sets with an identical overlap are one
    # student's history split over several rows.


def _identity_frame(records: list[ImportRecord]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "position": range(len(records)),
            "row_index": [r.row_index for r in records],
            "identity_key": [r.identity_key for r in records],
        }
    )


def reconcile_batch(records: list[ImportRecord]) -> BatchReport:
    """
    Tag the records of one upload.

    Parameters
    ----------
    records : list[ImportRecord]
        Normalized records, any order.

    Returns
    -------
    BatchReport
        One RowIssue per (row, tag), sorted by row index then tag.
    """
    collector = _IssueCollector()

    for record in records:
        if is_empty(record.get(STATUS_FIELD)):
            collector.add(record.row_index, MISSING_STATUS)

    frame = _identity_frame(records)
    keyed = frame[frame["identity_key"] != ""]
    for identity_key, group in keyed.groupby("identity_key", sort=True):
        if len(group) < 2:
            continue
        members = [records[p] for p in group.sort_values("row_index")["position"]]
        row_indices = tuple(m.row_index for m in members)

        if len({student_fingerprint(m) for m in members}) > 1:
            fields = _differing_fields(members)
            for member in members:
                collector.add(member.row_index, BATCH_CONFLICT, row_indices, fields=fields)
            logger.info(
                "[batch_reconciler] rows %s: same student, different %s",
                list(row_indices), ", ".join(fields),
            )
            continue

        for a, b in combinations(members, 2):
            _compare_disbursements(a, b, collector)

    report = BatchReport(issues=collector.issues())
    logger.info(
        "[batch_reconciler] %d records: %d missing_status, %d batch_conflict, "
        "%d exact_duplicate, %d disb_conflict",
        len(records),
        report.count(MISSING_STATUS),
        report.count(BATCH_CONFLICT),
        report.count(EXACT_DUPLICATE),
        report.count(DISB_CONFLICT),
    )
    return report


def describe_issue(issue: RowIssue) -> str:
    return f"Row {issue.row_index} [{issue.tag}]: {issue.message}"
