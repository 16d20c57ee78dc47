"""
ScholarSync Import Session

One upload from file to commit:

  session = ImportSession.load("grantees.xlsx", store)
  session.validate()                     # batch tags + store duplicate check
  session.choose(12, "degree_program", "import")
  session.commit()

RULES:
- Editing or removing a record after validation marks the session dirty;
  commit is refused until validate() has run again.
- One operation (duplicate check or commit) at a time. A new duplicate
  check supersedes a running one; a commit never starts while another
  operation holds the slot.
- Nothing fetched from the store is kept between validation and commit
  except the snapshots the diffs were computed from.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

from alias_dictionary import DISBURSEMENT_FIELDS, STUDENT_FIELDS
from batch_reconciler import BatchReport, RowIssue, describe_issue, reconcile_batch
from duplicate_matcher import MatchCandidate, find_external_duplicates
from header_inferencer import HeaderBlock, infer_header
from import_config import ImportSettings
from import_errors import (
    CommitBlocked,
    OperationCancelled,
    OperationInProgress,
    PartialCommitFailure,
    RowDiscarded,
)
from import_records import ImportRecord, PeriodKey
from merge_committer import (
    CommitProgress,
    CommitStats,
    ProgressCallback,
    build_merge_decision,
    commit_blockers,
    commit_merge_decision,
)
from merge_resolution import (
    AUTO_MERGE,
    CLEAN,
    CONFLICT,
    ResolutionSet,
    RowResolution,
    build_resolve_payload,
    carry_over_choices,
    classify_record,
    parse_resolve_response,
)
from row_normalizer import coerce_value, normalize_rows, records_frame
from spreadsheet_reader import read_matrix
from store_client import RecordStore

logger = logging.getLogger(__name__)

OPERATION_DUPLICATE_CHECK = "duplicate_check"
OPERATION_COMMIT = "commit"


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


@dataclass
class ImportReport:
    """
    Snapshot of a session for the operator.
    Surfaces every flag, discard and issue. Nothing is suppressed.
    """
    timestamp: str
    file_name: str
    upload_id: str
    header_row_index: int
    header_row_span: int
    record_count: int
    discarded: list[RowDiscarded]
    alias_map: dict[str, str]
    unmatched_columns: list[tuple[int, str]]
    academic_years: list[str]
    flags: list[str]
    issues: list[RowIssue]
    classification_counts: dict[str, int]
    open_conflicts: dict[int, list[str]]
    validated: bool
    dirty: bool
    commit_stats: Optional[CommitStats] = None

    def as_text(self) -> str:
        lines = [
            "═" * 60,
            "SCHOLARSYNC BULK IMPORT REPORT",
            "═" * 60,
            f"Generated       : {self.timestamp}",
            f"File            : {self.file_name}",
            f"Upload ID       : {self.upload_id}",
            "",
            "HEADER",
            f"  Row           : {self.header_row_index} (span {self.header_row_span})",
            f"  Academic years: {', '.join(self.academic_years) or 'none'}",
            "",
            "ROWS",
            f"  Records       : {self.record_count}",
        ]
        if not self.discarded:
            lines.append("  Discarded     : none")
        for d in self.discarded:
            lines.append(f"  Discarded     : {d.reason}: {d.count} rows")

        lines += ["", "COLUMN ALIAS MAP"]
        for raw, target in self.alias_map.items():
            lines.append(f"  '{raw}' → '{target}'")
        if self.unmatched_columns:
            lines += ["", "UNMATCHED COLUMNS"]
            for col, label in self.unmatched_columns:
                lines.append(f"  [{col}] {label}")

        lines += ["", "VALIDATION"]
        if not self.validated:
            lines.append("  Not validated")
        else:
            lines.append(f"  Status        : {'DIRTY, validate again' if self.dirty else 'current'}")
            for name in (CLEAN, AUTO_MERGE, CONFLICT):
                lines.append(f"  {name:<14}: {self.classification_counts.get(name, 0)}")

        if self.issues:
            lines += ["", "ISSUES"]
            for issue in self.issues:
                lines.append(f"  {describe_issue(issue)}")
        if self.open_conflicts:
            lines += ["", "OPEN FIELD CONFLICTS"]
            for row_index, fields in self.open_conflicts.items():
                lines.append(f"  Row {row_index}: {', '.join(fields)}")
        if self.flags:
            lines += ["", "FLAGS (all surfaced)"]
            for flag in self.flags:
                lines.append(f"  ⚑ {flag}")
        if self.commit_stats is not None:
            s = self.commit_stats
            lines += [
                "",
                "COMMIT",
                f"  Inserted      : {s.inserted}",
                f"  Updated       : {s.updated}",
                f"  Disbursements : {s.disbursements_created}",
                f"  Skipped       : {s.skipped}",
            ]
        lines.append("═" * 60)
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def new_upload_id(digest: str = "") -> str:
    stamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
    return f"{digest}-{stamp}" if digest else stamp


class ImportSession:
    """State of one upload. Not shared between uploads."""

    def __init__(
        self,
        store: RecordStore,
        settings: Optional[ImportSettings] = None,
        upload_id: Optional[str] = None,
    ):
        self.store = store
        self.settings = settings or ImportSettings()
        self.upload_id = upload_id or new_upload_id()
        self.file_name = ""
        self.header: Optional[HeaderBlock] = None
        self.records: list[ImportRecord] = []
        self.discarded: list[RowDiscarded] = []
        self.flags: list[str] = []
        self.batch_report: Optional[BatchReport] = None
        self.matches: dict[int, list[MatchCandidate]] = {}
        self.resolution_set: Optional[ResolutionSet] = None
        self.dirty = False
        self.committed = False
        self.commit_progress: Optional[CommitProgress] = None
        self._slot_lock = threading.Lock()
        self._active_operation: Optional[str] = None
        self._cancel_event: Optional[threading.Event] = None

    # -- loading -----------------------------------------------------------

    @classmethod
    def load(
        cls,
        source: Union[str, Path, bytes],
        store: RecordStore,
        *,
        file_name: Optional[str] = None,
        sheet: Union[int, str] = 0,
        settings: Optional[ImportSettings] = None,
    ) -> "ImportSession":
        matrix = read_matrix(source, file_name=file_name, sheet=sheet)
        session = cls(store, settings, upload_id=new_upload_id(matrix.digest))
        session.ingest(matrix.rows, file_name=matrix.file_name)
        return session

    @classmethod
    def from_matrix(
        cls,
        rows: list[list],
        store: RecordStore,
        *,
        file_name: str = "",
        settings: Optional[ImportSettings] = None,
        upload_id: Optional[str] = None,
    ) -> "ImportSession":
        session = cls(store, settings, upload_id=upload_id)
        session.ingest(rows, file_name=file_name)
        return session

    def ingest(self, rows: list[list], file_name: str = "") -> None:
        """Infer the header, normalize the rows and run the batch checks."""
        self.file_name = file_name
        self.header = infer_header(
            rows,
            scan_rows=self.settings.header_scan_rows,
            min_matches=self.settings.min_header_matches,
            file_label=file_name,
        )
        result = normalize_rows(
            rows,
            self.header,
            program_rules=self.settings.program_prefix_rules,
            file_label=file_name,
        )
        self.records = result.records
        self.discarded = result.discarded
        self.flags = list(result.flags)
        self.batch_report = reconcile_batch(self.records)
        self.matches = {}
        self.resolution_set = None
        self.dirty = False
        self.committed = False
        self.commit_progress = None

    # -- records -----------------------------------------------------------

    def record(self, row_index: int) -> ImportRecord:
        for record in self.records:
            if record.row_index == row_index:
                return record
        raise KeyError(f"No record for row {row_index}.")

    def edit_record(
        self,
        row_index: int,
        field_id: str,
        value: Any,
        period: Optional[tuple[str, str]] = None,
    ) -> None:
        """Change one value. `period` selects a disbursement (academic_year, semester)."""
        record = self.record(row_index)
        if period is None:
            if field_id not in STUDENT_FIELDS:
                raise KeyError(f"Unknown student field '{field_id}'.")
            record.fields[field_id] = coerce_value(field_id, value)
        else:
            key = PeriodKey(*period)
            if key not in record.disbursements:
                raise KeyError(f"Row {row_index} has no disbursement for {key.label()}.")
            if field_id not in DISBURSEMENT_FIELDS:
                raise KeyError(f"Unknown disbursement field '{field_id}'.")
            record.disbursements[key].fields[field_id] = coerce_value(field_id, value)
        self._mark_dirty(f"row {row_index} field {field_id} edited")

    def remove_record(self, row_index: int) -> ImportRecord:
        record = self.record(row_index)
        self.records.remove(record)
        self._mark_dirty(f"row {row_index} removed")
        return record

    def _mark_dirty(self, what: str) -> None:
        self.dirty = True
        logger.info("[import_session] %s; validation required", what)

    # -- operation slot ------------------------------------------------------

    @property
    def active_operation(self) -> Optional[str]:
        return self._active_operation

    def _begin(self, operation: str) -> threading.Event:
        with self._slot_lock:
            active = self._active_operation
            if active is not None:
                if operation == OPERATION_DUPLICATE_CHECK and active == OPERATION_DUPLICATE_CHECK:
                    logger.info("[import_session] superseding the running duplicate check")
                    self._cancel_event.set()
                else:
                    raise OperationInProgress(
                        reason=f"Cannot start {operation}: {active} is running",
                        affected_file=self.file_name,
                        operator_fix_steps=[f"Wait for the {active} to finish, or cancel it."],
                        active_operation=active,
                    )
            event = threading.Event()
            self._active_operation = operation
            self._cancel_event = event
            return event

    def _end(self, event: threading.Event) -> None:
        with self._slot_lock:
            if self._cancel_event is event:
                self._active_operation = None
                self._cancel_event = None

    def cancel(self) -> bool:
        """Ask the running operation to stop at its next checkpoint."""
        with self._slot_lock:
            if self._cancel_event is None:
                return False
            self._cancel_event.set()
            return True

    def clear_operation(self) -> None:
        """Release the slot, cancelling whatever holds it."""
        with self._slot_lock:
            if self._cancel_event is not None:
                self._cancel_event.set()
            self._active_operation = None
            self._cancel_event = None

    def _checkpoint(self, event: threading.Event, operation: str) -> None:
        if event.is_set():
            raise OperationCancelled(
                reason=f"{operation} cancelled",
                affected_file=self.file_name,
                operation=operation,
            )

    # -- validation ----------------------------------------------------------

    def validate(self) -> BatchReport:
        """
        Run the batch checks and the store duplicate check.

        Choices made in an earlier validation survive when their diff is
        unchanged. Clears the dirty flag.

        Raises
        ------
        StoreUnavailable, StoreRejected
            Store failure; the session keeps its previous validation state.
        OperationCancelled
            Superseded by a newer duplicate check, or cancelled.
        """
        event = self._begin(OPERATION_DUPLICATE_CHECK)
        try:
            records = list(self.records)
            batch_report = reconcile_batch(records)
            matches = find_external_duplicates(records, self.store, upload_id=self.upload_id)
            self._checkpoint(event, OPERATION_DUPLICATE_CHECK)
            if matches:
                response = self.store.resolve_import(build_resolve_payload(records, self.upload_id))
                self._checkpoint(event, OPERATION_DUPLICATE_CHECK)
                resolution_set = parse_resolve_response(response, records)
            else:
                resolution_set = ResolutionSet(clean_rows=sorted(r.row_index for r in records))
            if self.resolution_set is not None:
                carry_over_choices(self.resolution_set, resolution_set)

            with self._slot_lock:
                if event.is_set():
                    raise OperationCancelled(
                        reason=f"{OPERATION_DUPLICATE_CHECK} cancelled",
                        affected_file=self.file_name,
                        operation=OPERATION_DUPLICATE_CHECK,
                    )
                self.batch_report = batch_report
                self.matches = matches
                self.resolution_set = resolution_set
                self.dirty = False
        finally:
            self._end(event)

        logger.info(
            "[import_session] %s validated: %d records, %d blocking row(s), %d external match(es)",
            self.file_name or self.upload_id, len(records),
            len(batch_report.blocking_rows()), len(matches),
        )
        return batch_report

    def revalidate(self) -> BatchReport:
        return self.validate()

    @property
    def validated(self) -> bool:
        return self.resolution_set is not None

    # -- classification -------------------------------------------------------

    def classification(self, row_index: int) -> frozenset[str]:
        tags = self.batch_report.tags_for(row_index) if self.batch_report is not None else frozenset()
        merge_class = self.resolution_set.classification_of(row_index) if self.resolution_set else None
        return classify_record(tags, row_index in self.matches, merge_class)

    # -- resolution -----------------------------------------------------------

    def resolution(self, row_index: int) -> RowResolution:
        if self.resolution_set is None:
            raise KeyError("The upload has not been validated.")
        try:
            return self.resolution_set.resolutions[row_index]
        except KeyError:
            raise KeyError(f"Row {row_index} has no persisted match to resolve.") from None

    def choose(self, row_index: int, field_id: str, choice: str) -> None:
        self.resolution(row_index).choose(field_id, choice)

    def choose_disbursement(self, row_index: int, period: tuple[str, str], field_id: str, choice: str) -> None:
        self.resolution(row_index).choose_disbursement(PeriodKey(*period), field_id, choice)

    def skip(self, row_index: int) -> None:
        self.resolution(row_index).skip()

    def accept_import(self, row_index: int) -> None:
        self.resolution(row_index).accept_import()

    def reset(self, row_index: int) -> None:
        self.resolution(row_index).reset()

    # -- commit ------------------------------------------------------------

    def commit_blockers(self) -> list[str]:
        reasons = commit_blockers(self.batch_report if self.validated else None, self.resolution_set, self.dirty)
        if self.committed:
            reasons.append("This upload was already committed.")
        return reasons

    def can_commit(self) -> bool:
        return not self.commit_blockers()

    def commit(
        self,
        progress: Optional[CommitProgress] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CommitStats:
        """
        Build the merge decision and submit it.

        Pass the progress from a PartialCommitFailure (also kept in
        `commit_progress`) to resume.

        Raises
        ------
        CommitBlocked, OperationInProgress, OperationCancelled, PartialCommitFailure
        """
        if self.committed:
            raise CommitBlocked(
                reason="Commit blocked",
                affected_file=self.file_name,
                details=["This upload was already committed."],
            )
        event = self._begin(OPERATION_COMMIT)
        try:
            decision = build_merge_decision(
                self.records,
                self.batch_report if self.validated else None,
                self.resolution_set,
                dirty=self.dirty,
            )
            try:
                result = commit_merge_decision(
                    decision,
                    self.store,
                    self.upload_id,
                    settings=self.settings,
                    cancel_event=event,
                    progress=progress,
                    on_progress=on_progress,
                )
            except (PartialCommitFailure, OperationCancelled) as e:
                self.commit_progress = e.progress
                raise
        finally:
            self._end(event)

        self.commit_progress = result
        self.committed = True
        return result.stats

    # -- reporting -----------------------------------------------------------

    def report(self) -> ImportReport:
        header = self.header
        open_conflicts: dict[int, list[str]] = {}
        if self.resolution_set is not None:
            for row_index, diffs in self.resolution_set.open_conflicts().items():
                open_conflicts[row_index] = [d.field for d in diffs]
        return ImportReport(
            timestamp=datetime.now().isoformat(timespec="seconds"),
            file_name=self.file_name,
            upload_id=self.upload_id,
            header_row_index=header.header_row_index if header else -1,
            header_row_span=header.header_row_span if header else 0,
            record_count=len(self.records),
            discarded=list(self.discarded),
            alias_map=header.alias_map() if header else {},
            unmatched_columns=list(header.unmatched_columns) if header else [],
            academic_years=[b.label for b in header.academic_years] if header else [],
            flags=list(self.flags),
            issues=list(self.batch_report.issues) if self.batch_report else [],
            classification_counts=self.resolution_set.counts() if self.resolution_set else {},
            open_conflicts=open_conflicts,
            validated=self.validated,
            dirty=self.dirty,
            commit_stats=self.commit_progress.stats if self.committed and self.commit_progress else None,
        )

    def records_frame(self) -> pd.DataFrame:
        frame = records_frame(self.records)
        if not frame.empty:
            frame["classification"] = [
                ", ".join(sorted(self.classification(r.row_index))) for r in self.records
            ]
        return frame
