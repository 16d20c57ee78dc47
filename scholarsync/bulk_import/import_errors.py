"""
ScholarSync Bulk Import: error taxonomy

Fatal conditions are raised as structured halt errors that carry the
operator fix steps. Non-fatal conditions (discarded rows, blocking tags,
open field conflicts) are plain records surfaced in the import report and
never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class RowDiscarded:
    """Rows skipped during normalization, grouped by reason. Not an error."""
    reason: str
    count: int
    row_indices: list[int] = field(default_factory=list)


@dataclass
class ImportHalt(Exception):
    """Structured halt error. Base for every fatal import condition."""
    reason: str
    affected_file: str = ""
    details: list[str] = field(default_factory=list)
    operator_fix_steps: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [
            "═" * 60,
            "BULK IMPORT HALT",
            "═" * 60,
            f"Reason          : {self.reason}",
        ]
        if self.affected_file:
            lines.append(f"Affected File   : {self.affected_file}")
        if self.details:
            lines.append(f"Details         : {', '.join(self.details)}")
        if self.operator_fix_steps:
            lines.append("Fix Steps:")
            for i, step in enumerate(self.operator_fix_steps, 1):
                lines.append(f"  {i}. {step}")
        lines.append("═" * 60)
        return "\n".join(lines)


@dataclass
class SpreadsheetUnreadable(ImportHalt):
    pass


@dataclass
class HeaderNotRecognized(ImportHalt):
    """No scanned row (or stacked block) matched enough known fields."""
    best_score: int = 0
    best_row: Optional[int] = None


@dataclass
class MissingIdentityColumns(ImportHalt):
    """A header was found but carries no surname or first-name column."""
    pass


@dataclass
class StoreUnavailable(ImportHalt):
    """Transient store failure. The validate/commit step can be retried."""
    status_code: Optional[int] = None


@dataclass
class StoreRejected(ImportHalt):
    """The store answered, but refused the request or sent an unusable body."""
    status_code: Optional[int] = None


@dataclass
class CommitBlocked(ImportHalt):
    """Commit refused before any request was sent."""
    blocking_rows: dict[int, list[str]] = field(default_factory=dict)
    unresolved_rows: list[int] = field(default_factory=list)


@dataclass
class PartialCommitFailure(ImportHalt):
    """
    A commit chunk failed after earlier chunks were accepted.

    `progress` is the CommitProgress to hand back to commit() to resume.
    """
    phase: str = ""
    chunk_index: int = 0
    progress: object = None
    cause: Optional[BaseException] = None


@dataclass
class OperationInProgress(ImportHalt):
    active_operation: str = ""


@dataclass
class OperationCancelled(ImportHalt):
    """Cancelled between chunks. A cancelled commit carries its progress."""
    operation: str = ""
    progress: object = None
