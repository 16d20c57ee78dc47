"""
ScholarSync Merge Committer

Turns a validated upload into a MergeDecision and submits it in chunks.

Phase order (strictly sequential, one request in flight):
  records        clean rows inserted, RECORD_CHUNK_SIZE per request
  auto_merge     fills and new disbursements for rows without conflicts
  resolved       fills, chosen overrides, new disbursements and
                 disbursement resolutions for conflict rows
  disbursements  disbursements of the inserted rows, DISBURSEMENT_CHUNK_SIZE
                 per request, only after every record chunk was accepted

A failed chunk after at least one accepted chunk raises
PartialCommitFailure with a CommitProgress; passing that progress back to
commit_merge_decision() resumes with the failed chunk.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from batch_reconciler import BatchReport
from import_config import ImportSettings
from import_errors import CommitBlocked, ImportHalt, OperationCancelled, PartialCommitFailure
from import_records import ImportRecord
from merge_resolution import ResolutionSet, RowResolution
from store_client import RecordStore

logger = logging.getLogger(__name__)

PHASE_RECORDS = "records"
PHASE_AUTO_MERGE = "auto_merge"
PHASE_RESOLVED = "resolved"
PHASE_DISBURSEMENTS = "disbursements"
PHASES: tuple[str, ...] = (PHASE_RECORDS, PHASE_AUTO_MERGE, PHASE_RESOLVED, PHASE_DISBURSEMENTS)

ProgressCallback = Callable[[str, int, int], None]


@dataclass(frozen=True)
class MergeDecision:
    """Everything a commit will send, serialized once at build time."""
    inserts: tuple[dict[str, Any], ...] = ()
    fill_merges: tuple[dict[str, Any], ...] = ()
    conflict_merges: tuple[dict[str, Any], ...] = ()
    new_disbursements: tuple[dict[str, Any], ...] = ()
    disbursement_conflict_resolutions: tuple[dict[str, Any], ...] = ()
    skipped: tuple[int, ...] = ()


@dataclass
class CommitStats:
    inserted: int = 0
    updated: int = 0
    disbursements_created: int = 0
    skipped: int = 0

    def add(self, stats: dict[str, Any]) -> None:
        self.inserted += int(stats.get("inserted") or 0)
        self.updated += int(stats.get("updated") or 0)
        self.disbursements_created += int(stats.get("disbursements_created") or 0)


@dataclass
class CommitProgress:
    """Accepted chunks per phase and the store keys of inserted rows."""
    upload_id: str
    completed_chunks: dict[str, int] = field(default_factory=lambda: {p: 0 for p in PHASES})
    created_keys: dict[int, Any] = field(default_factory=dict)
    stats: CommitStats = field(default_factory=CommitStats)

    @property
    def accepted_chunks(self) -> int:
        return sum(self.completed_chunks.values())


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------


def commit_blockers(
    batch_report: Optional[BatchReport],
    resolution_set: Optional[ResolutionSet],
    dirty: bool,
) -> list[str]:
    """Reasons a commit may not start. Empty when committing is allowed."""
    reasons = []
    if batch_report is None or resolution_set is None:
        reasons.append("The upload has not been validated.")
        return reasons
    if dirty:
        reasons.append("Records were edited after validation; validate again.")
    blocking = batch_report.blocking_rows()
    if blocking:
        reasons.append(f"{len(blocking)} row(s) carry blocking issues.")
    open_conflicts = resolution_set.open_conflicts()
    if open_conflicts:
        total = sum(len(d) for d in open_conflicts.values())
        reasons.append(f"{total} field conflict(s) in {len(open_conflicts)} row(s) have no choice.")
    return reasons


def build_merge_decision(
    records: list[ImportRecord],
    batch_report: Optional[BatchReport],
    resolution_set: Optional[ResolutionSet],
    *,
    dirty: bool = False,
) -> MergeDecision:
    """
    Assemble the decision for a fully validated, fully resolved upload.

    Raises
    ------
    CommitBlocked
        Not validated, edited since validation, blocking tags present, or a
        field conflict without a choice.
    """
    reasons = commit_blockers(batch_report, resolution_set, dirty)
    if reasons:
        raise CommitBlocked(
            reason="Commit blocked",
            details=reasons,
            operator_fix_steps=[
                "Fix or remove the rows listed under Issues.",
                "Choose a value for every field conflict, or skip the row.",
                "Run validation again before committing.",
            ],
            blocking_rows=batch_report.blocking_rows() if batch_report is not None else {},
            unresolved_rows=sorted(resolution_set.open_conflicts()) if resolution_set is not None else [],
        )

    records_by_row = {r.row_index: r for r in records}
    inserts = []
    new_disbursements = []
    for row_index in resolution_set.clean_rows:
        record = records_by_row.get(row_index)
        if record is None:
            continue
        inserts.append({"row_index": row_index, "data": record.student_payload()})
        for disbursement in record.sorted_disbursements():
            new_disbursements.append({"row_index": row_index, **disbursement.to_payload()})

    fill_merges = []
    conflict_merges = []
    disbursement_resolutions = []
    skipped = []
    for row_index in sorted(resolution_set.resolutions):
        if row_index not in records_by_row:
            continue
        resolution: RowResolution = resolution_set.resolutions[row_index]
        if resolution.skipped:
            skipped.append(row_index)
            continue
        payload = resolution.to_payload()
        if resolution.all_diffs():
            conflict_merges.append(payload)
            disbursement_resolutions.extend(
                {"row_index": row_index, **d.to_payload()}
                for d in resolution.disbursement_diffs if d.conflicts
            )
        else:
            fill_merges.append(payload)

    decision = MergeDecision(
        inserts=tuple(inserts),
        fill_merges=tuple(fill_merges),
        conflict_merges=tuple(conflict_merges),
        new_disbursements=tuple(new_disbursements),
        disbursement_conflict_resolutions=tuple(disbursement_resolutions),
        skipped=tuple(skipped),
    )
    logger.info(
        "[merge_committer] decision: %d inserts, %d fill merges, %d conflict merges, "
        "%d new disbursements, %d skipped",
        len(decision.inserts), len(decision.fill_merges), len(decision.conflict_merges),
        len(decision.new_disbursements), len(decision.skipped),
    )
    return decision


# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------


def chunked(items: tuple | list, size: int) -> list[list]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _request(upload_id: str, phase: str, chunk: list[dict[str, Any]]) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "upload_id": upload_id,
        "clean": [],
        "auto_merge": [],
        "resolved": [],
        "disbursements": [],
    }
    key = "clean" if phase == PHASE_RECORDS else phase
    payload[key] = chunk
    return payload


def _with_created_keys(chunk: list[dict[str, Any]], created_keys: dict[int, Any]) -> list[dict[str, Any]]:
    out = []
    for item in chunk:
        seq = created_keys.get(item["row_index"])
        out.append({**item, "persisted_key": seq} if seq is not None else dict(item))
    return out


def _record_created(response: dict[str, Any], progress: CommitProgress) -> None:
    for entry in response.get("created") or []:
        if isinstance(entry, dict) and "row_index" in entry:
            progress.created_keys[entry["row_index"]] = entry.get("seq")


def commit_merge_decision(
    decision: MergeDecision,
    store: RecordStore,
    upload_id: str,
    *,
    settings: Optional[ImportSettings] = None,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[CommitProgress] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> CommitProgress:
    """
    Submit a MergeDecision chunk by chunk.

    Parameters
    ----------
    progress : CommitProgress, optional
        Progress from a PartialCommitFailure or OperationCancelled; chunks it
        lists as accepted are not sent again.
    on_progress : callable, optional
        Called as on_progress(phase, chunk_index, chunk_count) after every
        accepted chunk.

    Raises
    ------
    OperationCancelled
        cancel_event was set; checked before every chunk.
    PartialCommitFailure
        A chunk failed after at least one chunk was accepted.
    StoreUnavailable, StoreRejected
        The very first chunk failed; nothing was written.
    """
    settings = settings or ImportSettings()
    if progress is None:
        progress = CommitProgress(upload_id=upload_id)
        progress.stats.skipped = len(decision.skipped)
    elif progress.upload_id != upload_id:
        raise ValueError(
            f"Progress belongs to upload '{progress.upload_id}', not '{upload_id}'."
        )

    plan = (
        (PHASE_RECORDS, decision.inserts, settings.record_chunk_size),
        (PHASE_AUTO_MERGE, decision.fill_merges, settings.record_chunk_size),
        (PHASE_RESOLVED, decision.conflict_merges, settings.record_chunk_size),
        (PHASE_DISBURSEMENTS, decision.new_disbursements, settings.disbursement_chunk_size),
    )

    for phase, items, size in plan:
        chunks = chunked(items, size)
        for chunk_index in range(progress.completed_chunks.get(phase, 0), len(chunks)):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    "[merge_committer] commit cancelled before %s chunk %d/%d",
                    phase, chunk_index + 1, len(chunks),
                )
                raise OperationCancelled(
                    reason="Commit cancelled",
                    details=[f"{progress.accepted_chunks} chunk(s) already accepted"],
                    operator_fix_steps=["Resume the commit to send the remaining chunks."],
                    operation="commit",
                    progress=progress,
                )
            chunk = chunks[chunk_index]
            if phase == PHASE_DISBURSEMENTS:
                chunk = _with_created_keys(chunk, progress.created_keys)
            try:
                response = store.merge_import(_request(upload_id, phase, chunk))
            except ImportHalt as e:
                if progress.accepted_chunks == 0:
                    raise
                logger.error(
                    "[merge_committer] %s chunk %d/%d failed after %d accepted chunk(s): %s",
                    phase, chunk_index + 1, len(chunks), progress.accepted_chunks, e.reason,
                )
                raise PartialCommitFailure(
                    reason="Commit stopped part-way",
                    details=[
                        f"phase {phase}, chunk {chunk_index + 1} of {len(chunks)}",
                        e.reason,
                    ],
                    operator_fix_steps=[
                        "Do not re-upload the file.",
                        "Resume the commit; accepted chunks are not sent again.",
                    ],
                    phase=phase,
                    chunk_index=chunk_index,
                    progress=progress,
                    cause=e,
                ) from e
            progress.stats.add(response.get("stats") or {})
            if phase == PHASE_RECORDS:
                _record_created(response, progress)
            progress.completed_chunks[phase] = chunk_index + 1
            logger.info(
                "[merge_committer] %s chunk %d/%d accepted (%d items)",
                phase, chunk_index + 1, len(chunks), len(chunk),
            )
            if on_progress is not None:
                on_progress(phase, chunk_index, len(chunks))

    stats = progress.stats
    logger.info(
        "[merge_committer] upload %s committed: %d inserted, %d updated, "
        "%d disbursements created, %d skipped",
        upload_id, stats.inserted, stats.updated, stats.disbursements_created, stats.skipped,
    )
    return progress
