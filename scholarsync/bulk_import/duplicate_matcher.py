"""
ScholarSync External Duplicate Matcher

Asks the record store which uploaded rows may already exist.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from import_errors import StoreRejected
from import_records import ImportRecord, jsonable
from store_client import RecordStore

logger = logging.getLogger(__name__)

EXTERNAL_MATCH = "external_match"

MATCH_EXACT_NAME = "exact_name"
MATCH_AWARD_NUMBER = "award_number"
MATCH_FUZZY_NAME = "fuzzy_name"
MATCH_LRN = "lrn"

MATCH_TYPES: frozenset[str] = frozenset({
    MATCH_EXACT_NAME,
    MATCH_AWARD_NUMBER,
    MATCH_FUZZY_NAME,
    MATCH_LRN,
})


@dataclass(frozen=True)
class CandidateSignature:
    row_index: int
    surname: Optional[str]
    first_name: Optional[str]
    middle_name: Optional[str]
    award_number: Optional[str]
    institution: Optional[str]
    learner_reference_number: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "surname": self.surname,
            "first_name": self.first_name,
            "middle_name": self.middle_name,
            "award_number": self.award_number,
            "institution": self.institution,
            "learner_reference_number": self.learner_reference_number,
        }


@dataclass(frozen=True)
class MatchCandidate:
    match_type: str
    name: str
    award_number: Optional[str] = None
    institution: Optional[str] = None
    program: Optional[str] = None
    db_seq: Optional[int] = None
    score: Optional[float] = None

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> "MatchCandidate":
        match_type = str(raw.get("match_type") or "")
        if match_type not in MATCH_TYPES:
            logger.warning("[duplicate_matcher] unknown match type %r", match_type)
        score = raw.get("score")
        db_seq = raw.get("db_seq")
        return cls(
            match_type=match_type,
            name=str(raw.get("name") or ""),
            award_number=raw.get("award_number"),
            institution=raw.get("institution"),
            program=raw.get("program"),
            db_seq=int(db_seq) if db_seq is not None else None,
            score=float(score) if score is not None else None,
        )


def _text(value) -> Optional[str]:
    value = jsonable(value)
    return None if value is None else str(value)


def build_signatures(records: list[ImportRecord]) -> list[CandidateSignature]:
    """One signature per record, in input order."""
    return [
        CandidateSignature(
            row_index=r.row_index,
            surname=_text(r.get("surname")),
            first_name=_text(r.get("first_name")),
            middle_name=_text(r.get("middle_name")),
            award_number=_text(r.get("award_number")),
            institution=_text(r.get("name_of_institution")),
            learner_reference_number=_text(r.get("learner_reference_number")),
        )
        for r in records
    ]


def find_external_duplicates(
    records: list[ImportRecord],
    store: RecordStore,
    upload_id: str = "",
) -> dict[int, list[MatchCandidate]]:
    """
    Possible persisted matches per row index.

    Only rows with at least one match appear in the result; those rows are
    the ones tagged external_match.

    Raises
    ------
    StoreUnavailable
        Transport failure; safe to retry.
    StoreRejected
        The store refused the request, or answered about rows that were
        not sent.
    """
    if not records:
        return {}
    signatures = build_signatures(records)
    response = store.check_duplicates([s.to_payload() for s in signatures], upload_id=upload_id)

    sent = {s.row_index for s in signatures}
    matches: dict[int, list[MatchCandidate]] = {}
    for entry in response:
        row_index = entry.get("row_index") if isinstance(entry, dict) else None
        if row_index not in sent:
            raise StoreRejected(
                reason="Duplicate check answered for a row that was not sent",
                details=[f"row_index={row_index!r}"],
                operator_fix_steps=["Run the duplicate check again."],
            )
        candidates = [MatchCandidate.from_payload(m) for m in entry.get("matches") or []]
        if candidates:
            matches.setdefault(row_index, []).extend(candidates)

    logger.info(
        "[duplicate_matcher] %d of %d rows have possible matches in the store",
        len(matches), len(records),
    )
    return matches
