"""
ScholarSync Bulk Import: configuration

Module-level constants are the defaults. Callers that need different
values pass an ImportSettings instance; nothing here reads the environment.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Header inference
# ---------------------------------------------------------------------------

HEADER_SCAN_ROWS: int = 30
MIN_HEADER_MATCHES: int = 5
MAX_HEADER_SPAN: int = 3

# Share of a row's non-empty cells that must look like header tokens for the
# row to count as a (sub-)header or to be discarded from the data region.
HEADER_TOKEN_RATIO: float = 0.40

# ---------------------------------------------------------------------------
# Academic years
# ---------------------------------------------------------------------------

MAX_ACADEMIC_YEAR_SPAN: int = 10

# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------

RECORD_CHUNK_SIZE: int = 100
DISBURSEMENT_CHUNK_SIZE: int = 500

# ---------------------------------------------------------------------------
# Store endpoints
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_SECONDS: float = 30.0
CHECK_DUPLICATES_PATH: str = "/students/check-duplicates"
RESOLVE_IMPORT_PATH: str = "/students/resolve-import"
MERGE_IMPORT_PATH: str = "/students/merge-import"


@dataclass(frozen=True)
class ProgramPrefixRule:
    """Award numbers starting with `prefix` belong to `program`."""
    prefix: str
    program: str

    def matches(self, award_number: str) -> bool:
        return award_number.strip().upper().startswith(self.prefix.upper())


# Award-number prefix → scholarship program. Longer prefixes are checked
# first, so "CGMS-SUC" is never shadowed by "CGMS".
DEFAULT_PROGRAM_PREFIX_RULES: tuple[ProgramPrefixRule, ...] = (
    ProgramPrefixRule("ACEF-GIAHEP", "ACEF-GIAHEP"),
    ProgramPrefixRule("GIAHEP", "ACEF-GIAHEP"),
    ProgramPrefixRule("CGMS-SUC", "CGMS-SUCs"),
    ProgramPrefixRule("CGMS", "CGMS-SUCs"),
    ProgramPrefixRule("COSCHO", "CoScho"),
    ProgramPrefixRule("MTP-SP", "MTP-SP"),
    ProgramPrefixRule("MTP", "MTP-SP"),
    ProgramPrefixRule("SIDA-SGP", "SIDA-SGP"),
    ProgramPrefixRule("SIDA", "SIDA-SGP"),
    ProgramPrefixRule("SNPLP", "SNPLP"),
    ProgramPrefixRule("ESTAT", "Estatistikolar"),
    ProgramPrefixRule("MSRS", "MSRS"),
    ProgramPrefixRule("CMSP", "CMSP"),
)


def order_prefix_rules(
    rules: list[ProgramPrefixRule] | tuple[ProgramPrefixRule, ...],
) -> tuple[ProgramPrefixRule, ...]:
    """Longest prefix first; ties keep their declared order."""
    return tuple(sorted(rules, key=lambda r: -len(r.prefix)))


def load_program_prefix_rules(path: str | Path) -> tuple[ProgramPrefixRule, ...]:
    """
    Load prefix rules from a JSON file.

    Accepted shapes:
      {"CMSP": "CMSP", "ESTAT": "Estatistikolar"}
      [{"prefix": "CMSP", "program": "CMSP"}, ...]
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        pairs = list(raw.items())
    elif isinstance(raw, list):
        pairs = [(item["prefix"], item["program"]) for item in raw]
    else:
        raise ValueError(
            f"Program prefix rules in '{path}' must be an object or a list, "
            f"got {type(raw).__name__}."
        )
    rules = []
    for prefix, program in pairs:
        prefix = str(prefix).strip()
        program = str(program).strip()
        if not prefix or not program:
            raise ValueError(f"Empty prefix or program in '{path}': {prefix!r} → {program!r}")
        rules.append(ProgramPrefixRule(prefix, program))
    logger.info("[import_config] loaded %d program prefix rules from %s", len(rules), path)
    return order_prefix_rules(rules)


@dataclass
class ImportSettings:
    """Per-session overrides of the module defaults."""
    base_url: str = "http://localhost:8000/api"
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    record_chunk_size: int = RECORD_CHUNK_SIZE
    disbursement_chunk_size: int = DISBURSEMENT_CHUNK_SIZE
    header_scan_rows: int = HEADER_SCAN_ROWS
    min_header_matches: int = MIN_HEADER_MATCHES
    program_prefix_rules: tuple[ProgramPrefixRule, ...] = field(
        default_factory=lambda: order_prefix_rules(DEFAULT_PROGRAM_PREFIX_RULES)
    )
    api_key: Optional[str] = None

    def __post_init__(self) -> None:
        self.program_prefix_rules = order_prefix_rules(self.program_prefix_rules)
        if self.record_chunk_size < 1 or self.disbursement_chunk_size < 1:
            raise ValueError("Chunk sizes must be positive.")
        if self.disbursement_chunk_size < self.record_chunk_size:
            logger.warning(
                "[import_config] disbursement chunk (%d) smaller than record chunk (%d)",
                self.disbursement_chunk_size, self.record_chunk_size,
            )
