"""
ScholarSync Alias Dictionary

Static mapping from canonical field ids to the header variants seen in
grantee spreadsheets.

RULES:
- Deterministic string matching only. No fuzzy matching.
- Variants are compared after normalization: lower-case, every
  non-alphanumeric character removed ("Learner Reference No." → "learnerreferenceno").
- A header cell matches at most one canonical field.
- The same normalized variant may not map to two fields; the lookup build
  fails at import time if it does.

Public API:
  normalize_token(text) -> str
  match_field(text) -> str | None
  is_alias_token(text) -> bool
  ALIAS_ENTRIES, STUDENT_FIELDS, DISBURSEMENT_FIELDS, PERIOD_FIELDS
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[\W_]+", re.UNICODE)


def normalize_token(text) -> str:
    """Lower-case and strip everything that is not a letter or digit."""
    if text is None:
        return ""
    return _NON_ALNUM.sub("", str(text).lower())


# ---------------------------------------------------------------------------
# Canonical schema
# ---------------------------------------------------------------------------

STUDENT_FIELDS: tuple[str, ...] = (
    "in_charge",
    "award_year",
    "scholarship_program",
    "award_number",
    "learner_reference_number",
    "surname",
    "first_name",
    "middle_name",
    "extension",
    "sex",
    "date_of_birth",
    "contact_number",
    "email_address",
    "street_brgy",
    "municipality_city",
    "province",
    "congressional_district",
    "zip_code",
    "special_group",
    "certification_number",
    "name_of_institution",
    "uii",
    "institutional_type",
    "region",
    "degree_program",
    "program_major",
    "program_discipline",
    "program_degree_level",
    "authority_type",
    "authority_number",
    "series",
    "is_priority",
    "basis_cmo",
    "scholarship_status",
    "replacement_info",
    "termination_reason",
)

DISBURSEMENT_FIELDS: tuple[str, ...] = (
    "nta",
    "fund_source",
    "voucher_tracking_no",
    "mode_of_payment",
    "atm_account_no",
    "date_process",
    "voucher_no",
    "voucher_date",
    "account_check_no",
    "amount",
    "lddap_no",
    "disbursement_date",
    "status",
    "remarks",
)

# Per-row period columns, used when disbursement columns carry no
# academic-year header of their own.
PERIOD_FIELDS: tuple[str, ...] = ("academic_year", "semester")

CURRICULUM_YEAR_LEVEL: str = "curriculum_year_level"

IDENTITY_FIELDS: tuple[str, ...] = ("surname", "first_name", "middle_name")
STATUS_FIELD: str = "scholarship_status"

DATE_FIELDS: frozenset[str] = frozenset({
    "date_of_birth",
    "date_process",
    "voucher_date",
    "disbursement_date",
})
AMOUNT_FIELDS: frozenset[str] = frozenset({"amount"})
BOOLEAN_FIELDS: frozenset[str] = frozenset({"is_priority"})


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------
# Written in their natural spreadsheet casing; normalization happens when the
# lookup is built.

_STUDENT_VARIANTS: dict[str, list[str]] = {
    "in_charge":                ["In-Charge", "In Charge", "Person In Charge", "Focal"],
    "award_year":               ["Award Year", "Year Awarded", "Year of Award"],
    "scholarship_program":      ["Scholarship Program", "Scholarship", "Program Name of Scholarship",
                                 "Scholarship Type", "Type of Scholarship"],
    "award_number":             ["Award Number", "Award No", "Award No.", "Award #", "Award Num",
                                 "Scholarship Award Number"],
    "learner_reference_number": ["Learner Reference Number", "Learner Reference No", "LRN",
                                 "LRN No", "Learner Ref No"],
    "surname":                  ["Surname", "Last Name", "Lastname", "Family Name"],
    "first_name":               ["First Name", "Firstname", "Given Name", "Given Names"],
    "middle_name":              ["Middle Name", "Middlename", "Middle Initial", "M.I.", "MI"],
    "extension":                ["Extension", "Name Extension", "Ext", "Suffix", "Ext Name"],
    "sex":                      ["Sex", "Gender"],
    "date_of_birth":            ["Date of Birth", "Birthdate", "Birth Date", "Birthday", "DOB"],
    "contact_number":           ["Contact Number", "Contact No", "Contact No.", "Mobile Number",
                                 "Mobile No", "Cellphone Number", "Phone Number"],
    "email_address":            ["Email Address", "Email", "E-mail", "E-mail Address"],
    "street_brgy":              ["Street/Brgy", "Street Barangay", "Barangay", "Brgy", "Street"],
    "municipality_city":        ["Municipality/City", "Municipality", "City", "City/Municipality",
                                 "Town/City"],
    "province":                 ["Province"],
    "congressional_district":   ["Congressional District", "District", "Cong District"],
    "zip_code":                 ["Zip Code", "Zipcode", "Postal Code", "Zip"],
    "special_group":            ["Special Group", "Special Equity Group", "Equity Group"],
    "certification_number":     ["Certification Number", "Certification No", "Cert No"],
    "name_of_institution":      ["Name of Institution", "Institution", "HEI", "Name of HEI",
                                 "School", "School Name", "Institution Name"],
    "uii":                      ["UII", "Unique Institutional Identifier", "HEI UII"],
    "institutional_type":       ["Institutional Type", "Institution Type", "Type of Institution",
                                 "HEI Type"],
    "region":                   ["Region"],
    "degree_program":           ["Degree Program", "Course", "Program Name", "Degree",
                                 "Course/Program"],
    "program_major":            ["Program Major", "Major"],
    "program_discipline":       ["Program Discipline", "Discipline"],
    "program_degree_level":     ["Program Degree Level", "Degree Level"],
    "authority_type":           ["Authority Type", "Type of Authority"],
    "authority_number":         ["Authority Number", "Authority No"],
    "series":                   ["Series", "Series of"],
    "is_priority":              ["Priority", "Is Priority", "Priority Program", "Priority Course"],
    "basis_cmo":                ["Basis (CMO)", "Basis CMO", "CMO", "Basis"],
    "scholarship_status":       ["Scholarship Status", "Scholar Status", "Status of Scholarship",
                                 "Grantee Status"],
    "replacement_info":         ["Replacement", "Replacement Info", "Replaced By", "Replacement For"],
    "termination_reason":       ["Reason", "Termination Reason", "Reason for Termination",
                                 "Reason of Termination"],
}

_DISBURSEMENT_VARIANTS: dict[str, list[str]] = {
    "nta":                  ["NTA", "NTA No", "NTA Number"],
    "fund_source":          ["Fund Source", "Source of Fund", "Source of Funds", "Fund"],
    "voucher_tracking_no":  ["Voucher Tracking No", "Voucher Tracking No.", "Voucher Tracking Number",
                             "VTN"],
    "mode_of_payment":      ["Mode of Payment", "Payment Mode", "MOP"],
    "atm_account_no":       ["ATM Account No", "ATM Account Number", "ATM No", "Account Number"],
    "date_process":         ["Date Process", "Date Processed", "Processing Date"],
    "voucher_no":           ["Voucher No", "Voucher No.", "Voucher Number", "DV No", "DV Number"],
    "voucher_date":         ["Voucher Date", "DV Date"],
    "account_check_no":     ["Account/Check No", "Account/Check No.", "Check No", "Check Number",
                             "Account Check No"],
    "amount":               ["Amount", "Amount Released", "Grant Amount", "Amount Received",
                             "Stipend"],
    "lddap_no":             ["LDDAP No", "LDDAP No.", "LDDAP", "LDDAP Number", "LDDAP-ADA No"],
    "disbursement_date":    ["Disbursement Date", "Date of Disbursement", "Date Released",
                             "Release Date"],
    "status":               ["Status", "Payment Status", "Disbursement Status"],
    "remarks":              ["Remarks", "Remark", "Notes"],
}

_PERIOD_VARIANTS: dict[str, list[str]] = {
    "academic_year":    ["Academic Year", "AY", "A.Y.", "School Year", "SY"],
    "semester":         ["Semester", "Sem", "Term"],
}

_CURRICULUM_YEAR_LEVEL_VARIANTS: list[str] = [
    "Curriculum Year Level",
    "CYL",
    "Year Level",
    "Curr Year Level",
    "Curriculum Year",
]


@dataclass(frozen=True)
class AliasEntry:
    canonical_field: str
    variants: frozenset[str]

    def matches(self, token: str) -> bool:
        return token in self.variants


def _entries(variants: dict[str, list[str]]) -> list[AliasEntry]:
    return [
        AliasEntry(field_id, frozenset(normalize_token(v) for v in raw if normalize_token(v)))
        for field_id, raw in variants.items()
    ]


# Order is match precedence.
ALIAS_ENTRIES: tuple[AliasEntry, ...] = tuple(
    _entries(_STUDENT_VARIANTS)
    + _entries(_DISBURSEMENT_VARIANTS)
    + _entries(_PERIOD_VARIANTS)
    + [AliasEntry(
        CURRICULUM_YEAR_LEVEL,
        frozenset(normalize_token(v) for v in _CURRICULUM_YEAR_LEVEL_VARIANTS),
    )]
)


def _build_alias_lookup(entries: tuple[AliasEntry, ...]) -> dict[str, str]:
    """
    Flatten the entries into {normalized_variant: canonical_field}.

    Raises ValueError if one normalized variant belongs to two fields.
    """
    lookup: dict[str, str] = {}
    for entry in entries:
        for variant in entry.variants:
            existing = lookup.get(variant)
            if existing is not None and existing != entry.canonical_field:
                raise ValueError(
                    f"Alias dictionary conflict: variant '{variant}' maps to "
                    f"'{entry.canonical_field}' but was already mapped to '{existing}'."
                )
            lookup[variant] = entry.canonical_field
    return lookup


# Module-level lookup, built once and never mutated.
_ALIAS_LOOKUP: dict[str, str] = _build_alias_lookup(ALIAS_ENTRIES)

CANONICAL_FIELDS: frozenset[str] = frozenset(e.canonical_field for e in ALIAS_ENTRIES)


def match_field(text) -> str | None:
    """Canonical field for a header cell, or None."""
    token = normalize_token(text)
    if not token:
        return None
    return _ALIAS_LOOKUP.get(token)


def is_alias_token(text) -> bool:
    return match_field(text) is not None


def is_disbursement_field(field_id: str) -> bool:
    return field_id in DISBURSEMENT_FIELDS
