"""
Row normalizer tests.

Rows become canonical records; nothing is dropped without being counted.
"""

from datetime import date, datetime

import pandas as pd
import pytest

from conftest import HEADER, student_row
from header_inferencer import infer_header
from import_config import ProgramPrefixRule, order_prefix_rules
from import_records import PeriodKey
from row_normalizer import (
    DISCARD_EMPTY,
    DISCARD_HEADER_FRAGMENT,
    apply_program_fallback,
    decode_date,
    derive_program,
    is_formula_error,
    normalize_rows,
    parse_amount,
    parse_bool,
    records_frame,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize(matrix, **kwargs):
    return normalize_rows(matrix, infer_header(matrix), **kwargs)


RULES = order_prefix_rules([
    ProgramPrefixRule("CMSP", "CMSP"),
    ProgramPrefixRule("ESTAT", "Estatistikolar"),
    ProgramPrefixRule("CGMS", "CGMS-SUCs"),
    ProgramPrefixRule("CGMS-SUC", "CGMS-SUCs"),
])


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

class TestAmounts:
    @pytest.mark.parametrize("raw,expected", [
        ("₱12,500.00", 12500.0),
        ("PHP 7,500", 7500.0),
        ("P 1,000.50", 1000.5),
        ("12 500", 12500.0),
        (15000, 15000.0),
        (15000.5, 15000.5),
    ])
    def test_parsed(self, raw, expected):
        assert parse_amount(raw) == expected

    def test_empty(self):
        assert parse_amount(None) is None
        assert parse_amount("  ") is None

    def test_text_kept(self):
        assert parse_amount("to follow") == "to follow"


class TestDates:
    def test_serial(self):
        assert decode_date(45505) == date(2024, 8, 1)
        assert decode_date(45505.75) == date(2024, 8, 1)

    def test_serial_text(self):
        assert decode_date("45505") == date(2024, 8, 1)

    def test_datetime_and_timestamp(self):
        assert decode_date(datetime(2024, 8, 1, 13, 0)) == date(2024, 8, 1)
        assert decode_date(pd.Timestamp("2024-08-01")) == date(2024, 8, 1)

    @pytest.mark.parametrize("text", ["2024-08-01", "08/01/2024", "August 1, 2024", "01-Aug-2024"])
    def test_text_formats(self, text):
        assert decode_date(text) == date(2024, 8, 1)

    def test_unparseable_text_kept(self):
        assert decode_date("sometime in August") == "sometime in August"

    def test_empty(self):
        assert decode_date(None) is None
        assert decode_date(float("nan")) is None


class TestBooleans:
    @pytest.mark.parametrize("raw", ["Yes", "y", "TRUE", "1", "✓"])
    def test_true(self, raw):
        assert parse_bool(raw) is True

    @pytest.mark.parametrize("raw", ["No", "n", "false", "0"])
    def test_false(self, raw):
        assert parse_bool(raw) is False

    def test_other_text_kept(self):
        assert parse_bool("maybe") == "maybe"


# ---------------------------------------------------------------------------
# Program fallback
# ---------------------------------------------------------------------------

class TestProgramFallback:
    @pytest.mark.parametrize("value", ["#N/A", "#REF!", "#VALUE!", "#DIV/0!", "#NAME?", "#NULL!", "#NUM!"])
    def test_formula_errors(self, value):
        assert is_formula_error(value)

    def test_ordinary_text_is_not_an_error(self):
        assert not is_formula_error("CMSP")
        assert not is_formula_error("#1 scholar")

    def test_longest_prefix_wins(self):
        assert RULES[0].prefix == "CGMS-SUC"
        assert derive_program("CGMS-SUC-2024-1", RULES) == "CGMS-SUCs"

    def test_empty_program_derived(self):
        fields = {"scholarship_program": None, "award_number": "ESTAT-2024-003"}
        assert apply_program_fallback(fields, RULES) == "Estatistikolar"
        assert fields["scholarship_program"] == "Estatistikolar"

    def test_error_placeholder_replaced(self):
        fields = {"scholarship_program": "#N/A", "award_number": "CMSP-2024-1"}
        apply_program_fallback(fields, RULES)
        assert fields["scholarship_program"] == "CMSP"

    def test_valid_program_never_overwritten(self):
        fields = {"scholarship_program": "Tulong Dunong", "award_number": "CMSP-2024-1"}
        assert apply_program_fallback(fields, RULES) is None
        assert fields["scholarship_program"] == "Tulong Dunong"

    def test_unresolved_placeholder_cleared(self):
        fields = {"scholarship_program": "#REF!", "award_number": "XYZ-1"}
        assert apply_program_fallback(fields, RULES) is None
        assert fields["scholarship_program"] is None

    def test_no_award_number(self):
        fields = {"scholarship_program": None, "award_number": None}
        assert apply_program_fallback(fields, RULES) is None


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

class TestRows:
    def test_records_in_sheet_order(self, simple_sheet):
        result = normalize(simple_sheet)
        assert [r.row_index for r in result.records] == [3, 4, 5]
        assert result.records[0].get("surname") == "Cruz"

    def test_every_student_field_defaults_to_empty(self, simple_sheet):
        record = normalize(simple_sheet).records[1]
        assert record.get("email_address") is None
        assert "date_of_birth" in record.fields
        assert record.get("date_of_birth") is None

    def test_text_is_trimmed(self):
        sheet = [HEADER, student_row("  Cruz  ", "Ana   Marie")]
        record = normalize(sheet).records[0]
        assert record.get("surname") == "Cruz"
        assert record.get("first_name") == "Ana Marie"

    def test_integral_float_rendered_without_fraction(self):
        sheet = [HEADER + ["LRN"], student_row("Cruz", "Ana") + [123456789012.0]]
        assert normalize(sheet).records[0].get("learner_reference_number") == "123456789012"

    def test_empty_rows_between_records_are_counted(self, simple_sheet):
        sheet = simple_sheet[:4] + [[None] * 9] + simple_sheet[4:] + [[None] * 9, [None] * 9]
        result = normalize(sheet)
        assert len(result.records) == 3
        empties = [d for d in result.discarded if d.reason == DISCARD_EMPTY]
        assert empties[0].count == 1
        assert empties[0].row_indices == [4]

    def test_repeated_header_row_discarded(self, simple_sheet):
        sheet = simple_sheet + [list(HEADER), student_row("Lim", "Ben")]
        result = normalize(sheet)
        assert [r.get("surname") for r in result.records] == ["Cruz", "Reyes", "Santos", "Lim"]
        fragments = [d for d in result.discarded if d.reason == DISCARD_HEADER_FRAGMENT]
        assert fragments[0].row_indices == [6]
        assert result.discarded_count == 1

    def test_program_fallback_applied(self):
        sheet = [HEADER, student_row("Cruz", "Ana", award="ESTAT-2024-1", program="#N/A")]
        record = normalize(sheet, program_rules=RULES).records[0]
        assert record.get("scholarship_program") == "Estatistikolar"

    def test_unordered_rules_still_prefer_longest_prefix(self):
        sheet = [HEADER, student_row("Cruz", "Ana", award="CGMS-SUC-01", program="")]
        rules = (ProgramPrefixRule("CGMS", "X"), ProgramPrefixRule("CGMS-SUC", "Y"))
        record = normalize(sheet, program_rules=rules).records[0]
        assert record.get("scholarship_program") == "Y"

    def test_identity_key(self, simple_sheet):
        record = normalize(simple_sheet).records[0]
        assert record.identity_key == "cruzana"


class TestDisbursements:
    def test_stacked_header_periods(self):
        sheet = [
            [None, None, None, None, "AY 2023-2024", None, "AY 2024-2025"],
            [None, None, None, None, "1st Semester", "2nd Semester", "1st Semester"],
            ["Surname", "First Name", "Middle Name", "Scholarship Status", "Amount", "Amount", "Amount"],
            ["Cruz", "Ana", "B", "Active", "15,000", None, 20000],
        ]
        record = normalize(sheet).records[0]
        assert set(record.disbursements) == {
            PeriodKey("2023-2024", "First"),
            PeriodKey("2024-2025", "First"),
        }
        assert record.disbursements[PeriodKey("2023-2024", "First")].fields["amount"] == 15000.0

    def test_year_level_copied_to_every_semester(self):
        sheet = [
            [None, None, None, None, "AY 2024-2025", None, None],
            [None, None, None, None, "1st Semester", "2nd Semester", None],
            ["Surname", "First Name", "Middle Name", "Scholarship Status", "Amount", "Amount", "Year Level"],
            ["Cruz", "Ana", "B", "Active", 15000, 15000, 3],
        ]
        record = normalize(sheet).records[0]
        levels = {k: d.curriculum_year_level for k, d in record.disbursements.items()}
        assert levels == {
            PeriodKey("2024-2025", "First"): "3",
            PeriodKey("2024-2025", "Second"): "3",
        }

    def test_row_scoped_period(self):
        sheet = [
            ["Surname", "First Name", "Scholarship Status", "Academic Year", "Semester", "Amount", "LDDAP No"],
            ["Cruz", "Ana", "Active", "2024-25", "2nd", "7,500", "LD-1"],
        ]
        record = normalize(sheet).records[0]
        key = PeriodKey("2024-2025", "Second")
        assert list(record.disbursements) == [key]
        assert record.disbursements[key].fields == {"amount": 7500.0, "lddap_no": "LD-1"}

    def test_row_scoped_without_year_is_flagged(self):
        sheet = [
            ["Surname", "First Name", "Scholarship Status", "Academic Year", "Semester", "Amount"],
            ["Cruz", "Ana", "Active", None, "1st", 7500],
        ]
        result = normalize(sheet)
        assert result.records[0].disbursements == {}
        assert any("without an academic year" in f for f in result.flags)

    def test_empty_period_is_not_a_disbursement(self):
        sheet = [
            ["Surname", "First Name", "Scholarship Status", "Academic Year", "Semester", "Amount"],
            ["Cruz", "Ana", "Active", "2024-2025", "1st", None],
        ]
        assert normalize(sheet).records[0].disbursements == {}


class TestRecordsFrame:
    def test_one_row_per_record(self, simple_sheet):
        frame = records_frame(normalize(simple_sheet).records)
        assert list(frame["row_index"]) == [3, 4, 5]
        assert "surname" in frame.columns
