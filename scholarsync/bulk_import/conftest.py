"""
Shared fixtures: an in-memory RecordStore and sheet builders.
"""

import pytest

from alias_dictionary import STUDENT_FIELDS, normalize_token
from import_errors import StoreUnavailable
from store_client import RecordStore


class FakeStore(RecordStore):
    """
    Persisted students held in memory.

    students: [{"seq": 1, "surname": ..., ..., "disbursements": [{id, academic_year, semester, ...}]}]
    fail_merge_calls: 1-based merge_import call numbers that raise StoreUnavailable.
    """

    def __init__(self, students=None, fail_merge_calls=()):
        self.students = [dict(s) for s in students or []]
        self.fail_merge_calls = set(fail_merge_calls)
        self.check_calls = []
        self.resolve_calls = []
        self.merge_calls = []
        self._next_seq = 1000

    def _find(self, signature):
        surname = normalize_token(signature.get("surname"))
        first = normalize_token(signature.get("first_name"))
        award = signature.get("award_number")
        for student in self.students:
            if surname and first and (
                normalize_token(student.get("surname")) == surname
                and normalize_token(student.get("first_name")) == first
            ):
                return student, "exact_name"
            if award and student.get("award_number") == award:
                return student, "award_number"
        return None, None

    def check_duplicates(self, signatures, upload_id=""):
        self.check_calls.append({"upload_id": upload_id, "students": signatures})
        out = []
        for sig in signatures:
            student, match_type = self._find(sig)
            matches = []
            if student is not None:
                matches.append({
                    "match_type": match_type,
                    "name": f"{student.get('surname')}, {student.get('first_name')}",
                    "award_number": student.get("award_number"),
                    "institution": student.get("name_of_institution"),
                    "program": student.get("scholarship_program"),
                    "db_seq": student["seq"],
                })
            out.append({"row_index": sig["row_index"], "matches": matches})
        return out

    def resolve_import(self, payload):
        self.resolve_calls.append(payload)
        clean, auto_merge, conflicts = [], [], []
        for student in payload["students"]:
            persisted, match_type = self._find(student)
            if persisted is None:
                clean.append({"row_index": student["row_index"]})
                continue
            entry = {
                "row_index": student["row_index"],
                "match_type": match_type,
                "db_student": {f: persisted.get(f) for f in ("seq",) + STUDENT_FIELDS},
                "db_disbursements": list(persisted.get("disbursements", [])),
            }
            differs = any(
                student.get(f) not in (None, "") and persisted.get(f) not in (None, "")
                and str(student.get(f)).lower() != str(persisted.get(f)).lower()
                for f in STUDENT_FIELDS
            )
            (conflicts if differs else auto_merge).append(entry)
        return {
            "clean": clean,
            "auto_merge": auto_merge,
            "conflicts": conflicts,
            "summary": {
                "clean_count": len(clean),
                "auto_merge_count": len(auto_merge),
                "conflict_count": len(conflicts),
                "total": len(payload["students"]),
            },
        }

    def merge_import(self, payload):
        self.merge_calls.append(payload)
        if len(self.merge_calls) in self.fail_merge_calls:
            raise StoreUnavailable(reason="Record store error (HTTP 503)", status_code=503)
        created = []
        for item in payload["clean"]:
            self._next_seq += 1
            created.append({"row_index": item["row_index"], "seq": self._next_seq})
        new_disbursements = len(payload["disbursements"]) + sum(
            len(r["new_disbursements"]) for r in payload["auto_merge"] + payload["resolved"]
        )
        return {
            "stats": {
                "inserted": len(payload["clean"]),
                "updated": len(payload["auto_merge"]) + len(payload["resolved"]),
                "disbursements_created": new_disbursements,
            },
            "created": created,
        }


HEADER = [
    "Award Number", "Surname", "First Name", "Middle Name", "Scholarship Program",
    "Name of Institution", "Degree Program", "Email Address", "Scholarship Status",
]


def student_row(surname, first, *, award="", program="CMSP", institution="State University",
                degree="BS Nursing", email="", status="Active", middle=""):
    return [award, surname, first, middle, program, institution, degree, email, status]


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def simple_sheet():
    return [
        ["COMMISSION ON HIGHER EDUCATION", None, None, None, None, None, None, None, None],
        ["List of Grantees", None, None, None, None, None, None, None, None],
        HEADER,
        student_row("Cruz", "Ana", award="CMSP-2024-001", email="ana@example.com"),
        student_row("Reyes", "Jose", award="CMSP-2024-002"),
        student_row("Santos", "Maria", award="ESTAT-2024-003", program="Estatistikolar", degree="BS Statistics"),
    ]
