"""
Import session tests: file to commit against the in-memory store.
"""

import pytest

from batch_reconciler import EXACT_DUPLICATE
from conftest import HEADER, FakeStore, student_row
from import_config import ImportSettings
from import_errors import CommitBlocked, OperationCancelled, OperationInProgress
from import_session import ImportSession
from merge_resolution import AUTO_MERGE, CHOICE_IMPORT, CLEAN, CONFLICT
from spreadsheet_reader import file_digest


CRUZ = {
    "seq": 11,
    "surname": "Cruz",
    "first_name": "Ana",
    "award_number": "CMSP-2024-001",
    "scholarship_program": "CMSP",
    "name_of_institution": "State University",
    "degree_program": "BS Nursing",
    "email_address": None,
    "scholarship_status": "Active",
}


def session_for(sheet, store, **settings):
    return ImportSession.from_matrix(
        sheet, store, file_name="grantees.xlsx", settings=ImportSettings(**settings), upload_id="u1",
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoad:
    def test_load_from_csv_bytes(self, fake_store):
        lines = ["List of Grantees", ",".join(HEADER), ",".join(student_row("Cruz", "Ana", award="CMSP-1"))]
        data = "\n".join(lines).encode("utf-8")
        session = ImportSession.load(data, fake_store, file_name="grantees.csv")
        assert [r.get("surname") for r in session.records] == ["Cruz"]
        assert session.header.header_row_index == 1
        assert session.upload_id.startswith(file_digest(data) + "-")
        assert not session.validated

    def test_records_frame_before_validation(self, simple_sheet, fake_store):
        frame = session_for(simple_sheet, fake_store).records_frame()
        assert list(frame["row_index"]) == [3, 4, 5]
        assert list(frame["classification"]) == ["", "", ""]


# ---------------------------------------------------------------------------
# Validation and classification
# ---------------------------------------------------------------------------

class TestValidate:
    def test_new_rows_are_clean(self, simple_sheet, fake_store):
        session = session_for(simple_sheet, fake_store)
        session.validate()
        assert session.validated
        assert session.resolution_set.clean_rows == [3, 4, 5]
        assert session.classification(3) == {CLEAN}
        assert fake_store.check_calls[0]["upload_id"] == "u1"
        # nothing matched, so nothing to resolve
        assert fake_store.resolve_calls == []

    def test_split_history_is_importable(self):
        sheet = [
            [None, None, None, None, None, "AY 2023-2024", "AY 2024-2025"],
            [None, None, None, None, None, "1st Semester", "1st Semester"],
            ["Surname", "First Name", "Middle Name", "Degree Program", "Scholarship Status", "Amount", "Amount"],
            ["Cruz", "Ana", "B", "BSN", "Active", 15000, None],
            ["Cruz", "Ana", "B", "BSN", "Active", None, 15000],
        ]
        store = FakeStore()
        session = session_for(sheet, store)
        report = session.validate()
        assert report.issues == []
        assert session.can_commit()
        session.commit()
        sent = [d for call in store.merge_calls for d in call["disbursements"]]
        assert sorted(d["academic_year"] for d in sent) == ["2023-2024", "2024-2025"]

    def test_email_fill_is_auto_merge(self, simple_sheet):
        store = FakeStore([CRUZ])
        session = session_for(simple_sheet, store)
        session.validate()
        assert session.classification(3) == {"external_match", AUTO_MERGE}
        assert session.resolution(3).fills == {"email_address": "ana@example.com"}
        assert session.can_commit()

    def test_degree_conflict_blocks_until_chosen(self, simple_sheet):
        store = FakeStore([dict(CRUZ, degree_program="BSN")])
        session = session_for(simple_sheet, store)
        session.validate()
        assert CONFLICT in session.classification(3)
        assert not session.can_commit()
        with pytest.raises(CommitBlocked):
            session.commit()
        assert store.merge_calls == []

        session.choose(3, "degree_program", CHOICE_IMPORT)
        assert session.can_commit()
        stats = session.commit()
        assert stats.inserted == 2
        assert stats.updated == 1
        resolved = [r for call in store.merge_calls for r in call["resolved"]]
        assert resolved[0]["field_resolutions"] == {"degree_program": "BS Nursing"}
        assert resolved[0]["persisted_key"] == 11

    def test_duplicate_rows_block(self, simple_sheet, fake_store):
        sheet = simple_sheet + [student_row("Reyes", "Jose", award="CMSP-2024-002")]
        session = session_for(sheet, fake_store)
        session.validate()
        assert EXACT_DUPLICATE in session.classification(6)
        assert session.batch_report.blocking_rows() == {4: [EXACT_DUPLICATE], 6: [EXACT_DUPLICATE]}
        assert not session.can_commit()


# ---------------------------------------------------------------------------
# Editing
# ---------------------------------------------------------------------------

class TestEditing:
    def test_edit_marks_dirty(self, simple_sheet, fake_store):
        session = session_for(simple_sheet, fake_store)
        session.validate()
        session.edit_record(4, "email_address", "  jose@example.com ")
        assert session.record(4).get("email_address") == "jose@example.com"
        assert session.dirty
        assert any("validate again" in r for r in session.commit_blockers())
        session.revalidate()
        assert not session.dirty
        assert session.can_commit()

    def test_remove_duplicate_then_revalidate(self, simple_sheet, fake_store):
        sheet = simple_sheet + [student_row("Reyes", "Jose", award="CMSP-2024-002")]
        session = session_for(sheet, fake_store)
        session.validate()
        removed = session.remove_record(6)
        assert removed.row_index == 6
        assert not session.can_commit()
        session.validate()
        assert session.can_commit()

    def test_choice_survives_unrelated_edit(self, simple_sheet):
        session = session_for(simple_sheet, FakeStore([dict(CRUZ, degree_program="BSN")]))
        session.validate()
        session.choose(3, "degree_program", CHOICE_IMPORT)
        session.edit_record(4, "email_address", "jose@example.com")
        session.validate()
        assert session.resolution(3).is_resolved
        assert session.can_commit()

    def test_unknown_field_and_row(self, simple_sheet, fake_store):
        session = session_for(simple_sheet, fake_store)
        with pytest.raises(KeyError):
            session.edit_record(3, "favourite_colour", "blue")
        with pytest.raises(KeyError):
            session.edit_record(99, "surname", "Lim")
        assert not session.dirty


# ---------------------------------------------------------------------------
# Operation slot
# ---------------------------------------------------------------------------

class TestOperations:
    def test_commit_refused_while_check_runs(self, simple_sheet):
        attempts = []

        class CommittingStore(FakeStore):
            def check_duplicates(self, signatures, upload_id=""):
                try:
                    session.commit()
                except OperationInProgress as e:
                    attempts.append(e.active_operation)
                return super().check_duplicates(signatures, upload_id)

        session = session_for(simple_sheet, CommittingStore())
        session.validate()
        assert attempts == ["duplicate_check"]
        assert session.active_operation is None

    def test_newer_check_supersedes_older(self, simple_sheet):
        class ReentrantStore(FakeStore):
            def check_duplicates(self, signatures, upload_id=""):
                if len(self.check_calls) == 0:
                    self.check_calls.append("outer")
                    session.validate()
                return super().check_duplicates(signatures, upload_id)

        session = session_for(simple_sheet, ReentrantStore())
        with pytest.raises(OperationCancelled):
            session.validate()
        # the newer check completed and owns the result
        assert session.validated
        assert session.active_operation is None

    def test_clear_operation_releases_slot(self, simple_sheet):
        held = []

        class StuckStore(FakeStore):
            def check_duplicates(self, signatures, upload_id=""):
                held.append(session.active_operation)
                session.clear_operation()
                return super().check_duplicates(signatures, upload_id)

        session = session_for(simple_sheet, StuckStore())
        with pytest.raises(OperationCancelled):
            session.validate()
        assert held == ["duplicate_check"]
        assert session.active_operation is None
        assert not session.validated
        assert not session.cancel()

    def test_cancelled_commit_resumes(self, simple_sheet, fake_store):
        session = session_for(simple_sheet, fake_store, record_chunk_size=2)
        session.validate()
        with pytest.raises(OperationCancelled):
            session.commit(on_progress=lambda phase, i, n: session.cancel())
        assert not session.committed
        assert session.commit_progress.completed_chunks["records"] == 1

        stats = session.commit(progress=session.commit_progress)
        sent = [item["row_index"] for call in fake_store.merge_calls for item in call["clean"]]
        assert sent == [3, 4, 5]
        assert stats.inserted == 3
        with pytest.raises(CommitBlocked):
            session.commit()


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

class TestReport:
    def test_report_surfaces_everything(self, simple_sheet, fake_store):
        sheet = simple_sheet + [student_row("Lim", "Ben", status="")]
        session = session_for(sheet, fake_store)
        text = session.report().as_text()
        assert "SCHOLARSYNC BULK IMPORT REPORT" in text
        assert "Not validated" in text

        session.validate()
        report = session.report()
        assert report.record_count == 4
        assert report.header_row_index == 2
        assert report.classification_counts[CLEAN] == 4
        text = report.as_text()
        assert "Row 6 [missing_status]" in text
        assert "'[1] Surname' → 'surname'" in text
