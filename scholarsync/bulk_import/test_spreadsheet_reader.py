"""
Spreadsheet reader tests.
"""

import pandas as pd
import pytest

from import_errors import SpreadsheetUnreadable
from spreadsheet_reader import file_digest, read_matrix


def write_xlsx(path, rows, sheets=("Grantees",)):
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for name in sheets:
            pd.DataFrame(rows).to_excel(writer, sheet_name=name, header=False, index=False)


class TestCsv:
    def test_ragged_rows_are_padded(self, tmp_path):
        path = tmp_path / "grantees.csv"
        path.write_text("List of Grantees\nSurname,First Name,Status\nCruz,Ana,Active\n", encoding="utf-8")
        matrix = read_matrix(path)
        assert matrix.rows == [
            ["List of Grantees", None, None],
            ["Surname", "First Name", "Status"],
            ["Cruz", "Ana", "Active"],
        ]
        assert matrix.file_name == "grantees.csv"
        assert matrix.sheet_name is None

    def test_semicolon_delimiter(self, tmp_path):
        path = tmp_path / "grantees.csv"
        path.write_text("Surname;First Name\nCruz;Ana\n", encoding="utf-8")
        assert read_matrix(path).rows[1] == ["Cruz", "Ana"]

    def test_cp1252_fallback(self):
        data = "Surname,First Name\nPeña,Ana\n".encode("cp1252")
        assert read_matrix(data, file_name="upload.csv").rows[1][0] == "Peña"

    def test_blank_cells_are_none(self):
        matrix = read_matrix(b"Surname,First Name,Email\nCruz,Ana,  \n", file_name="upload.csv")
        assert matrix.rows[1] == ["Cruz", "Ana", None]

    def test_blank_lines_keep_their_row(self):
        matrix = read_matrix(b"List of Grantees\n\nSurname,First Name\nCruz,Ana\n", file_name="upload.csv")
        assert matrix.rows == [
            ["List of Grantees", None],
            [None, None],
            ["Surname", "First Name"],
            ["Cruz", "Ana"],
        ]

    def test_quoted_delimiter_stays_in_cell(self):
        matrix = read_matrix(b'Surname,Address\nCruz,"12 Rizal St, Manila"\n', file_name="upload.csv")
        assert matrix.rows[1] == ["Cruz", "12 Rizal St, Manila"]

    def test_numbers_stay_text(self):
        matrix = read_matrix(b"LRN,Zip\n012345678901,0400\n", file_name="upload.csv")
        assert matrix.rows[1] == ["012345678901", "0400"]

    def test_digest_identifies_content(self):
        data = b"Surname,First Name\nCruz,Ana\n"
        assert read_matrix(data, file_name="a.csv").digest == file_digest(data)
        assert len(file_digest(data)) == 12


class TestWorkbook:
    def test_first_sheet_by_default(self, tmp_path):
        path = tmp_path / "grantees.xlsx"
        write_xlsx(path, [["List of Grantees", None], ["Surname", "Amount"], ["Cruz", 15000]])
        matrix = read_matrix(path)
        assert matrix.sheet_name == "Grantees"
        assert matrix.rows[0] == ["List of Grantees", None]
        assert matrix.rows[2] == ["Cruz", 15000]

    def test_sheet_out_of_range(self, tmp_path):
        path = tmp_path / "grantees.xlsx"
        write_xlsx(path, [["Surname"]])
        with pytest.raises(SpreadsheetUnreadable) as exc_info:
            read_matrix(path, sheet=3)
        assert "Sheet 3" in exc_info.value.reason

    def test_named_sheet(self, tmp_path):
        path = tmp_path / "grantees.xlsx"
        write_xlsx(path, [["Surname"], ["Cruz"]], sheets=("2023", "2024"))
        assert read_matrix(path, sheet="2024").sheet_name == "2024"

    def test_corrupt_container(self):
        with pytest.raises(SpreadsheetUnreadable) as exc_info:
            read_matrix(b"this is not a zip archive", file_name="upload.xlsx")
        assert exc_info.value.affected_file == "upload.xlsx"


class TestRejected:
    def test_missing_file(self, tmp_path):
        with pytest.raises(SpreadsheetUnreadable) as exc_info:
            read_matrix(tmp_path / "nope.xlsx")
        assert exc_info.value.reason == "File not found"

    def test_unsupported_suffix(self):
        with pytest.raises(SpreadsheetUnreadable) as exc_info:
            read_matrix(b"%PDF-1.4", file_name="grantees.pdf")
        assert "'.pdf'" in exc_info.value.reason

    def test_empty_upload(self):
        with pytest.raises(SpreadsheetUnreadable):
            read_matrix(b"", file_name="grantees.csv")

    def test_bytes_need_a_file_name(self):
        with pytest.raises(ValueError):
            read_matrix(b"Surname\nCruz\n")
