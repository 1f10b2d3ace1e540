"""
Test: CSV column table: header cleaning, metadata columns, total column.
"""
from grade_columns import (
    clean_header, column_rule, find_column, is_importable, is_scorable, is_total,
)


class TestCleanHeader:
    def test_strips_bom_and_spaces(self):
        assert clean_header("\ufeff  ID ") == "ID"

    def test_none(self):
        assert clean_header(None) == ""


class TestColumnRule:
    def test_case_insensitive(self):
        assert column_rule("STUDENT ID")["alias"] == "student_id"
        assert column_rule("Class")["alias"] == "class"

    def test_bom_prefixed_id(self):
        assert column_rule("\ufeffID")["alias"] == "student_id"

    def test_unknown_column_is_scorable(self):
        assert column_rule("Lab 3") == {"exclude": False, "alias": None}


class TestFilters:
    def test_metadata_not_imported(self):
        for h in ("No.", "no", "ID", "Class", "Name", "grade", "Weight of final exam (%)"):
            assert not is_importable(h), h
            assert not is_scorable(h), h

    def test_total_imported_but_not_scored(self):
        assert is_importable("Total learning-progress points")
        assert is_total("total points")
        assert not is_scorable("Total")

    def test_items_scorable(self):
        assert is_scorable("HW1")
        assert is_scorable(" Midterm ")


class TestFindColumn:
    def test_finds_alias(self):
        assert find_column(["No.", "Class", "學號", "Name"], "student_id") == 2

    def test_missing(self):
        assert find_column(["No.", "Score"], "student_id") == -1
