"""
Test: CSV import: roster layout detection, grade upserts, skipped rows.
"""
import pytest

import app as portal
from conftest import SUBJECT, add_roster


def grades_for(sid):
    rows = portal.Grade.query.filter_by(subject=SUBJECT, student_id=sid).all()
    return {g.item_name: g.score for g in rows}


class TestImportRoster:
    def test_default_layout(self, flask_app):
        written = portal.import_roster("No.,Group,Number\n1,A,s1\n2,B,s2\n", SUBJECT)
        assert written == 2
        row = portal.Roster.query.filter_by(student_id="s2").one()
        assert row.class_name == "B"
        assert row.subject == SUBJECT

    def test_named_columns_and_name(self, flask_app):
        portal.import_roster("\ufeffID,Name,Class\ns1,Ann,A\n", SUBJECT)
        row = portal.Roster.query.filter_by(student_id="s1").one()
        assert row.class_name == "A"
        assert row.name == "Ann"

    def test_reupload_moves_class(self, flask_app):
        portal.import_roster("ID,Class\ns1,A\n", SUBJECT)
        portal.import_roster("ID,Class\ns1,C\n", SUBJECT)
        rows = portal.Roster.query.filter_by(student_id="s1").all()
        assert len(rows) == 1
        assert rows[0].class_name == "C"

    def test_skips_short_and_blank_rows(self, flask_app):
        written = portal.import_roster("ID,Class\n,A\ns2\ns3,B\n", SUBJECT)
        assert written == 1

    def test_same_id_other_subject(self, flask_app):
        portal.import_roster("ID,Class\ns1,A\n", SUBJECT)
        portal.import_roster("ID,Class\ns1,Z\n", "antenna")
        assert portal.Roster.query.filter_by(student_id="s1").count() == 2

    def test_no_rows(self, flask_app):
        with pytest.raises(ValueError):
            portal.import_roster("ID,Class\n", SUBJECT)


class TestImportGrades:
    def test_imports_items_and_skips_metadata(self, flask_app):
        add_roster("s1", "A")
        written, skipped = portal.import_grades(
            "No.,Class,ID,HW1,Midterm,Weight of final exam (%)\n1,A,s1,10,35.5,40\n",
            SUBJECT,
        )
        assert (written, skipped) == (2, 0)
        assert grades_for("s1") == {"HW1": 10, "Midterm": 35.5}

    def test_skips_students_not_on_roster(self, flask_app):
        add_roster("s1", "A")
        written, skipped = portal.import_grades("ID,HW1\ns1,5\nghost,9\n,3\n", SUBJECT)
        assert (written, skipped) == (1, 1)
        assert portal.Grade.query.filter_by(student_id="ghost").count() == 0

    def test_blank_nan_and_text_cells(self, flask_app):
        add_roster("s1", "A")
        portal.import_grades("ID,HW1,HW2,HW3\ns1,,NaN,absent\n", SUBJECT)
        assert grades_for("s1") == {"HW3": 0}

    def test_last_write_wins(self, flask_app):
        add_roster("s1", "A")
        portal.import_grades("ID,HW1\ns1,5\n", SUBJECT)
        portal.import_grades("ID,HW1\ns1,8\n", SUBJECT)
        rows = portal.Grade.query.filter_by(student_id="s1", item_name="HW1").all()
        assert len(rows) == 1
        assert rows[0].score == 8

    def test_total_column_is_stored(self, flask_app):
        add_roster("s1", "A")
        portal.import_grades("ID,HW1,Total learning-progress points\ns1,5,61\n", SUBJECT)
        assert grades_for("s1")["Total learning-progress points"] == 61

    def test_bom_id_header(self, flask_app):
        add_roster("s1", "A")
        written, _ = portal.import_grades("\ufeffid,Quiz\ns1,4\n", SUBJECT)
        assert written == 1

    def test_missing_id_column(self, flask_app):
        with pytest.raises(ValueError, match="ID"):
            portal.import_grades("Name,HW1\nAnn,5\n", SUBJECT)

    def test_no_rows(self, flask_app):
        with pytest.raises(ValueError):
            portal.import_grades("ID,HW1\n", SUBJECT)

    def test_blank_lines_are_not_data(self, flask_app):
        with pytest.raises(ValueError):
            portal.import_grades("ID,HW1\n\n,\n", SUBJECT)

    def test_blank_lines_between_rows(self, flask_app):
        add_roster("s1", "A")
        add_roster("s2", "A")
        written, skipped = portal.import_grades("ID,HW1\ns1,5\n\ns2,6\n", SUBJECT)
        assert (written, skipped) == (2, 0)
