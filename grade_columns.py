import os


TOTAL_SCORE_COLUMN = os.environ.get("TOTAL_SCORE_COLUMN", "Total learning-progress points")


# =========================
# COLUMN TABLE
# =========================
# header (lower case) -> rule
#   exclude: column is metadata, never stored as a grade item
#   alias:   role of the column ("student_id", "class", "name", "total")
COLUMN_RULES = {
    "id": {"exclude": True, "alias": "student_id"},
    "student id": {"exclude": True, "alias": "student_id"},
    "student_id": {"exclude": True, "alias": "student_id"},
    "學號": {"exclude": True, "alias": "student_id"},

    "class": {"exclude": True, "alias": "class"},
    "班級": {"exclude": True, "alias": "class"},

    "name": {"exclude": True, "alias": "name"},
    "姓名": {"exclude": True, "alias": "name"},

    "no": {"exclude": True, "alias": None},
    "no.": {"exclude": True, "alias": None},
    "grade": {"exclude": True, "alias": None},
    "weight of final exam (%)": {"exclude": True, "alias": None},

    TOTAL_SCORE_COLUMN.lower(): {"exclude": False, "alias": "total"},
    "total": {"exclude": False, "alias": "total"},
    "total points": {"exclude": False, "alias": "total"},
    "total_points": {"exclude": False, "alias": "total"},
}

DEFAULT_RULE = {"exclude": False, "alias": None}


def clean_header(h: str) -> str:
    """Removes byte-order marks and surrounding whitespace from a CSV header."""
    return (h or "").replace("\ufeff", "").strip()


def column_rule(h: str) -> dict:
    return COLUMN_RULES.get(clean_header(h).lower(), DEFAULT_RULE)


def is_importable(h: str) -> bool:
    return not column_rule(h)["exclude"]


def is_scorable(h: str) -> bool:
    rule = column_rule(h)
    return not rule["exclude"] and rule["alias"] is None


def is_total(h: str) -> bool:
    return column_rule(h)["alias"] == "total"


def find_column(headers, alias: str) -> int:
    for i, h in enumerate(headers):
        if column_rule(h)["alias"] == alias:
            return i
    return -1
