import math

from grade_columns import is_scorable, is_total


DEFAULT_PERCENTILE_CAP = 99
DEFAULT_FULL_MARKS = 100.0


def class_totals(rows, member_ids) -> dict:
    """
    rows: (student_id, item_name, score) for one subject.
    member_ids: roster ids of the class being compared.

    Rules:
      - only rows of class members count
      - if every member with rows has a total-score item, that item is the total
      - otherwise the total is the sum of the scorable items
    Members without any rows are left out.
    """
    members = set(member_ids)
    summed = {}
    precomputed = {}

    for sid, item_name, score in rows:
        if sid not in members:
            continue
        summed.setdefault(sid, 0.0)
        if is_total(item_name):
            precomputed[sid] = float(score or 0)
        elif is_scorable(item_name):
            summed[sid] += float(score or 0)

    if summed and all(sid in precomputed for sid in summed):
        return precomputed
    return summed


def summarize(totals, my_total: float,
              percentile_cap: int = DEFAULT_PERCENTILE_CAP,
              full_marks: float = DEFAULT_FULL_MARKS) -> dict:
    """
    Class statistics seen from one student.

    rank is the number of classmates strictly below my_total.
    percentile = floor(rank / count * 100), capped at percentile_cap;
    a class of one (or none) gets percentile_cap.
    """
    values = sorted(float(t) for t in totals)
    count = len(values)

    if count:
        low, high = values[0], values[-1]
        # float rounding must not push the mean out of range or turn an
        # all-equal class into a spread
        mean = min(max(sum(values) / count, low), high)
        variance = sum((t - mean) ** 2 for t in values) / count if low != high else 0.0
    else:
        mean = variance = 0.0
        low = high = 0.0

    rank = count
    for i, t in enumerate(values):
        if t >= my_total:
            rank = i
            break

    if count > 1:
        percentile = min(int(math.floor(rank / count * 100)), percentile_cap)
    else:
        percentile = percentile_cap

    top3 = []
    for t in reversed(values):
        if len(top3) == 3:
            break
        top3.append(t)

    return {
        "count": count,
        "mean": mean,
        "std_dev": math.sqrt(variance),
        "min": low,
        "max": high,
        "my_total": my_total,
        "rank": rank,
        "percentile": percentile,
        "top3": top3,
        "final_weight": max(0.0, full_marks - my_total),
    }


def build_report(rows, member_ids, student_id: str, **settings) -> dict:
    totals = class_totals(rows, member_ids)
    my_total = totals.get(student_id, 0.0)
    return summarize(list(totals.values()), my_total, **settings)
