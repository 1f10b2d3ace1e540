import os
import csv
import math
import logging
import secrets
import datetime
from io import BytesIO, StringIO
from urllib.parse import urlencode

import requests
from dotenv import load_dotenv
from flask import (
    Flask, request, render_template_string,
    send_file, redirect, url_for, session
)
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import inspect, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from reportlab.pdfgen import canvas
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader

from grade_columns import clean_header, find_column, is_importable, is_scorable
from grade_stats import build_report


load_dotenv()

logger = logging.getLogger(__name__)


# =========================
# APP CONFIG
# =========================
app = Flask(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
LOCAL_DB_PATH = os.path.join(BASE_DIR, "grades.db")

db_url = os.environ.get("DATABASE_URL")
if db_url and db_url.startswith("postgres://"):
    db_url = db_url.replace("postgres://", "postgresql://", 1)

app.config["SQLALCHEMY_DATABASE_URI"] = db_url or f"sqlite:///{LOCAL_DB_PATH}"
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

db = SQLAlchemy(app)

# Session secret
app.secret_key = (
    os.environ.get("FLASK_SECRET_KEY")
    or os.environ.get("SESSION_SECRET")
    or "grade-portal-dev-secret"
)


def env_list(name: str) -> list:
    return [s.strip() for s in os.environ.get(name, "").split(",") if s.strip()]


# APP_MODE=admin serves the cross-subject teacher console instead of the
# student portal of a single APP_SUBJECT.
ADMIN_MODE = os.environ.get("APP_MODE", "").strip().lower() == "admin"

app.config.update(
    APP_SUBJECT=os.environ.get("APP_SUBJECT", "").strip(),
    ADMIN_MODE=ADMIN_MODE,
    APP_NAME=("Teacher Admin Console" if ADMIN_MODE
              else os.environ.get("APP_NAME", "Student Grade Portal")),
    TEACHER_WHITELIST=[e.lower() for e in env_list("TEACHER_WHITELIST")],
    KNOWN_SUBJECTS=env_list("KNOWN_SUBJECTS"),
    PERCENTILE_CAP=int(os.environ.get("PERCENTILE_CAP", "99")),
    FULL_MARKS=float(os.environ.get("FULL_MARKS", "100")),
    GOOGLE_CLIENT_ID=os.environ.get("GOOGLE_CLIENT_ID", ""),
    GOOGLE_CLIENT_SECRET=os.environ.get("GOOGLE_CLIENT_SECRET", ""),
    GOOGLE_REDIRECT_URL=os.environ.get("GOOGLE_REDIRECT_URL", ""),
)

# Web logo: static/logo.png
LOGO_URL = "/static/logo.png"

# PDF logo: assets/logo.png
PDF_LOGO_PATH = os.path.join(BASE_DIR, "assets", "logo.png")

ADMIN_PREFIX = "ADMIN_"

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]
HTTP_TIMEOUT = 10


# =========================
# DATABASE MODELS
# =========================
class Student(db.Model):
    """A Google account bound to one roster entry of a subject."""
    __tablename__ = "students"
    __table_args__ = (
        db.UniqueConstraint("student_id", "subject", name="uq_student_sid_subject"),
        db.UniqueConstraint("email", "subject", name="uq_student_email_subject"),
    )
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(120), nullable=True)
    class_name = db.Column(db.String(50), nullable=True)
    email = db.Column(db.String(200), nullable=False)
    subject = db.Column(db.String(80), nullable=False, index=True)
    created_at = db.Column(db.String(40), nullable=False)


class Grade(db.Model):
    __tablename__ = "grades"
    __table_args__ = (
        db.UniqueConstraint("student_id", "item_name", "subject", name="uq_grade_item_subject"),
    )
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.String(50), nullable=False)
    item_name = db.Column(db.String(200), nullable=False)
    score = db.Column(db.Float, nullable=False)
    subject = db.Column(db.String(80), nullable=False)
    created_at = db.Column(db.String(40), nullable=False)
    updated_at = db.Column(db.String(40), nullable=True)


class Roster(db.Model):
    """Authoritative class membership per subject."""
    __tablename__ = "rosters"
    __table_args__ = (
        db.UniqueConstraint("student_id", "subject", name="uq_roster_sid_subject"),
    )
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(120), nullable=True)
    class_name = db.Column(db.String(50), nullable=True)
    subject = db.Column(db.String(80), nullable=False)
    created_at = db.Column(db.String(40), nullable=False)
    updated_at = db.Column(db.String(40), nullable=True)


# Columns added after the first release. Older databases get them in place.
LATE_COLUMNS = {
    "students": {"name": "VARCHAR(120)"},
    "grades": {"updated_at": "VARCHAR(40)"},
    "rosters": {"name": "VARCHAR(120)", "updated_at": "VARCHAR(40)"},
}


def ensure_schema():
    """
    Creates missing tables and adds missing columns WITHOUT deleting data.
    Works for SQLite and Postgres.
    """
    insp = inspect(db.engine)
    tables = set(insp.get_table_names())

    db.create_all()

    for table, columns in LATE_COLUMNS.items():
        if table not in tables:
            continue
        try:
            existing = {c["name"] for c in insp.get_columns(table)}
            for name, ddl in columns.items():
                if name not in existing:
                    db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
                    db.session.commit()
                    logger.info("Added column %s.%s", table, name)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not upgrade table %s", table)


with app.app_context():
    ensure_schema()


# =========================
# HELPERS
# =========================
def now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def parse_score(v: str) -> float:
    """Non-numeric cells count as 0."""
    try:
        n = float(v)
    except ValueError:
        return 0.0
    return n if math.isfinite(n) else 0.0


def admin_mode() -> bool:
    return bool(app.config["ADMIN_MODE"])


def current_subject() -> str:
    return app.config["APP_SUBJECT"]


def scoped(query, model, subject: str):
    """Restricts a query to one subject; an empty subject means no filter."""
    if subject:
        return query.filter(model.subject == subject)
    return query


def is_teacher(email: str) -> bool:
    return bool(email) and email.strip().lower() in app.config["TEACHER_WHITELIST"]


def is_admin_session() -> bool:
    uid = session.get("user_id")
    return admin_mode() and isinstance(uid, str) and uid.startswith(ADMIN_PREFIX)


def current_student():
    uid = session.get("user_id")
    if uid is None or isinstance(uid, str):
        return None
    return scoped(Student.query, Student, current_subject()).filter(Student.id == uid).first()


def require_teacher():
    if session.get("user_id") is None:
        return redirect(url_for("index"))
    if is_admin_session():
        return None
    student = current_student()
    if student is None or not is_teacher(student.email):
        return "🚫 Permission denied", 403
    return None


def target_subject():
    """
    Subject a teacher action applies to: the deployment's subject, or in
    admin mode the `subject` field of the request (None when missing).
    """
    if admin_mode():
        return (request.values.get("subject") or "").strip() or None
    return current_subject()


def dashboard_url(subject: str) -> str:
    if admin_mode():
        return url_for("teacher_dashboard", subject=subject)
    return url_for("teacher_dashboard")


def stats_settings() -> dict:
    return {
        "percentile_cap": app.config["PERCENTILE_CAP"],
        "full_marks": app.config["FULL_MARKS"],
    }


def list_subjects() -> list:
    found = {s for (s,) in db.session.query(Grade.subject).distinct()}
    found |= {s for (s,) in db.session.query(Roster.subject).distinct()}
    found |= set(app.config["KNOWN_SUBJECTS"])
    return sorted(s for s in found if s)


def read_upload(field: str):
    f = request.files.get(field)
    if not f or not f.filename:
        return None
    return f.stream.read().decode("utf-8", errors="ignore")


# =========================
# CSV IMPORT
# =========================
def upsert(model, values: dict, keys: list, update_columns: list):
    """INSERT ... ON CONFLICT DO UPDATE, last write wins."""
    dialect = db.engine.dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model.__table__)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model.__table__)
    else:
        raise RuntimeError(f"Upsert is not supported on {dialect}")

    stmt = stmt.values(values)
    stmt = stmt.on_conflict_do_update(
        index_elements=keys,
        set_={c: stmt.excluded[c] for c in update_columns},
    )
    db.session.execute(stmt)


def read_csv(raw: str) -> list:
    records = [r for r in csv.reader(StringIO(raw)) if any(c.strip() for c in r)]
    if len(records) < 2:
        raise ValueError("The CSV file has no data rows.")
    return records


def import_grades(raw: str, subject: str):
    """
    Grade sheet: one row per student, one column per grade item.

    Rules:
      - the ID column is required
      - students missing from the subject roster are skipped
      - metadata columns (No., Class, ...) and blank / NaN cells are ignored
    Returns (cells written, rows skipped).
    """
    records = read_csv(raw)
    header = [clean_header(h) for h in records[0]]

    id_idx = find_column(header, "student_id")
    if id_idx == -1:
        logger.warning("Grade upload without ID column, headers: %s", header)
        raise ValueError(f"No 'ID' column found. Detected headers: {header}")

    roster_ids = {sid for (sid,) in db.session.query(Roster.student_id).filter(Roster.subject == subject)}
    now = now_iso()

    written = 0
    skipped = 0
    for row in records[1:]:
        if len(row) <= id_idx:
            continue
        sid = row[id_idx].strip()
        if not sid:
            continue
        if sid not in roster_ids:
            skipped += 1
            continue

        for col, cell in zip(header, row):
            if not col or not is_importable(col):
                continue
            cell = cell.strip()
            if not cell or cell.lower() == "nan":
                continue
            upsert(
                Grade,
                {
                    "student_id": sid,
                    "item_name": col,
                    "score": parse_score(cell),
                    "subject": subject,
                    "created_at": now,
                    "updated_at": now,
                },
                keys=["student_id", "item_name", "subject"],
                update_columns=["score", "updated_at"],
            )
            written += 1

    db.session.commit()
    logger.info("Imported %d grade cells into %r, skipped %d rows not on the roster", written, subject, skipped)
    return written, skipped


def import_roster(raw: str, subject: str) -> int:
    """
    Roster: defaults to the layout No., Class, ID unless the headers name
    the Class / ID columns. A Name column is optional.
    """
    records = read_csv(raw)
    header = [clean_header(h) for h in records[0]]

    class_idx = find_column(header, "class")
    if class_idx == -1:
        class_idx = 1
    id_idx = find_column(header, "student_id")
    if id_idx == -1:
        id_idx = 2
    name_idx = find_column(header, "name")

    now = now_iso()
    written = 0
    for row in records[1:]:
        if len(row) <= id_idx or len(row) <= class_idx:
            continue
        sid = row[id_idx].strip()
        if not sid:
            continue
        name = row[name_idx].strip() if 0 <= name_idx < len(row) else ""

        upsert(
            Roster,
            {
                "student_id": sid,
                "name": name or None,
                "class_name": row[class_idx].strip(),
                "subject": subject,
                "created_at": now,
                "updated_at": now,
            },
            keys=["student_id", "subject"],
            update_columns=["class_name", "name", "updated_at"],
        )
        written += 1

    db.session.commit()
    logger.info("Imported %d roster entries into %r", written, subject)
    return written


# =========================
# GRADE REPORT
# =========================
def load_grade_report(student) -> dict:
    """
    Items and class statistics for one student. The peer group is the
    student's current roster class, not the class stored on the account.
    """
    subject = student.subject

    own = Grade.query.filter(
        Grade.subject == subject,
        Grade.student_id == student.student_id,
    ).order_by(Grade.id.asc()).all()
    items = [g for g in own if is_scorable(g.item_name)]

    roster = Roster.query.filter_by(subject=subject, student_id=student.student_id).first()
    if roster:
        class_name = roster.class_name
        member_ids = [sid for (sid,) in db.session.query(Roster.student_id).filter(
            Roster.subject == subject,
            Roster.class_name == class_name,
        )]
    else:
        # dropped from the roster: nobody to compare against
        class_name = None
        member_ids = [student.student_id]

    rows = db.session.query(Grade.student_id, Grade.item_name, Grade.score).filter(
        Grade.subject == subject,
        Grade.student_id.in_(member_ids),
    ).all()

    return {
        "items": items,
        "class_name": class_name,
        "stats": build_report(rows, member_ids, student.student_id, **stats_settings()),
    }


# =========================
# GOOGLE OAUTH
# =========================
def google_auth_url(state: str) -> str:
    params = {
        "client_id": app.config["GOOGLE_CLIENT_ID"],
        "redirect_uri": app.config["GOOGLE_REDIRECT_URL"],
        "response_type": "code",
        "scope": " ".join(GOOGLE_SCOPES),
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def exchange_code(code: str) -> str:
    resp = requests.post(GOOGLE_TOKEN_URL, data={
        "code": code,
        "client_id": app.config["GOOGLE_CLIENT_ID"],
        "client_secret": app.config["GOOGLE_CLIENT_SECRET"],
        "redirect_uri": app.config["GOOGLE_REDIRECT_URL"],
        "grant_type": "authorization_code",
    }, timeout=HTTP_TIMEOUT)
    resp.raise_for_status()
    token = resp.json().get("access_token")
    if not token:
        raise requests.RequestException("Token response has no access_token")
    return token


def fetch_google_profile(access_token: str) -> dict:
    resp = requests.get(
        GOOGLE_USERINFO_URL,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=HTTP_TIMEOUT,
    )
    resp.raise_for_status()
    return resp.json()


# =========================
# UI STYLE
# =========================
BASE_STYLE = """
<style>
  :root{
    --bg:#0b1020;
    --line: rgba(148, 163, 184, .16);
    --text:#e5e7eb;
    --muted:#9ca3af;
    --accent:#2563eb;
    --good:#22c55e;
    --bad:#ef4444;
    --radius: 16px;
  }
  *{box-sizing:border-box;}
  body{
    margin:0;
    font-family: ui-sans-serif, system-ui, -apple-system, Segoe UI, Roboto, Arial, sans-serif;
    color:var(--text);
    background: linear-gradient(180deg, #070b16 0%, var(--bg) 60%, #070b16 100%);
    padding: 28px;
  }
  a{color:#93c5fd; text-decoration:none;}
  .wrap{max-width:1100px; margin:0 auto;}
  .card{
    background: rgba(17,24,39,.85);
    border:1px solid var(--line);
    border-radius: var(--radius);
    padding: 22px;
  }
  .title{display:flex; justify-content:space-between; gap:14px; flex-wrap:wrap;}
  h1{margin:0; font-size: 30px;}
  h3{margin: 18px 0 0 0; font-size: 16px; color:#d1d5db;}
  .sub{color:var(--muted); margin-top:8px; font-size: 13px;}
  .topbar{display:flex; gap:10px; flex-wrap:wrap; margin-top:10px;}
  .pill{
    display:inline-flex; gap:8px; padding: 7px 12px;
    border-radius:999px; border:1px solid var(--line);
    background: rgba(15,23,42,.55); color:#cbd5e1; font-size: 12px;
  }
  .grid{display:grid; grid-template-columns:repeat(4, 1fr); gap:10px; margin-top:14px;}
  @media (max-width:900px){ .grid{grid-template-columns:1fr 1fr;} }
  .stat{border:1px solid var(--line); border-radius:14px; padding:12px;}
  .stat b{display:block; font-size:22px; margin-top:4px;}
  input{
    padding: 10px; margin-top: 6px; border-radius: 12px;
    border: 1px solid var(--line); background: rgba(7,11,22,.55); color: var(--text);
  }
  .btn{
    margin-top: 10px; padding: 10px 14px; border:0; border-radius: 12px;
    background: var(--accent); color:white; font-weight: 800; cursor:pointer;
  }
  .btn-danger{
    padding: 8px 12px; border-radius: 12px; cursor:pointer;
    border: 1px solid rgba(239,68,68,.35); background: rgba(239,68,68,.12); color:#fecaca;
  }
  table{width:100%; border-collapse: collapse; margin-top:14px;}
  th, td{border-bottom: 1px solid var(--line); padding: 9px; text-align:left;}
  th{color:#cbd5e1; font-size: 12px;}
  .mono{font-family: ui-monospace, Menlo, Consolas, monospace; font-size:12px;}
  .small{color:var(--muted); font-size:12px;}
  .logo{display:flex; align-items:center; gap:12px;}
  .logo img{width:44px; height:44px; object-fit:contain;}
</style>
"""


# =========================
# PAGES (Templates)
# =========================
INDEX_PAGE = BASE_STYLE + """
<div class="wrap">
  <div class="card">
    <div class="title">
      <div class="logo">
        <img src="{{logo_url}}" alt="Logo" onerror="this.style.display='none'">
        <div>
          <h1>{{app_name}}</h1>
          <div class="sub">{% if admin %}Teachers only{% else %}Check your scores and where you stand in class.{% endif %}</div>
        </div>
      </div>
    </div>

    {% if not logged %}
      <a class="btn" href="/login" style="display:inline-block;">Sign in with Google</a>
    {% else %}
      <h3>Hi {{user.name or user.email}}</h3>
      <div class="topbar">
        <span class="pill">ID: {{user.student_id}}</span>
        <span class="pill">Class: {{user.class_name or "-"}}</span>
        <span class="pill">{{user.email}}</span>
      </div>
      <div class="topbar">
        <a class="pill" href="/my-grades">My grades</a>
        {% if is_teacher %}<a class="pill" href="/teacher/dashboard">Teacher dashboard</a>{% endif %}
        <a class="pill" href="/logout">Logout</a>
      </div>
    {% endif %}
  </div>
</div>
"""

ADMIN_PAGE = BASE_STYLE + """
<div class="wrap">
  <div class="card">
    <div class="title">
      <div>
        <h1>{{app_name}}</h1>
        <div class="sub">Signed in as {{user_email}}</div>
      </div>
      <div class="topbar"><a class="pill" href="/logout">Logout</a></div>
    </div>

    <h3>Subjects</h3>
    {% if subjects %}
      <table>
        <tr><th>Subject</th><th></th></tr>
        {% for s in subjects %}
          <tr>
            <td><b>{{s}}</b></td>
            <td><a class="pill" href="/teacher/dashboard?subject={{s|urlencode}}">Manage</a></td>
          </tr>
        {% endfor %}
      </table>
    {% else %}
      <p class="small">No subjects yet. Open a dashboard with ?subject=name to start one.</p>
    {% endif %}
  </div>
</div>
"""

REGISTER_PAGE = BASE_STYLE + """
<div class="wrap">
  <div class="card">
    <h1>Bind your student ID</h1>
    <div class="sub">Google account: {{email}}. This can only be done once.</div>
    <form method="post" action="/register">
      <input name="student_id" placeholder="Student ID" required>
      <button class="btn" type="submit">Bind</button>
    </form>
  </div>
</div>
"""

NO_GRADES_PAGE = BASE_STYLE + """
<div class="wrap">
  <div class="card">
    <h1>No grades yet</h1>
    <div class="sub">Nothing has been published for {{subject or "this course"}} so far, {{user.name or user.student_id}}.</div>
    <div class="topbar"><a class="pill" href="/">Back</a></div>
  </div>
</div>
"""

MY_GRADES_PAGE = BASE_STYLE + """
<div class="wrap">
  <div class="card">
    <div class="title">
      <div>
        <h1>My Grades</h1>
        <div class="sub">{{user.student_id}} | Class {{class_name or "(not on roster)"}} | {{stats.count}} classmates with grades</div>
      </div>
      <div class="topbar">
        <a class="pill" href="/my-grades/pdf">Download PDF</a>
        <a class="pill" href="/">Home</a>
      </div>
    </div>

    <div class="grid">
      <div class="stat"><span class="small">My total</span><b>{{"%.2f"|format(stats.my_total)}}</b></div>
      <div class="stat"><span class="small">Class mean</span><b>{{"%.2f"|format(stats.mean)}}</b></div>
      <div class="stat"><span class="small">Std. deviation</span><b>{{"%.2f"|format(stats.std_dev)}}</b></div>
      <div class="stat"><span class="small">Percentile</span><b>{{stats.percentile}}%</b></div>
      <div class="stat"><span class="small">Lowest</span><b>{{"%.2f"|format(stats.min)}}</b></div>
      <div class="stat"><span class="small">Highest</span><b>{{"%.2f"|format(stats.max)}}</b></div>
      <div class="stat"><span class="small">Top 3</span><b>{% for t in stats.top3 %}{{"%.1f"|format(t)}}{% if not loop.last %} / {% endif %}{% endfor %}</b></div>
      <div class="stat"><span class="small">Left for the final</span><b>{{"%.2f"|format(stats.final_weight)}}</b></div>
    </div>

    <h3>Items</h3>
    <table>
      <tr><th>#</th><th>Item</th><th>Score</th></tr>
      {% for g in grades %}
        <tr><td class="mono">{{loop.index}}</td><td>{{g.item_name}}</td><td><b>{{g.score}}</b></td></tr>
      {% endfor %}
    </table>
  </div>
</div>
"""

TEACHER_PAGE = BASE_STYLE + """
<div class="wrap">
  <div class="card">
    <div class="title">
      <div>
        <h1>Teacher Dashboard</h1>
        <div class="sub">Subject: <b>{{subject or "(all)"}}</b></div>
      </div>
      <div class="topbar">
        <a class="pill" href="/">Home</a>
        <a class="pill" href="/logout">Logout</a>
      </div>
    </div>

    <h3>Upload roster (No., Class, ID, Name)</h3>
    <form method="post" action="/teacher/upload-roster" enctype="multipart/form-data">
      {% if admin %}<input type="hidden" name="subject" value="{{subject}}">{% endif %}
      <input type="file" name="roster_file" accept=".csv" required>
      <button class="btn" type="submit">Upload roster</button>
    </form>

    <h3>Upload grades (ID column required)</h3>
    <form method="post" action="/teacher/upload" enctype="multipart/form-data">
      {% if admin %}<input type="hidden" name="subject" value="{{subject}}">{% endif %}
      <input type="file" name="csv_file" accept=".csv" required>
      <button class="btn" type="submit">Upload grades</button>
    </form>

    <div class="topbar">
      <form method="post" action="/teacher/delete-roster" onsubmit="return confirm('Delete the whole roster?');">
        {% if admin %}<input type="hidden" name="subject" value="{{subject}}">{% endif %}
        <button class="btn-danger" type="submit">Delete roster</button>
      </form>
      <form method="post" action="/teacher/delete-all" onsubmit="return confirm('Delete ALL grades of this subject?');">
        {% if admin %}<input type="hidden" name="subject" value="{{subject}}">{% endif %}
        <button class="btn-danger" type="submit">Delete all grades</button>
      </form>
    </div>

    <h3>Roster ({{roster|length}})</h3>
    <table>
      <tr><th>Class</th><th>ID</th><th>Name</th><th>Registered</th></tr>
      {% for r in roster %}
        <tr>
          <td>{{r.class_name}}</td>
          <td class="mono">{{r.student_id}}</td>
          <td>{{r.name or ""}}</td>
          <td class="small">{{r.email or "-"}}</td>
        </tr>
      {% endfor %}
    </table>

    <h3>Grades ({{grades|length}})</h3>
    <table>
      <tr><th>ID</th><th>Item</th><th>Score</th><th>Updated</th><th></th></tr>
      {% for g in grades %}
        <tr>
          <td class="mono">{{g.student_id}}</td>
          <td>{{g.item_name}}</td>
          <td><b>{{g.score}}</b></td>
          <td class="small">{{(g.updated_at or g.created_at)[:16]}}</td>
          <td>
            <form method="post" action="/teacher/delete/{{g.id}}">
              <button class="btn-danger" type="submit">Delete</button>
            </form>
          </td>
        </tr>
      {% endfor %}
    </table>
  </div>
</div>
"""


@app.context_processor
def inject_branding():
    return {"app_name": app.config["APP_NAME"], "logo_url": LOGO_URL, "admin": admin_mode()}


# =========================
# AUTH ROUTES
# =========================
@app.get("/login")
def login_page():
    state = secrets.token_urlsafe(16)
    session["oauth_state"] = state
    return redirect(google_auth_url(state))


@app.get("/auth/callback")
def auth_callback():
    expected = session.pop("oauth_state", None)
    if not expected or request.args.get("state") != expected:
        logger.warning("OAuth callback with missing or mismatched state")
        return redirect(url_for("index"))

    try:
        token = exchange_code(request.args.get("code", ""))
        profile = fetch_google_profile(token)
    except requests.RequestException as e:
        logger.warning("Google sign-in failed: %s", e)
        return redirect(url_for("index"))

    email = (profile.get("email") or "").strip()
    if not email:
        return redirect(url_for("index"))

    if admin_mode():
        if not is_teacher(email):
            logger.warning("Rejected non-teacher %s from the admin console", email)
            return "🚫 Sorry, only teachers can sign in here.", 403
        session["user_id"] = ADMIN_PREFIX + email
        return redirect(url_for("index"))

    student = scoped(Student.query, Student, current_subject()).filter(Student.email == email).first()
    if student is None:
        session["temp_email"] = email
        session["temp_name"] = profile.get("name") or ""
        return redirect(url_for("register"))

    session["user_id"] = student.id
    return redirect(url_for("index"))


@app.get("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


@app.route("/register", methods=["GET", "POST"])
def register():
    if admin_mode():
        return redirect(url_for("index"))

    email = session.get("temp_email")
    if not email:
        return redirect(url_for("index"))

    if request.method == "GET":
        return render_template_string(REGISTER_PAGE, email=email)

    subject = current_subject()
    sid = request.form.get("student_id", "").strip()

    roster = Roster.query.filter_by(student_id=sid, subject=subject).first()
    if not sid or roster is None:
        return "❌ Verification failed: this student ID is not on the roster.", 400

    taken = scoped(Student.query, Student, subject).filter(Student.student_id == sid).first()
    if taken is not None:
        return "❌ Binding failed: this student ID is already registered.", 400

    bound = scoped(Student.query, Student, subject).filter(Student.email == email).first()
    if bound is not None:
        return "❌ Binding failed: this account is already registered.", 400

    student = Student(
        email=email,
        name=session.get("temp_name") or roster.name,
        student_id=roster.student_id,
        class_name=roster.class_name,
        subject=subject,
        created_at=now_iso(),
    )
    db.session.add(student)
    db.session.commit()
    logger.info("Bound %s to student %s in %r", email, sid, subject)

    session["user_id"] = student.id
    session.pop("temp_email", None)
    session.pop("temp_name", None)
    return redirect(url_for("index"))


# =========================
# MAIN ROUTES
# =========================
@app.get("/")
def index():
    if admin_mode():
        if not is_admin_session():
            return render_template_string(INDEX_PAGE, logged=False)
        return render_template_string(
            ADMIN_PAGE,
            subjects=list_subjects(),
            user_email=session["user_id"][len(ADMIN_PREFIX):],
        )

    if session.get("user_id") is None:
        return render_template_string(INDEX_PAGE, logged=False)

    student = current_student()
    if student is None:
        return redirect(url_for("logout"))

    return render_template_string(
        INDEX_PAGE,
        logged=True,
        user=student,
        is_teacher=is_teacher(student.email),
    )


@app.get("/my-grades")
def my_grades():
    if admin_mode():
        return redirect(url_for("index"))
    student = current_student()
    if student is None:
        return redirect(url_for("index"))

    if Grade.query.filter(Grade.subject == student.subject).count() == 0:
        return render_template_string(NO_GRADES_PAGE, user=student, subject=student.subject)

    report = load_grade_report(student)
    return render_template_string(
        MY_GRADES_PAGE,
        user=student,
        grades=report["items"],
        class_name=report["class_name"],
        stats=report["stats"],
    )


# =========================
# TEACHER ROUTES
# =========================
@app.get("/teacher/dashboard")
def teacher_dashboard():
    guard = require_teacher()
    if guard:
        return guard
    subject = target_subject()
    if subject is None:
        return redirect(url_for("index"))

    grades = Grade.query.filter(Grade.subject == subject).order_by(Grade.created_at.desc(), Grade.id.desc()).all()

    roster = db.session.query(
        Roster.class_name, Roster.student_id, Roster.name, Student.email
    ).outerjoin(
        Student,
        (Student.student_id == Roster.student_id) & (Student.subject == Roster.subject),
    ).filter(
        Roster.subject == subject
    ).order_by(Roster.class_name.asc(), Roster.student_id.asc()).all()

    return render_template_string(TEACHER_PAGE, subject=subject, grades=grades, roster=roster)


@app.post("/teacher/upload")
def teacher_upload():
    guard = require_teacher()
    if guard:
        return guard
    subject = target_subject()
    if subject is None:
        return redirect(url_for("index"))

    raw = read_upload("csv_file")
    if raw is None:
        return "❌ Please choose a file.", 400

    try:
        import_grades(raw, subject)
    except ValueError as e:
        db.session.rollback()
        return f"❌ {e}", 400

    return redirect(dashboard_url(subject))


@app.post("/teacher/upload-roster")
def teacher_upload_roster():
    guard = require_teacher()
    if guard:
        return guard
    subject = target_subject()
    if subject is None:
        return redirect(url_for("index"))

    raw = read_upload("roster_file")
    if raw is None:
        return "❌ Please choose a file.", 400

    try:
        import_roster(raw, subject)
    except ValueError as e:
        db.session.rollback()
        return f"❌ {e}", 400

    return redirect(dashboard_url(subject))


def delete_subject_rows(model, subject: str):
    guard = require_teacher()
    if guard:
        return guard
    if subject is None:
        return redirect(url_for("index"))

    try:
        deleted = model.query.filter(model.subject == subject).delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not clear %s of %r", model.__tablename__, subject)
        return "Delete failed", 500

    logger.info("Deleted %d rows from %s of %r", deleted, model.__tablename__, subject)
    return redirect(dashboard_url(subject))


@app.post("/teacher/delete-roster")
def teacher_delete_roster():
    return delete_subject_rows(Roster, target_subject())


@app.post("/teacher/delete-all")
def teacher_delete_all():
    return delete_subject_rows(Grade, target_subject())


@app.post("/teacher/delete/<int:grade_id>")
def teacher_delete_grade(grade_id):
    guard = require_teacher()
    if guard:
        return guard

    q = Grade.query.filter(Grade.id == grade_id)
    if not admin_mode():
        q = scoped(q, Grade, current_subject())
    record = q.first_or_404()

    subject = record.subject
    try:
        db.session.delete(record)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not delete grade %d of %r", grade_id, subject)
        return "Delete failed", 500

    logger.info("Deleted grade %d of %r", grade_id, subject)
    return redirect(request.referrer or dashboard_url(subject))


# =========================
# PDF: GRADE REPORT
# =========================
def build_report_pdf(student, report: dict) -> BytesIO:
    stats = report["stats"]

    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=letter)
    width, height = letter

    # PDF logo (optional)
    if os.path.exists(PDF_LOGO_PATH):
        try:
            logo = ImageReader(PDF_LOGO_PATH)
            c.drawImage(logo, 50, height - 110, width=70, height=70, mask="auto")
        except OSError:
            logger.warning("Unreadable PDF logo at %s", PDF_LOGO_PATH)

    # Header
    c.setFont("Helvetica-Bold", 18)
    c.drawCentredString(width / 2, height - 55, "GRADE REPORT")
    c.setFont("Helvetica", 12)
    c.drawCentredString(width / 2, height - 80, app.config["APP_NAME"])
    c.line(50, height - 115, width - 50, height - 115)

    y = height - 145
    c.setFont("Helvetica", 11)
    c.drawString(50, y, f"Student ID: {student.student_id}")
    c.drawRightString(width - 50, y, f"Subject: {student.subject or '-'}")
    y -= 16
    c.drawString(50, y, f"Name: {student.name or student.email}")
    c.drawRightString(width - 50, y, f"Class: {report['class_name'] or '(not on roster)'}")
    y -= 26

    c.setFont("Helvetica-Bold", 12)
    c.drawString(50, y, "Class Statistics")
    y -= 18
    c.setFont("Helvetica", 11)
    lines = [
        f"My total: {stats['my_total']:.2f}    Percentile: {stats['percentile']}%",
        f"Mean: {stats['mean']:.2f}    Std. deviation: {stats['std_dev']:.2f}",
        f"Lowest: {stats['min']:.2f}    Highest: {stats['max']:.2f}    Students: {stats['count']}",
        "Top 3: " + (" / ".join(f"{t:.1f}" for t in stats["top3"]) or "-"),
        f"Left for the final: {stats['final_weight']:.2f}",
    ]
    for line in lines:
        c.drawString(60, y, line)
        y -= 15
    y -= 12

    c.setFont("Helvetica-Bold", 12)
    c.drawString(50, y, "Items")
    y -= 18

    for i, g in enumerate(report["items"], start=1):
        if y < 80:
            c.showPage()
            y = height - 60
        c.setFont("Helvetica", 10)
        c.drawString(60, y, str(i))
        c.drawString(90, y, g.item_name[:60])
        c.drawRightString(width - 60, y, f"{g.score:g}")
        y -= 14

    c.setFont("Helvetica", 9)
    c.drawString(50, 40, f"Generated: {datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}")

    c.showPage()
    c.save()

    buffer.seek(0)
    return buffer


@app.get("/my-grades/pdf")
def my_grades_pdf():
    if admin_mode():
        return redirect(url_for("index"))
    student = current_student()
    if student is None:
        return redirect(url_for("index"))

    buffer = build_report_pdf(student, load_grade_report(student))
    ts = datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%d%H%M%S")
    filename = f"grades_{student.student_id}_{ts}.pdf"
    return send_file(buffer, as_attachment=True, download_name=filename, mimetype="application/pdf")


# =========================
# RUN LOCAL (PORT 8080)
# =========================
if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Local: http://127.0.0.1:8080
    app.run(host="127.0.0.1", port=int(os.environ.get("PORT", "8080")), debug=True)
