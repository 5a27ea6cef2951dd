import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Literal

from backend.config import DB_PATH

logger = logging.getLogger(__name__)

ARCHIVE_TABLE = "sign_out_archives"
ARCHIVE_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "001_sign_out_archives.sql"

# Per-row columns of the first archive schema (one archived sign-out per row).
# Deployments that still carry them as NOT NULL get them filled from a
# representative record while the full payload goes to `data`.
LEGACY_ARCHIVE_COLUMNS = (
    "student_id",
    "signer_name",
    "signature_data",
    "signature_url",
    "signed_out_at",
    "signed_back_in_at",
)

_DELETE_CHUNK = 500


# -----------------------------
# Archive errors
# -----------------------------
ConstraintKind = Literal["missing_unique", "not_null", "integrity"]


class ArchiveError(Exception):
    """Base class for day-archive failures."""


class MissingTableError(ArchiveError):
    """A table the archive needs is not in the database. Needs a migration, never retried."""

    def __init__(self, table: str, message: str):
        super().__init__(message)
        self.table = table


class ConstraintViolationError(ArchiveError):
    def __init__(self, message: str, *, kind: ConstraintKind, column: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.column = column


class ProcedureUnavailableError(ArchiveError):
    """The atomic reset_day_archive procedure cannot be used on this deployment."""


class ArchiveWriteError(ArchiveError):
    """No archive write strategy succeeded; live records were left untouched."""


def _missing_table_message(table: str) -> str:
    if table == ARCHIVE_TABLE:
        return (
            f"Archive table '{ARCHIVE_TABLE}' not found. "
            "Run database/migrations/001_sign_out_archives.sql against the kiosk database."
        )
    return f"Table '{table}' not found. Restart the API so create_tables() can apply the schema."


def classify_sqlite_error(exc: sqlite3.Error) -> ArchiveError | None:
    message = str(exc)
    lowered = message.lower()

    if lowered.startswith("no such table"):
        table = message.split(":", 1)[-1].strip()
        if table.startswith("main."):
            table = table[len("main."):]
        return MissingTableError(table, _missing_table_message(table))

    if "on conflict clause does not match" in lowered:
        return ConstraintViolationError(message, kind="missing_unique")

    if isinstance(exc, sqlite3.IntegrityError):
        if lowered.startswith("not null constraint failed"):
            column = message.rsplit(".", 1)[-1].strip()
            return ConstraintViolationError(message, kind="not_null", column=column)
        return ConstraintViolationError(message, kind="integrity")

    return None


@contextmanager
def translate_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        translated = classify_sqlite_error(exc)
        if translated is None:
            raise
        raise translated from exc


# -----------------------------
# Connection + schema
# -----------------------------
def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS classes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        class_id INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (class_id) REFERENCES classes(id) ON DELETE SET NULL
    )
    """)

    # No FK on student_id: records outlive the student row until archived.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS sign_out_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        signer_name TEXT NOT NULL,
        signature_data TEXT,             -- data:image/png;base64,...
        signature_url TEXT,
        signed_out_at TEXT NOT NULL,     -- YYYY-MM-DDTHH:MM:SS (local)
        signed_back_in_at TEXT
    )
    """)

    # One open sign-out per student.
    cursor.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS idx_sign_out_open_student
        ON sign_out_records (student_id)
        WHERE signed_back_in_at IS NULL
    """)
    cursor.execute("""
    CREATE INDEX IF NOT EXISTS idx_sign_out_signed_out_at
        ON sign_out_records (signed_out_at)
    """)

    conn.commit()
    ensure_archive_schema(conn)

    conn.commit()
    conn.close()


def ensure_archive_schema(conn: sqlite3.Connection) -> None:
    """
    Create `sign_out_archives` when it is absent.

    SQL source: `database/migrations/001_sign_out_archives.sql`. Existing
    tables are left alone, including legacy shapes without the unique `day`
    constraint; the archive service copes with those at write time.
    """
    cur = conn.cursor()
    cur.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
        (ARCHIVE_TABLE,),
    )
    if not cur.fetchone():
        conn.executescript(ARCHIVE_MIGRATION_FILE.read_text(encoding="utf-8"))


# -----------------------------
# Classes + students (read-only here)
# -----------------------------
def get_classes():
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, name, created_at
        FROM classes
        ORDER BY name
    """)
    rows = cur.fetchall()
    conn.close()
    return rows


def get_student_by_id(student_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, first_name, last_name, class_id
        FROM students
        WHERE id = ?
    """, (student_id,))
    row = cur.fetchone()
    conn.close()
    return row


def get_available_students(class_id: int):
    """Students of a class that are not currently signed out."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT s.id, s.first_name, s.last_name, s.class_id
        FROM students s
        WHERE s.class_id = ?
          AND NOT EXISTS (
              SELECT 1
              FROM sign_out_records r
              WHERE r.student_id = s.id
                AND r.signed_back_in_at IS NULL
          )
        ORDER BY s.first_name, s.last_name
    """, (class_id,))
    rows = cur.fetchall()
    conn.close()
    return rows


# -----------------------------
# Sign-out records
# -----------------------------
def _now_iso(now: datetime | None = None) -> str:
    return (now or datetime.now()).isoformat(timespec="seconds")


def get_open_sign_out(student_id: int) -> int | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id
        FROM sign_out_records
        WHERE student_id = ?
          AND signed_back_in_at IS NULL
    """, (student_id,))
    row = cur.fetchone()
    conn.close()
    return int(row[0]) if row else None


def create_sign_out_record(
    student_id: int,
    signer_name: str,
    *,
    signature_data: str | None = None,
    signature_url: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Insert a live sign-out record.

    Raises sqlite3.IntegrityError when the student already has an open record.
    """
    signed_out_at = _now_iso(now)
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute("""
            INSERT INTO sign_out_records (student_id, signer_name, signature_data, signature_url, signed_out_at)
            VALUES (?, ?, ?, ?, ?)
        """, (student_id, signer_name, signature_data, signature_url, signed_out_at))
        record_id = int(cur.lastrowid)
        conn.commit()
    finally:
        conn.close()

    return {
        "id": record_id,
        "student_id": student_id,
        "signer_name": signer_name,
        "signature_data": signature_data,
        "signature_url": signature_url,
        "signed_out_at": signed_out_at,
        "signed_back_in_at": None,
    }


def mark_signed_back_in(record_id: int, *, now: datetime | None = None) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        UPDATE sign_out_records
        SET signed_back_in_at = ?
        WHERE id = ?
          AND signed_back_in_at IS NULL
    """, (_now_iso(now), record_id))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


_RECORD_COLUMNS = """
    r.id, r.student_id, r.signer_name, r.signature_data, r.signature_url,
    r.signed_out_at, r.signed_back_in_at
"""


def _record_dict(row: tuple, student: dict[str, Any] | None) -> dict[str, Any]:
    record_id, student_id, signer_name, signature_data, signature_url, signed_out_at, signed_back_in_at = row
    return {
        "id": int(record_id),
        "student_id": int(student_id),
        "signer_name": signer_name,
        "signature_data": signature_data,
        "signature_url": signature_url,
        "signed_out_at": signed_out_at,
        "signed_back_in_at": signed_back_in_at,
        "student": student,
    }


def _live_filter(day: str | None, newest_first: bool) -> tuple[str, list[Any], str]:
    where = ""
    params: list[Any] = []
    if day:
        where = "WHERE date(r.signed_out_at) = ?"
        params.append(day)
    direction = "DESC" if newest_first else "ASC"
    order = f"ORDER BY r.signed_out_at {direction}, r.id {direction}"
    return where, params, order


def _select_live_records_joined(conn: sqlite3.Connection, *, day: str | None, newest_first: bool) -> list[dict[str, Any]]:
    where, params, order = _live_filter(day, newest_first)
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_RECORD_COLUMNS},
               s.id, s.first_name, s.last_name, s.class_id, c.name
        FROM sign_out_records r
        LEFT JOIN students s ON s.id = r.student_id
        LEFT JOIN classes c ON c.id = s.class_id
        {where}
        {order}
        """,
        params,
    )

    out: list[dict[str, Any]] = []
    for row in cur.fetchall():
        student_pk, first_name, last_name, class_id, class_name = row[7:]
        student = None
        if student_pk is not None:
            student = {
                "first_name": first_name,
                "last_name": last_name,
                "class_id": class_id,
                "class_name": class_name,
            }
        out.append(_record_dict(row[:7], student))
    return out


def _select_live_records_with_lookup(conn: sqlite3.Connection, *, day: str | None, newest_first: bool) -> list[dict[str, Any]]:
    where, params, order = _live_filter(day, newest_first)
    cur = conn.cursor()
    cur.execute(f"SELECT {_RECORD_COLUMNS} FROM sign_out_records r {where} {order}", params)
    rows = cur.fetchall()
    if not rows:
        return []

    student_ids = sorted({int(r[1]) for r in rows})
    placeholders = ",".join("?" for _ in student_ids)
    cur.execute(
        f"SELECT id, first_name, last_name, class_id FROM students WHERE id IN ({placeholders})",
        student_ids,
    )
    students = {int(sid): (first_name, last_name, class_id) for sid, first_name, last_name, class_id in cur.fetchall()}

    class_names: dict[int, str] = {}
    class_ids = sorted({int(cid) for _, _, cid in students.values() if cid is not None})
    if class_ids:
        placeholders = ",".join("?" for _ in class_ids)
        try:
            cur.execute(f"SELECT id, name FROM classes WHERE id IN ({placeholders})", class_ids)
            class_names = {int(cid): name for cid, name in cur.fetchall()}
        except sqlite3.OperationalError as exc:
            logger.warning("Class lookup failed (%s); records keep no class label", exc)

    out: list[dict[str, Any]] = []
    for row in rows:
        found = students.get(int(row[1]))
        student = None
        if found:
            first_name, last_name, class_id = found
            student = {
                "first_name": first_name,
                "last_name": last_name,
                "class_id": class_id,
                "class_name": class_names.get(int(class_id)) if class_id is not None else None,
            }
        out.append(_record_dict(row, student))
    return out


def get_live_records(
    *,
    day: str | None = None,
    newest_first: bool = False,
    conn: sqlite3.Connection | None = None,
) -> list[dict[str, Any]]:
    """
    Live sign-out records, each carrying a `student` sub-object (or None when
    the student row is gone).

    `day` (YYYY-MM-DD) limits the result to records signed out on that day.
    Names come from a LEFT JOIN; if the join cannot run, records are read
    alone and students/classes are looked up in batches.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        with translate_errors():
            try:
                return _select_live_records_joined(active_conn, day=day, newest_first=newest_first)
            except sqlite3.OperationalError as exc:
                logger.warning("Live record join unavailable (%s); resolving students separately", exc)
            return _select_live_records_with_lookup(active_conn, day=day, newest_first=newest_first)
    finally:
        if owns_conn:
            active_conn.close()


def _delete_records(cur: sqlite3.Cursor, record_ids: list[int]) -> int:
    deleted = 0
    for start in range(0, len(record_ids), _DELETE_CHUNK):
        chunk = record_ids[start:start + _DELETE_CHUNK]
        placeholders = ",".join("?" for _ in chunk)
        cur.execute(f"DELETE FROM sign_out_records WHERE id IN ({placeholders})", chunk)
        deleted += max(cur.rowcount, 0)
    return deleted


def delete_sign_out_records(record_ids: Iterable[int]) -> int:
    ids = [int(record_id) for record_id in record_ids]
    if not ids:
        return 0

    conn = connect_db()
    try:
        with translate_errors():
            try:
                deleted = _delete_records(conn.cursor(), ids)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
    finally:
        conn.close()
    return deleted


# -----------------------------
# Archive payloads
# -----------------------------
def archive_records(data: Any) -> list[Any]:
    """Records of an archive payload: a bare list, or {"records": [...]}."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        records = data.get("records")
        if isinstance(records, list):
            return records
    return []


def merge_archive_records(existing: Iterable[Any], incoming: Iterable[Any]) -> list[Any]:
    """Union by record id; an incoming record replaces an archived one with the same id."""
    merged: list[Any] = []
    positions: dict[Any, int] = {}
    for record in [*existing, *incoming]:
        record_id = record.get("id") if isinstance(record, dict) else None
        if record_id is None:
            merged.append(record)
            continue
        if record_id in positions:
            merged[positions[record_id]] = record
        else:
            positions[record_id] = len(merged)
            merged.append(record)
    return merged


def build_archive_payload(day: str, records: Iterable[Any]) -> dict[str, Any]:
    return {"day": day, "records": list(records)}


# -----------------------------
# Archive reads
# -----------------------------
def get_archive_day(day: str, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        with translate_errors():
            cur = active_conn.cursor()
            cur.execute(
                f"""
                SELECT day, data, created_at
                FROM {ARCHIVE_TABLE}
                WHERE day = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (day,),
            )
            row = cur.fetchone()
    finally:
        if owns_conn:
            active_conn.close()

    if not row:
        return None
    saved_day, raw_data, created_at = row
    try:
        data = json.loads(raw_data) if raw_data else None
    except ValueError as exc:
        raise ArchiveError(f"Archive row for {saved_day} holds unreadable data: {exc}") from exc
    return {
        "day": str(saved_day),
        "data": data,
        "created_at": created_at,
    }


def list_archive_days() -> list[dict[str, Any]]:
    conn = connect_db()
    try:
        with translate_errors():
            cur = conn.cursor()
            cur.execute(f"""
                SELECT day, MIN(created_at)
                FROM {ARCHIVE_TABLE}
                GROUP BY day
                ORDER BY day DESC
            """)
            rows = cur.fetchall()
    finally:
        conn.close()
    return [{"day": str(day), "created_at": created_at} for day, created_at in rows]


def get_archive_columns() -> set[str]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"PRAGMA table_info({ARCHIVE_TABLE})")
    cols = {str(row[1]) for row in cur.fetchall()}
    conn.close()
    return cols


# -----------------------------
# Archive writes
# -----------------------------
def _archive_values(day: str, payload: Any, legacy: dict[str, Any] | None) -> tuple[list[str], list[Any]]:
    values: dict[str, Any] = {"day": day, "data": json.dumps(payload, separators=(",", ":"))}
    for col, value in (legacy or {}).items():
        if col not in values:
            values[col] = value
    columns = list(values)
    return columns, [values[c] for c in columns]


def _upsert_archive_row(cur: sqlite3.Cursor, day: str, payload: Any, legacy: dict[str, Any] | None = None) -> None:
    columns, params = _archive_values(day, payload, legacy)
    placeholders = ", ".join("?" for _ in columns)
    updates = ", ".join(f"{col} = excluded.{col}" for col in columns if col != "day")
    cur.execute(
        f"""
        INSERT INTO {ARCHIVE_TABLE} ({", ".join(columns)})
        VALUES ({placeholders})
        ON CONFLICT(day) DO UPDATE SET {updates}
        """,
        params,
    )


def upsert_archive_day(day: str, payload: Any, *, legacy: dict[str, Any] | None = None) -> None:
    """Insert-or-replace the archive row for `day`. Needs UNIQUE(day) on the table."""
    conn = connect_db()
    try:
        with translate_errors():
            try:
                _upsert_archive_row(conn.cursor(), day, payload, legacy)
                conn.commit()
            except Exception:
                # a failed INSERT leaves the write lock held until rollback
                conn.rollback()
                raise
    finally:
        conn.close()


def replace_archive_day(day: str, payload: Any, *, legacy: dict[str, Any] | None = None) -> None:
    """Delete-then-insert for archive tables without a unique `day` constraint."""
    columns, params = _archive_values(day, payload, legacy)
    placeholders = ", ".join("?" for _ in columns)
    conn = connect_db()
    try:
        with translate_errors():
            try:
                cur = conn.cursor()
                cur.execute(f"DELETE FROM {ARCHIVE_TABLE} WHERE day = ?", (day,))
                cur.execute(
                    f"INSERT INTO {ARCHIVE_TABLE} ({', '.join(columns)}) VALUES ({placeholders})",
                    params,
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
    finally:
        conn.close()


# -----------------------------
# Atomic reset procedure
# -----------------------------
def reset_day_archive(day: str | None = None) -> int:
    """
    Move the live records signed out on `day` into that day's archive row.

    Runs as a single IMMEDIATE transaction: select the day's records, merge
    them into any existing payload for the day, upsert the archive row, and
    delete the moved records. Nothing is written when the day has no records.

    Returns the number of live records moved.
    """
    target_day = day or datetime.now().strftime("%Y-%m-%d")
    conn = connect_db()
    try:
        with translate_errors():
            conn.execute("BEGIN IMMEDIATE")
            try:
                records = get_live_records(day=target_day, conn=conn)
                if records:
                    existing = get_archive_day(target_day, conn=conn)
                    merged = merge_archive_records(
                        archive_records(existing["data"]) if existing else [],
                        records,
                    )
                    cur = conn.cursor()
                    _upsert_archive_row(cur, target_day, build_archive_payload(target_day, merged))
                    _delete_records(cur, [r["id"] for r in records])
                conn.commit()
            except Exception:
                conn.rollback()
                raise
    finally:
        conn.close()
    return len(records)
