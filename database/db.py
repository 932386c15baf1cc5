import re
import sqlite3
from datetime import date, datetime
from typing import Any

from smartattend.config import DB_PATH

PARTITION_PREFIX = "attendance_"
_PARTITION_RE = re.compile(r"^attendance_\d{4}_\d{2}$")

# Rows written by the mobile app use the short codes.
TYPE_ALIASES = {
    "lecture": ("lecture", "lect"),
    "lab": ("lab",),
    "tutorial": ("tutorial", "tut"),
}
_CANONICAL_TYPE = {alias: name for name, aliases in TYPE_ALIASES.items() for alias in aliases}
_TYPE_SQL = "CASE lower(type) WHEN 'lect' THEN 'lecture' WHEN 'tut' THEN 'tutorial' ELSE lower(type) END"


def canonical_type(value: str) -> str:
    normalized = (value or "").strip().lower()
    return _CANONICAL_TYPE.get(normalized, normalized)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    # concurrent writers from the bridge thread pool
    conn.execute("PRAGMA busy_timeout = 5000;")
    return conn


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    # One row per class group; the admin tooling rewrites it when a class starts or ends.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS active_sessions (
        class_group TEXT PRIMARY KEY,
        subject TEXT NOT NULL,
        room TEXT NOT NULL,
        type TEXT NOT NULL,               -- lect | lab | tut (or full names)
        session_id TEXT,
        date TEXT,                        -- YYYY-MM-DD
        is_extra INTEGER NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    conn.commit()
    conn.close()


# -----------------------------
# Session Directory
# -----------------------------
def get_active_session(class_group: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT subject, room, type, session_id, date, is_extra, is_active
        FROM active_sessions
        WHERE class_group = ?
    """, (class_group.strip().upper(),))
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    return {
        "subject": row[0],
        "room": row[1],
        "type": row[2],
        "sessionId": row[3] or "",
        "date": row[4] or "",
        "isExtra": bool(row[5]),
        "isActive": bool(row[6]),
    }


# -----------------------------
# Attendance partitions (one table per calendar month)
# -----------------------------
def partition_name(day: date | datetime | str) -> str:
    if isinstance(day, str):
        day = datetime.strptime(day, "%Y-%m-%d")
    return f"{PARTITION_PREFIX}{day.year:04d}_{day.month:02d}"


def _checked_partition(name: str) -> str:
    if not _PARTITION_RE.match(name):
        raise ValueError(f"Invalid attendance partition: {name!r}")
    return name


def partition_exists(conn: sqlite3.Connection, name: str) -> bool:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT 1
        FROM sqlite_master
        WHERE type = 'table' AND name = ?
        """,
        (_checked_partition(name),),
    )
    return cur.fetchone() is not None


def ensure_partition(conn: sqlite3.Connection, name: str) -> None:
    """
    Create the monthly attendance table and its duplicate guards.

    The partial unique indexes are the store-side half of duplicate
    prevention: when two devices race past the eligibility check, the
    second insert fails with IntegrityError.
    """
    table = _checked_partition(name)
    cur = conn.cursor()
    cur.execute(f"""
    CREATE TABLE IF NOT EXISTS {table} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        date TEXT NOT NULL,               -- YYYY-MM-DD
        roll_number TEXT NOT NULL,
        subject TEXT NOT NULL,
        class_group TEXT NOT NULL,
        type TEXT NOT NULL,
        present INTEGER NOT NULL DEFAULT 1,
        timestamp TEXT,                   -- ISO datetime
        device_room TEXT,                 -- beacon name incl. counter suffix
        is_extra INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)
    cur.execute(f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {table}_regular_type_once
    ON {table} (roll_number, subject, date, ({_TYPE_SQL}))
    WHERE is_extra = 0 AND present = 1
    """)
    cur.execute(f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {table}_extra_once
    ON {table} (roll_number, subject, date)
    WHERE is_extra = 1 AND present = 1
    """)


def _row_to_document(row) -> dict[str, Any]:
    document = {
        "id": row[0],
        "date": row[1],
        "rollNumber": row[2],
        "subject": row[3],
        "group": row[4],
        "type": row[5],
        "present": bool(row[6]),
        "timestamp": row[7],
        "isExtra": bool(row[9]),
    }
    if row[8]:
        document["deviceRoom"] = row[8]
    return document


def query_attendance_records(
    roll_number: str,
    subject: str,
    date: str,
    *,
    present: bool | None = True,
    is_extra: bool | None = None,
    session_type: str | None = None,
) -> list[dict[str, Any]]:
    conn = connect_db()
    try:
        table = partition_name(date)
        if not partition_exists(conn, table):
            return []

        clauses = ["roll_number = ?", "subject = ?", "date = ?"]
        params: list[Any] = [roll_number, subject, date]
        if present is not None:
            clauses.append("present = ?")
            params.append(1 if present else 0)
        if is_extra is not None:
            clauses.append("is_extra = ?")
            params.append(1 if is_extra else 0)
        if session_type is not None:
            clauses.append(f"({_TYPE_SQL}) = ?")
            params.append(canonical_type(session_type))

        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT id, date, roll_number, subject, class_group, type,
                   present, timestamp, device_room, is_extra
            FROM {table}
            WHERE {" AND ".join(clauses)}
            ORDER BY id
            """,
            params,
        )
        return [_row_to_document(row) for row in cur.fetchall()]
    finally:
        conn.close()


def insert_attendance_record(document: dict[str, Any]) -> int:
    """Append one attendance document to its month's partition and return its row id."""
    conn = connect_db()
    try:
        table = partition_name(document["date"])
        ensure_partition(conn, table)
        cur = conn.cursor()
        cur.execute(
            f"""
            INSERT INTO {table} (
                date,
                roll_number,
                subject,
                class_group,
                type,
                present,
                timestamp,
                device_room,
                is_extra
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document["date"],
                document["rollNumber"],
                document["subject"],
                document["group"],
                canonical_type(document["type"]),
                1 if document.get("present", True) else 0,
                document.get("timestamp"),
                document.get("deviceRoom"),
                1 if document.get("isExtra") else 0,
            ),
        )
        record_id = int(cur.lastrowid)
        conn.commit()
        return record_id
    finally:
        conn.close()
