import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta

DB_PATH = os.environ.get("INFIRMARY_DB", os.path.join(os.path.dirname(__file__), "infirmary.db"))
OFFSET_MINUTES = int(os.environ.get("INFIRMARY_TIME_OFFSET_MINUTES", "0") or "0")

logger = logging.getLogger(__name__)


def now() -> datetime:
    """Current time with optional offset for demo purposes."""
    return datetime.now() + timedelta(minutes=OFFSET_MINUTES)


def today_iso() -> str:
    return now().date().isoformat()


def _dict_factory(cursor, row):
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def get_connection():
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = _dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def db_cursor():
    conn = get_connection()
    cur = conn.cursor()
    try:
        yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        cur.close()
        conn.close()


def init_db():
    with db_cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS student (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                first_name TEXT NOT NULL,
                first_surname TEXT NOT NULL,
                second_surname TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS medication (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                student_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                dosage TEXT NOT NULL DEFAULT '',
                time_ranges TEXT NOT NULL DEFAULT '[]',
                notes TEXT,
                start_date TEXT NOT NULL,
                end_date TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                FOREIGN KEY(student_id) REFERENCES student(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS administration (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                dose_key TEXT NOT NULL UNIQUE,
                student_id INTEGER NOT NULL,
                student_name_sortable TEXT NOT NULL,
                medication_id INTEGER,
                medication_name TEXT NOT NULL,
                dosage TEXT,
                date TEXT NOT NULL,
                time_range TEXT NOT NULL,
                status TEXT NOT NULL,
                given_by_uid TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                hour TEXT,
                notes TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_administration_day ON administration (date, time_range)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts TEXT NOT NULL,
                action TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id INTEGER,
                actor_uid TEXT,
                meta_json TEXT
            )
            """
        )
        _ensure_columns(
            cur,
            "medication",
            [
                ("hour", "TEXT"),
                ("kind", "TEXT NOT NULL DEFAULT 'PERMANENT'"),
                ("updated_at", "TEXT"),
            ],
        )


def _ensure_columns(cur, table: str, columns):
    """Add columns that older databases were created without."""
    cur.execute(f"PRAGMA table_info({table})")
    existing = {row["name"] for row in cur.fetchall()}
    for name, col_type in columns:
        if name not in existing:
            logger.info("Adding column %s.%s", table, name)
            cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {col_type}")


def _decode_student(row):
    if row is None:
        return None
    row["active"] = bool(row.get("active"))
    return row


def _decode_medication(row):
    if row is None:
        return None
    try:
        row["time_ranges"] = json.loads(row.get("time_ranges") or "[]")
    except ValueError:
        logger.warning("Medication %s has unreadable time_ranges %r", row.get("id"), row.get("time_ranges"))
        row["time_ranges"] = []
    row["active"] = bool(row.get("active"))
    row["kind"] = row.get("kind") or "PERMANENT"
    return row


# Students


def add_student(first_name: str, first_surname: str, second_surname: str | None = None, active: bool = True):
    with db_cursor() as cur:
        cur.execute(
            """
            INSERT INTO student (first_name, first_surname, second_surname, active, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (first_name, first_surname, second_surname, 1 if active else 0, now().isoformat()),
        )
        return cur.lastrowid


def get_student(student_id: int):
    with db_cursor() as cur:
        cur.execute("SELECT * FROM student WHERE id = ?", (student_id,))
        return _decode_student(cur.fetchone())


def list_students(include_inactive: bool = False):
    query = "SELECT * FROM student"
    if not include_inactive:
        query += " WHERE active = 1"
    query += " ORDER BY first_surname, second_surname, first_name"
    with db_cursor() as cur:
        cur.execute(query)
        return [_decode_student(r) for r in cur.fetchall()]


def list_active_students():
    return list_students(include_inactive=False)


def update_student(student_id: int, first_name: str, first_surname: str, second_surname: str | None):
    with db_cursor() as cur:
        cur.execute(
            """
            UPDATE student
            SET first_name = ?, first_surname = ?, second_surname = ?
            WHERE id = ?
            """,
            (first_name, first_surname, second_surname, student_id),
        )


def deactivate_student(student_id: int):
    """Soft delete: the student and its history stay in the database."""
    with db_cursor() as cur:
        cur.execute("UPDATE student SET active = 0 WHERE id = ?", (student_id,))
        return cur.rowcount > 0


# Medications


def _medication_values(med: dict):
    return (
        med["name"],
        med.get("dosage") or "",
        json.dumps(list(med.get("time_ranges") or [])),
        med.get("notes"),
        med["start_date"],
        med["end_date"],
        1 if med.get("active", True) else 0,
        med.get("hour"),
        med.get("kind") or "PERMANENT",
    )


def _insert_medication(cur, student_id: int, med: dict):
    cur.execute(
        """
        INSERT INTO medication (name, dosage, time_ranges, notes, start_date, end_date, active, hour, kind,
                                student_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (*_medication_values(med), student_id, now().isoformat()),
    )
    return cur.lastrowid


def add_medication(student_id: int, med: dict):
    with db_cursor() as cur:
        return _insert_medication(cur, student_id, med)


def get_medication(medication_id: int):
    with db_cursor() as cur:
        cur.execute("SELECT * FROM medication WHERE id = ?", (medication_id,))
        return _decode_medication(cur.fetchone())


def list_medications(active_only: bool = False):
    query = "SELECT * FROM medication"
    if active_only:
        query += " WHERE active = 1"
    query += " ORDER BY id ASC"
    with db_cursor() as cur:
        cur.execute(query)
        return [_decode_medication(r) for r in cur.fetchall()]


def list_medications_for_student(student_id: int):
    with db_cursor() as cur:
        cur.execute(
            "SELECT * FROM medication WHERE student_id = ? ORDER BY start_date DESC, id DESC",
            (student_id,),
        )
        return [_decode_medication(r) for r in cur.fetchall()]


def set_medication_active(medication_id: int, active: bool):
    with db_cursor() as cur:
        cur.execute(
            "UPDATE medication SET active = ?, updated_at = ? WHERE id = ?",
            (1 if active else 0, now().isoformat(), medication_id),
        )
        return cur.rowcount > 0


def sync_student_medications(student_id: int, medications):
    """Make the student's standing medications match `medications` in one transaction.

    Rows carrying an `id` owned by the student are updated, rows without one are
    inserted and standing medications missing from the list are deleted. Extra
    doses are left alone. Returns counts per operation.
    """
    counts = {"inserted": 0, "updated": 0, "deleted": 0}
    with db_cursor() as cur:
        cur.execute(
            "SELECT id FROM medication WHERE student_id = ? AND kind = 'PERMANENT'",
            (student_id,),
        )
        existing = {r["id"] for r in cur.fetchall()}
        keep = set()
        for med in medications:
            med_id = med.get("id")
            if med_id in existing:
                keep.add(med_id)
                cur.execute(
                    """
                    UPDATE medication
                    SET name = ?, dosage = ?, time_ranges = ?, notes = ?, start_date = ?, end_date = ?,
                        active = ?, hour = ?, kind = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (*_medication_values(med), now().isoformat(), med_id),
                )
                counts["updated"] += 1
            else:
                _insert_medication(cur, student_id, med)
                counts["inserted"] += 1
        removed = sorted(existing - keep)
        if removed:
            cur.execute(
                f"DELETE FROM medication WHERE id IN ({','.join('?' for _ in removed)})",
                removed,
            )
            counts["deleted"] = len(removed)
    return counts


# Administrations


def dose_key(student_id, medication_id, medication_name: str | None, date_iso: str, time_range: str) -> str:
    """Deterministic identity of one dose: student, medication, date and tag."""
    if medication_id is not None:
        med_part = f"med-{medication_id}"
    else:
        med_part = "manual-" + " ".join((medication_name or "").lower().split())
    return f"{student_id}:{med_part}:{date_iso}:{time_range}"


def upsert_administration(record: dict):
    """Create-if-absent on the dose key, otherwise update the status if it changed.

    Returns "created", "updated" or "unchanged". Both statements are
    conditional writes, so concurrent callers never produce two rows for one dose.
    """
    key = dose_key(
        record["student_id"],
        record.get("medication_id"),
        record.get("medication_name"),
        record["date"],
        record["time_range"],
    )
    ts = now().isoformat()
    with db_cursor() as cur:
        cur.execute(
            """
            INSERT INTO administration (dose_key, student_id, student_name_sortable, medication_id,
                                        medication_name, dosage, date, time_range, status, given_by_uid,
                                        created_at, hour, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(dose_key) DO NOTHING
            """,
            (
                key,
                record["student_id"],
                record["student_name_sortable"],
                record.get("medication_id"),
                record["medication_name"],
                record.get("dosage"),
                record["date"],
                record["time_range"],
                record["status"],
                record["given_by_uid"],
                ts,
                record.get("hour"),
                record.get("notes"),
            ),
        )
        if cur.rowcount == 1:
            return "created"
        cur.execute(
            """
            UPDATE administration
            SET status = ?, given_by_uid = ?, updated_at = ?
            WHERE dose_key = ? AND status != ?
            """,
            (record["status"], record["given_by_uid"], ts, key, record["status"]),
        )
        return "updated" if cur.rowcount == 1 else "unchanged"


def list_administrations(date_iso: str, time_ranges, status: str | None = None):
    tags = list(time_ranges)
    if not tags:
        return []
    query = f"""
        SELECT * FROM administration
        WHERE date = ? AND time_range IN ({','.join('?' for _ in tags)})
    """
    params = [date_iso, *tags]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY student_name_sortable ASC, created_at ASC"
    with db_cursor() as cur:
        cur.execute(query, params)
        return cur.fetchall()


def list_sos_administrations(date_from: str, date_to: str):
    """SOS doses in [date_from, date_to] with the notes of their medication."""
    with db_cursor() as cur:
        cur.execute(
            """
            SELECT a.date, a.hour, a.student_name_sortable, a.medication_name, a.dosage, a.status,
                   COALESCE(NULLIF(a.notes, ''), m.notes) AS notes
            FROM administration a
            LEFT JOIN medication m ON a.medication_id = m.id
            WHERE a.time_range = 'SOS'
              AND a.date >= ? AND a.date <= ?
            ORDER BY a.date ASC, a.hour ASC, a.student_name_sortable ASC
            """,
            (date_from, date_to),
        )
        return cur.fetchall()


def log_audit(action: str, entity_type: str, entity_id: int | None, actor_uid: str | None, meta: dict | None = None):
    ts = now().isoformat()
    payload = json.dumps(meta) if meta else None
    with db_cursor() as cur:
        cur.execute(
            """
            INSERT INTO audit_log (ts, action, entity_type, entity_id, actor_uid, meta_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (ts, action, entity_type, entity_id, actor_uid, payload),
        )


def list_audit(limit: int = 50):
    with db_cursor() as cur:
        cur.execute("SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,))
        return cur.fetchall()


def reset_all():
    with db_cursor() as cur:
        cur.execute("DELETE FROM administration")
        cur.execute("DELETE FROM medication")
        cur.execute("DELETE FROM student")


def seed_demo():
    reset_all()
    today = now().date()

    def day(offset: int) -> str:
        return (today + timedelta(days=offset)).isoformat()

    students = [
        {
            "first_name": "Lucía",
            "first_surname": "Gómez",
            "second_surname": "Pardo",
            "meds": [
                {"name": "Levotiroxina", "dosage": "50mcg", "time_ranges": ["AYUNO"], "notes": "Con agua", "start": -30, "end": 60},
                {"name": "Metilfenidato", "dosage": "10mg", "time_ranges": ["DESAYUNO", "ALMUERZO"], "notes": "", "start": -10, "end": 80},
            ],
        },
        {
            "first_name": "Mateo",
            "first_surname": "Álvarez",
            "second_surname": "Ruiz",
            "meds": [
                {"name": "Amoxicilina", "dosage": "500mg", "time_ranges": ["DESAYUNO", "CENA"], "notes": "Antibiótico 7 días", "start": -2, "end": 4},
                {"name": "Paracetamol", "dosage": "1g", "time_ranges": ["SOS"], "notes": "Si fiebre > 38", "start": -2, "end": 4},
            ],
        },
        {
            "first_name": "Sofía",
            "first_surname": "Núñez",
            "second_surname": "",
            "meds": [
                {"name": "Salbutamol", "dosage": "2 inhalaciones", "time_ranges": ["SOS"], "notes": "Crisis asmática", "start": -100, "end": 200},
                {"name": "Montelukast", "dosage": "5mg", "time_ranges": ["CENA"], "notes": "", "start": -100, "end": 200},
            ],
        },
        {
            "first_name": "Daniel",
            "first_surname": "Castro",
            "second_surname": "Iglesias",
            "meds": [
                {"name": "Omeprazol", "dosage": "20mg", "time_ranges": ["AYUNO"], "notes": "", "start": -5, "end": 25},
                {"name": "Ibuprofeno", "dosage": "400mg", "time_ranges": ["ALMUERZO"], "notes": "Pausado", "start": -5, "end": 5, "active": False},
            ],
        },
    ]

    for s in students:
        sid = add_student(s["first_name"], s["first_surname"], s["second_surname"] or None)
        for m in s["meds"]:
            add_medication(
                sid,
                {
                    "name": m["name"],
                    "dosage": m["dosage"],
                    "time_ranges": m["time_ranges"],
                    "notes": m["notes"] or None,
                    "start_date": day(m["start"]),
                    "end_date": day(m["end"]),
                    "active": m.get("active", True),
                },
            )
