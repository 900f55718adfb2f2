"""
Test configuration: every test gets its own sqlite file.
"""
import os
import tempfile

# app.py initialises the database at import time
os.environ.setdefault("INFIRMARY_DB", os.path.join(tempfile.mkdtemp(), "import.db"))

import pytest

import db


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """
    Point the persistence module at a fresh database for each test.
    """
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "infirmary.db"))
    db.init_db()
    yield


@pytest.fixture
def client():
    """
    Flask test client bound to the per-test database.
    """
    from app import app

    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


def make_student(student_id=1, first_name="Ana", first_surname="Pérez", second_surname="Lago", active=True):
    return {
        "id": student_id,
        "first_name": first_name,
        "first_surname": first_surname,
        "second_surname": second_surname,
        "active": active,
    }


def make_medication(med_id=1, student_id=1, time_ranges=("ALMUERZO",), start_date="2024-01-01",
                    end_date="2024-01-31", active=True, kind="PERMANENT", name="Ibuprofeno"):
    return {
        "id": med_id,
        "student_id": student_id,
        "name": name,
        "dosage": "200mg",
        "time_ranges": list(time_ranges),
        "notes": None,
        "start_date": start_date,
        "end_date": end_date,
        "active": active,
        "hour": None,
        "kind": kind,
    }


def make_administration(admin_id=1, student_id=1, medication_id=1, date="2024-01-15", time_range="ALMUERZO",
                        status="GIVEN", created_at="2024-01-15T12:00:00"):
    return {
        "id": admin_id,
        "student_id": student_id,
        "medication_id": medication_id,
        "medication_name": "Ibuprofeno",
        "date": date,
        "time_range": time_range,
        "status": status,
        "created_at": created_at,
    }
