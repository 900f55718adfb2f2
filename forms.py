from datetime import date, datetime

from services.eligibility import EXTRA, PERMANENT
from services.windows import clean_time_ranges


def _clean(form, name: str) -> str:
    return (form.get(name) or "").strip()


def _valid_iso_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return len(value) == 10


def _valid_hour(value: str) -> bool:
    try:
        datetime.strptime(value, "%H:%M")
    except ValueError:
        return False
    return True


def parse_student_form(form):
    data = {
        "first_name": _clean(form, "first_name"),
        "first_surname": _clean(form, "first_surname"),
        "second_surname": _clean(form, "second_surname") or None,
    }
    error = None
    if not data["first_name"] or not data["first_surname"]:
        error = "El nombre y el primer apellido son obligatorios."
    return data, error


def validate_medication(med: dict) -> str | None:
    if not med.get("name"):
        return "El nombre del medicamento es obligatorio."
    if not med.get("time_ranges"):
        return f"{med['name']}: selecciona al menos un momento del día."
    if not _valid_iso_date(med.get("start_date") or "") or not _valid_iso_date(med.get("end_date") or ""):
        return f"{med['name']}: fecha inválida."
    if med["start_date"] > med["end_date"]:
        return f"{med['name']}: la fecha de inicio no puede ser posterior a la fecha de fin."
    if med.get("hour") and not _valid_hour(med["hour"]):
        return f"{med['name']}: hora inválida."
    return None


def parse_medication_rows(form, default_date: str):
    """Read the `meds-<n>-*` rows of the student form.

    Blank rows and rows ticked for removal are skipped. Returns (medications, first error or None).
    """
    try:
        count = int(form.get("med_count", "0") or "0")
    except ValueError:
        count = 0
    meds = []
    error = None
    for idx in range(max(count, 0)):
        prefix = f"meds-{idx}-"
        if form.get(prefix + "remove"):
            continue
        raw_id = _clean(form, prefix + "id")
        med = {
            "id": int(raw_id) if raw_id.isdigit() else None,
            "name": _clean(form, prefix + "name"),
            "dosage": _clean(form, prefix + "dosage"),
            "time_ranges": clean_time_ranges(form.getlist(prefix + "time_ranges")),
            "notes": _clean(form, prefix + "notes") or None,
            "start_date": _clean(form, prefix + "start_date") or default_date,
            "end_date": _clean(form, prefix + "end_date") or default_date,
            "hour": _clean(form, prefix + "hour") or None,
            "active": form.get(prefix + "active", "1") != "0",
            "kind": PERMANENT,
        }
        if med["id"] is None and not (med["name"] or med["dosage"] or med["time_ranges"]):
            continue
        error = error or validate_medication(med)
        meds.append(med)
    return meds, error


def parse_extra_medication_form(form, default_date: str):
    raw_student = _clean(form, "student_id")
    day = _clean(form, "date") or default_date
    med = {
        "name": _clean(form, "name"),
        "dosage": _clean(form, "dosage"),
        "time_ranges": clean_time_ranges(form.getlist("time_ranges")),
        "notes": _clean(form, "notes") or None,
        "start_date": day,
        "end_date": day,
        "hour": _clean(form, "hour") or None,
        "active": True,
        "kind": EXTRA,
    }
    if not raw_student.isdigit():
        return None, med, "Selecciona un estudiante."
    return int(raw_student), med, validate_medication(med)
