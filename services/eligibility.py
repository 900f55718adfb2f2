from datetime import date, datetime

PERMANENT = "PERMANENT"
EXTRA = "EXTRA"


def as_iso_date(value) -> str:
    """Normalise a reference date to `YYYY-MM-DD`.

    Medication ranges are stored as fixed-width ISO strings, so plain string
    comparison follows calendar order.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = (value or "").strip()
    # validates the format, keeps the zero padding
    return date.fromisoformat(text).isoformat()


def is_eligible(medication: dict, reference_date, selector) -> bool:
    if not medication.get("active"):
        return False
    start = medication.get("start_date")
    end = medication.get("end_date")
    if not start or not end:
        return False
    day = as_iso_date(reference_date)
    if not (start <= day <= end):
        return False
    return selector.matches(medication.get("time_ranges"))


def medications_due_for_student(student_id, medications, reference_date, selector, kind: str | None = None):
    day = as_iso_date(reference_date)
    due = []
    for med in medications:
        if med.get("student_id") != student_id:
            continue
        if kind is not None and (med.get("kind") or PERMANENT) != kind:
            continue
        if is_eligible(med, day, selector):
            due.append(med)
    return due


def standing_medications_due_for_student(student_id, medications, reference_date, selector):
    return medications_due_for_student(student_id, medications, reference_date, selector, kind=PERMANENT)


def extra_medications_due_for_student(student_id, medications, reference_date, selector):
    return medications_due_for_student(student_id, medications, reference_date, selector, kind=EXTRA)
