import enum
import unicodedata

from services.dose_status import AdministrationStatus, latest_record, normalize_status, status_of
from services.eligibility import (
    as_iso_date,
    extra_medications_due_for_student,
    standing_medications_due_for_student,
)


class StatusFilter(str, enum.Enum):
    ALL = "ALL"
    GIVEN = "GIVEN"
    NOSHOW = "NOSHOW"


STATUS_FILTER_LABELS = {
    StatusFilter.ALL: "Todos",
    StatusFilter.GIVEN: "Administrados",
    StatusFilter.NOSHOW: "Sin administrar",
}


def parse_status_filter(value) -> StatusFilter:
    if isinstance(value, StatusFilter):
        return value
    key = str(value or "ALL").strip().upper()
    if key in ("NO_SHOW", "NOT_SHOWN"):
        key = "NOSHOW"
    try:
        return StatusFilter(key)
    except ValueError:
        raise ValueError(f"Filtro de estado inválido: {value!r}") from None


def _collation_key(text: str | None) -> str:
    # ñ sorts after every other n, accents are ignored
    text = unicodedata.normalize("NFC", text or "").replace("ñ", "n\uffff").replace("Ñ", "N\uffff")
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def student_sort_key(student: dict):
    return (
        _collation_key(student.get("first_surname")),
        _collation_key(student.get("second_surname")),
        _collation_key(student.get("first_name")),
        student.get("first_surname") or "",
        student.get("second_surname") or "",
        student.get("first_name") or "",
    )


def sortable_full_name(student: dict) -> str:
    """`Surname Surname, Name` as stored on administrations."""
    surnames = " ".join(
        part.strip() for part in (student.get("first_surname"), student.get("second_surname")) if part and part.strip()
    )
    first_name = (student.get("first_name") or "").strip()
    if surnames and first_name:
        return f"{surnames}, {first_name}"
    return surnames or first_name


def _given_in_window(student_id, administrations, day, selector) -> bool:
    """Whether the student's current record for any dose in the window is GIVEN."""
    by_dose = {}
    for a in administrations:
        if a.get("student_id") != student_id or a.get("date") != day:
            continue
        if not selector.contains(a.get("time_range")):
            continue
        dose = (a.get("medication_id"), a.get("medication_name"), a.get("time_range"))
        by_dose.setdefault(dose, []).append(a)
    for records in by_dose.values():
        current = latest_record(records)
        try:
            if normalize_status(current.get("status")) == AdministrationStatus.GIVEN:
                return True
        except ValueError:
            continue
    return False


def build_roster(students, medications, administrations, reference_date, selector, status_filter=StatusFilter.ALL):
    """Students with doses due for the date and window, filtered and sorted.

    Each entry is a dict with the student, its display name, the due doses
    (medication, status, extra flag) and whether any dose was given.
    """
    day = as_iso_date(reference_date)
    status_filter = parse_status_filter(status_filter)
    roster = []
    for student in students:
        if not student.get("active"):
            continue
        student_id = student.get("id")
        standing = standing_medications_due_for_student(student_id, medications, day, selector)
        extras = extra_medications_due_for_student(student_id, medications, day, selector)
        if not standing and not extras:
            continue
        doses = []
        for med, extra in [(m, False) for m in standing] + [(m, True) for m in extras]:
            doses.append(
                {
                    "medication": med,
                    "status": status_of(student_id, med.get("id"), administrations, day, selector),
                    "extra": extra,
                }
            )
        given = _given_in_window(student_id, administrations, day, selector)
        if status_filter == StatusFilter.GIVEN and not given:
            continue
        if status_filter == StatusFilter.NOSHOW and given:
            continue
        roster.append(
            {
                "student": student,
                "display_name": sortable_full_name(student),
                "doses": doses,
                "given": given,
            }
        )
    roster.sort(key=lambda entry: student_sort_key(entry["student"]))
    return roster
