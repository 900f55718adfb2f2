import enum
import logging

from services.eligibility import as_iso_date

logger = logging.getLogger(__name__)


class AdministrationStatus(str, enum.Enum):
    """Estado de una dosis para una fecha y momento del día."""

    GIVEN = "GIVEN"
    NOT_SHOWN = "NOT_SHOWN"
    PENDING = "PENDING"


STATUS_LABELS = {
    AdministrationStatus.GIVEN: "Administrada",
    AdministrationStatus.NOT_SHOWN: "No se presentó",
    AdministrationStatus.PENDING: "Pendiente",
}

_ALIASES = {
    "GIVEN": AdministrationStatus.GIVEN,
    "NOT_SHOWN": AdministrationStatus.NOT_SHOWN,
    "NOSHOW": AdministrationStatus.NOT_SHOWN,
    "NO_SHOW": AdministrationStatus.NOT_SHOWN,
    "PENDING": AdministrationStatus.PENDING,
}


def normalize_status(value) -> AdministrationStatus:
    if isinstance(value, AdministrationStatus):
        return value
    key = str(value or "").strip().upper()
    if key not in _ALIASES:
        raise ValueError(f"Estado desconocido: {value!r}")
    return _ALIASES[key]


def _created_order(record: dict):
    return (record.get("created_at") or "", record.get("id") or 0)


def latest_record(records):
    """Most recently created record; None for an empty sequence."""
    records = list(records)
    if not records:
        return None
    if len(records) > 1:
        logger.debug(
            "Several administrations match student=%s medication=%s date=%s",
            records[0].get("student_id"),
            records[0].get("medication_id"),
            records[0].get("date"),
        )
    return max(records, key=_created_order)


def matching_administrations(student_id, medication_id, administrations, reference_date, selector):
    day = as_iso_date(reference_date)
    return [
        a
        for a in administrations
        if a.get("student_id") == student_id
        and a.get("medication_id") == medication_id
        and a.get("date") == day
        and selector.contains(a.get("time_range"))
    ]


def status_of(student_id, medication_id, administrations, reference_date, selector) -> AdministrationStatus:
    record = latest_record(
        matching_administrations(student_id, medication_id, administrations, reference_date, selector)
    )
    if record is None:
        return AdministrationStatus.PENDING
    try:
        return normalize_status(record.get("status"))
    except ValueError:
        logger.warning("Administration %s has unknown status %r", record.get("id"), record.get("status"))
        return AdministrationStatus.PENDING
