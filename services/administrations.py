import enum
import logging

import db
from services.dose_status import AdministrationStatus, latest_record, normalize_status
from services.eligibility import as_iso_date
from services.roster import sortable_full_name

logger = logging.getLogger(__name__)


class RecordOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def build_administration(student: dict, medication: dict | None, reference_date, selector, status, actor_id: str,
                         hour: str | None = None, notes: str | None = None, medication_name: str | None = None,
                         dosage: str | None = None) -> dict:
    """Administration row with student and medication fields captured now."""
    status = normalize_status(status)
    if status == AdministrationStatus.PENDING:
        raise ValueError("Solo se registran dosis administradas o no presentadas.")
    if medication is not None:
        medication_name = medication.get("name")
        dosage = medication.get("dosage")
        hour = hour or medication.get("hour")
        time_ranges = medication.get("time_ranges")
    else:
        time_ranges = None
    if not (medication_name or "").strip():
        raise ValueError("El medicamento es obligatorio.")
    return {
        "student_id": student["id"],
        "student_name_sortable": sortable_full_name(student),
        "medication_id": medication.get("id") if medication is not None else None,
        "medication_name": medication_name.strip(),
        "dosage": dosage,
        "date": as_iso_date(reference_date),
        "time_range": selector.storage_tag(time_ranges),
        "status": status.value,
        "given_by_uid": actor_id,
        "hour": hour or None,
        "notes": notes or None,
    }


def _current_tag(record: dict, selector):
    """Tag of the newest existing record for this dose under a combined window.

    Keeps later marks on the record the roster reads; None when there is none.
    """
    rows = db.list_administrations(record["date"], sorted(selector.tags))
    name = " ".join(record["medication_name"].lower().split())
    same_dose = [
        a
        for a in rows
        if a["student_id"] == record["student_id"]
        and a["medication_id"] == record["medication_id"]
        and (record["medication_id"] is not None or " ".join((a["medication_name"] or "").lower().split()) == name)
    ]
    current = latest_record(same_dose)
    return current["time_range"] if current else None


def record_administration(student: dict, medication: dict | None, reference_date, selector, status, actor_id: str,
                          **extra) -> RecordOutcome:
    """Mark a dose given or not shown; at most one record per dose.

    Re-marking a dose with the status it already has is a no-op and returns
    UNCHANGED.
    """
    record = build_administration(student, medication, reference_date, selector, status, actor_id, **extra)
    if len(selector.tags) > 1:
        record["time_range"] = _current_tag(record, selector) or record["time_range"]
    outcome = RecordOutcome(db.upsert_administration(record))
    logger.info(
        "Administration %s student=%s medication=%s date=%s window=%s status=%s by=%s",
        outcome.value,
        record["student_id"],
        record["medication_id"] or record["medication_name"],
        record["date"],
        record["time_range"],
        record["status"],
        actor_id,
    )
    return outcome
