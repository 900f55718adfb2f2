import csv
import io
import logging
import os
import sqlite3
from datetime import timedelta

from flask import Flask, Response, jsonify, redirect, render_template, request, session, url_for

import db
from authz import ADMIN, NURSE, get_current_role, get_current_uid, require_roles
from forms import parse_extra_medication_form, parse_medication_rows, parse_student_form
from services.administrations import RecordOutcome, record_administration
from services.dose_status import STATUS_LABELS, AdministrationStatus, normalize_status
from services.eligibility import EXTRA, as_iso_date, is_eligible
from services.roster import STATUS_FILTER_LABELS, StatusFilter, parse_status_filter, sortable_full_name
from services.roster_state import RosterState
from services.windows import WINDOW_LABELS, WINDOW_ORDER, parse_selector, selector_choices

logging.basicConfig(
    level=os.environ.get("INFIRMARY_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_WINDOW = os.environ.get("INFIRMARY_DEFAULT_WINDOW", "DESAYUNO")

app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("INFIRMARY_SECRET_KEY", "dev-secret-key")


db.init_db()


def _filters_from(values):
    """Date, window and status filter from request values, defaults on bad input."""
    try:
        day = as_iso_date(values.get("date") or db.today_iso())
    except ValueError:
        day = db.today_iso()
    try:
        selector = parse_selector(values.get("window"), DEFAULT_WINDOW)
    except ValueError:
        selector = parse_selector(DEFAULT_WINDOW)
    try:
        status_filter = parse_status_filter(values.get("status"))
    except ValueError:
        status_filter = StatusFilter.ALL
    return day, selector, status_filter


def _back_to_roster(values, msg: str):
    day, selector, status_filter = _filters_from(values)
    return redirect(url_for("roster", date=day, window=selector.key, status=status_filter.value, msg=msg))


@app.context_processor
def inject_helpers():
    return {
        "current_role": get_current_role(request),
        "current_uid": get_current_uid(request),
        "full_name": sortable_full_name,
        "window_choices": selector_choices(),
        "window_labels": WINDOW_LABELS,
        "window_order": WINDOW_ORDER,
        "status_labels": {s.value: label for s, label in STATUS_LABELS.items()},
        "status_filter_labels": {f.value: label for f, label in STATUS_FILTER_LABELS.items()},
    }


@app.route("/")
def roster():
    day, selector, status_filter = _filters_from(request.args)
    state = RosterState(day, selector, status_filter)
    error = None
    try:
        state.refresh(db)
    except sqlite3.Error:
        logger.exception("Could not load roster for %s %s", day, selector.key)
        error = "No se pudieron cargar los datos. Intenta de nuevo."
    return render_template(
        "roster.html",
        roster=state.roster(),
        students=state.students,
        date=day,
        window=selector.key,
        status=status_filter.value,
        msg=request.args.get("msg", ""),
        error=error,
    )


@app.route("/api/roster")
def roster_api():
    try:
        day = as_iso_date(request.args.get("date") or db.today_iso())
        selector = parse_selector(request.args.get("window"), DEFAULT_WINDOW)
        status_filter = parse_status_filter(request.args.get("status"))
    except ValueError as exc:
        return jsonify({"detail": str(exc)}), 400
    state = RosterState(day, selector, status_filter)
    try:
        state.refresh(db)
    except sqlite3.Error:
        logger.exception("Could not load roster for %s %s", day, selector.key)
        return jsonify({"detail": "No se pudieron cargar los datos."}), 503
    entries = []
    for entry in state.roster():
        entries.append(
            {
                "student_id": entry["student"]["id"],
                "name": entry["display_name"],
                "given": entry["given"],
                "doses": [
                    {
                        "medication_id": dose["medication"]["id"],
                        "medication_name": dose["medication"]["name"],
                        "dosage": dose["medication"]["dosage"],
                        "hour": dose["medication"].get("hour"),
                        "status": dose["status"].value,
                        "extra": dose["extra"],
                    }
                    for dose in entry["doses"]
                ],
            }
        )
    return jsonify({"date": day, "window": selector.key, "status": status_filter.value, "students": entries})


@app.route("/administrations", methods=["POST"])
@require_roles(ADMIN, NURSE)
def administration_record():
    form = request.form
    day, selector, _ = _filters_from(form)
    student_id = form.get("student_id", "")
    medication_id = form.get("medication_id", "")
    if not student_id.isdigit() or not medication_id.isdigit():
        return _back_to_roster(form, "Estudiante o medicamento no encontrado.")
    try:
        status = normalize_status(form.get("status") or "GIVEN")
    except ValueError:
        status = None
    if status not in (AdministrationStatus.GIVEN, AdministrationStatus.NOT_SHOWN):
        return _back_to_roster(form, "Estado inválido.")
    try:
        student = db.get_student(int(student_id))
        med = db.get_medication(int(medication_id))
        if not student or not med or med["student_id"] != student["id"]:
            return _back_to_roster(form, "Estudiante o medicamento no encontrado.")
        if not is_eligible(med, day, selector):
            return _back_to_roster(form, "El medicamento no corresponde a esa fecha y momento del día.")
        uid = get_current_uid(request)
        outcome = record_administration(student, med, day, selector, status, uid)
        db.log_audit(
            "record_administration",
            "medication",
            med["id"],
            uid,
            {"student_id": student["id"], "date": day, "window": selector.key, "status": status.value, "outcome": outcome.value},
        )
    except sqlite3.Error:
        logger.exception("Could not save administration student=%s medication=%s", student_id, medication_id)
        return _back_to_roster(form, "Error al guardar administración.")
    if outcome == RecordOutcome.UNCHANGED:
        if status == AdministrationStatus.GIVEN:
            return _back_to_roster(form, "Atención: la dosis ya estaba registrada como administrada.")
        return _back_to_roster(form, "Atención: la dosis ya tenía ese estado.")
    return _back_to_roster(form, f"{med['name']}: {STATUS_LABELS[status]}")


@app.route("/administrations/manual", methods=["POST"])
@require_roles(ADMIN, NURSE)
def administration_manual():
    form = request.form
    day, selector, _ = _filters_from(form)
    student_id = form.get("student_id", "")
    if not student_id.isdigit():
        return _back_to_roster(form, "Selecciona un estudiante.")
    try:
        student = db.get_student(int(student_id))
        if not student or not student["active"]:
            return _back_to_roster(form, "Estudiante no encontrado.")
        uid = get_current_uid(request)
        outcome = record_administration(
            student,
            None,
            day,
            selector,
            form.get("status") or "GIVEN",
            uid,
            medication_name=form.get("medication_name", "").strip(),
            dosage=form.get("dosage", "").strip() or None,
            hour=form.get("hour", "").strip() or None,
            notes=form.get("notes", "").strip() or None,
        )
        db.log_audit(
            "record_manual_administration",
            "student",
            student["id"],
            uid,
            {"date": day, "window": selector.key, "outcome": outcome.value},
        )
    except ValueError as exc:
        return _back_to_roster(form, str(exc))
    except sqlite3.Error:
        logger.exception("Could not save manual administration student=%s", student_id)
        return _back_to_roster(form, "Error al guardar administración manual.")
    if outcome == RecordOutcome.UNCHANGED:
        return _back_to_roster(form, "Atención: la dosis ya estaba registrada.")
    return _back_to_roster(form, "Administración manual guardada.")


@app.route("/day")
def day_view():
    day, selector, status_filter = _filters_from(request.args)
    status = {
        StatusFilter.GIVEN: AdministrationStatus.GIVEN.value,
        StatusFilter.NOSHOW: AdministrationStatus.NOT_SHOWN.value,
    }.get(status_filter)
    error = None
    try:
        records = db.list_administrations(day, sorted(selector.tags), status=status)
    except sqlite3.Error:
        logger.exception("Could not load administrations for %s %s", day, selector.key)
        records = []
        error = "Error al leer datos."
    return render_template(
        "day.html",
        records=records,
        date=day,
        window=selector.key,
        status=status_filter.value,
        error=error,
    )


@app.route("/students")
def student_list():
    include_inactive = request.args.get("all") == "1"
    error = None
    try:
        students = db.list_students(include_inactive=include_inactive)
    except sqlite3.Error:
        logger.exception("Could not load students")
        students = []
        error = "Error al leer datos."
    for s in students:
        s["display_name"] = sortable_full_name(s)
    return render_template(
        "students.html",
        students=students,
        include_inactive=include_inactive,
        msg=request.args.get("msg", ""),
        error=error,
    )


@app.route("/students/new", methods=["GET", "POST"])
@require_roles(ADMIN, NURSE)
def student_new():
    today = db.today_iso()
    if request.method == "POST":
        student, error = parse_student_form(request.form)
        meds, med_error = parse_medication_rows(request.form, today)
        error = error or med_error
        if error:
            return render_template("student_form.html", student=student, meds=meds, error=error, today=today)
        uid = get_current_uid(request)
        try:
            sid = db.add_student(student["first_name"], student["first_surname"], student["second_surname"])
            counts = db.sync_student_medications(sid, meds)
            db.log_audit("create_student", "student", sid, uid, {"medications": counts["inserted"]})
        except sqlite3.Error:
            logger.exception("Could not create student")
            return render_template(
                "student_form.html", student=student, meds=meds, error="Error al guardar estudiante.", today=today
            )
        return redirect(url_for("student_list", msg="Estudiante creado"))
    return render_template("student_form.html", student=None, meds=[], error=None, today=today)


@app.route("/students/<int:student_id>/edit", methods=["GET", "POST"])
@require_roles(ADMIN, NURSE)
def student_edit(student_id: int):
    try:
        student = db.get_student(student_id)
    except sqlite3.Error:
        logger.exception("Could not load student %s", student_id)
        return redirect(url_for("student_list", msg="Error al leer datos."))
    if not student:
        return "Estudiante no encontrado", 404
    today = db.today_iso()
    if request.method == "POST":
        data, error = parse_student_form(request.form)
        meds, med_error = parse_medication_rows(request.form, today)
        error = error or med_error
        data["id"] = student_id
        if error:
            return render_template("student_form.html", student=data, meds=meds, error=error, today=today)
        try:
            db.update_student(student_id, data["first_name"], data["first_surname"], data["second_surname"])
            counts = db.sync_student_medications(student_id, meds)
            db.log_audit("update_student", "student", student_id, get_current_uid(request), counts)
        except sqlite3.Error:
            logger.exception("Could not update student %s", student_id)
            return render_template(
                "student_form.html", student=data, meds=meds, error="Error al guardar estudiante.", today=today
            )
        return redirect(url_for("student_list", msg="Estudiante actualizado"))
    error = None
    try:
        meds = [m for m in db.list_medications_for_student(student_id) if m["kind"] != EXTRA]
    except sqlite3.Error:
        logger.exception("Could not load medications for student %s", student_id)
        meds = []
        error = "Error al leer los medicamentos."
    return render_template("student_form.html", student=student, meds=meds, error=error, today=today)


@app.route("/students/<int:student_id>/deactivate", methods=["POST"])
@require_roles(ADMIN)
def student_deactivate(student_id: int):
    try:
        if not db.deactivate_student(student_id):
            return "Estudiante no encontrado", 404
        db.log_audit("deactivate_student", "student", student_id, get_current_uid(request))
    except sqlite3.Error:
        logger.exception("Could not deactivate student %s", student_id)
        return redirect(url_for("student_list", msg="Error al desactivar estudiante."))
    return redirect(url_for("student_list", msg="Estudiante desactivado"))


@app.route("/medications/extra", methods=["GET", "POST"])
@require_roles(ADMIN, NURSE)
def medication_extra():
    today = db.today_iso()
    try:
        students = db.list_active_students()
    except sqlite3.Error:
        logger.exception("Could not load students for extra medication")
        return render_template(
            "extra_medication.html", students=[], med=None, error="Error al leer datos.", today=today
        )
    for s in students:
        s["display_name"] = sortable_full_name(s)
    if request.method == "POST":
        student_id, med, error = parse_extra_medication_form(request.form, today)
        if not error and not any(s["id"] == student_id for s in students):
            error = "Estudiante no encontrado."
        if error:
            return render_template("extra_medication.html", students=students, med=med, error=error, today=today)
        try:
            med_id = db.add_medication(student_id, med)
            db.log_audit(
                "create_extra_medication",
                "medication",
                med_id,
                get_current_uid(request),
                {"student_id": student_id, "date": med["start_date"], "time_ranges": med["time_ranges"]},
            )
        except sqlite3.Error:
            logger.exception("Could not save extra medication for student %s", student_id)
            return render_template(
                "extra_medication.html", students=students, med=med, error="Error al guardar medicamento extra.",
                today=today,
            )
        window = med["time_ranges"][0]
        return redirect(url_for("roster", date=med["start_date"], window=window, msg="Medicamento extra agregado"))
    return render_template("extra_medication.html", students=students, med=None, error=None, today=today)


@app.route("/medications/<int:med_id>/toggle_active", methods=["POST"])
@require_roles(ADMIN, NURSE)
def medication_toggle_active(med_id: int):
    try:
        med = db.get_medication(med_id)
        if not med:
            return "Medicamento no encontrado", 404
        new_active = not med["active"]
        db.set_medication_active(med_id, new_active)
        db.log_audit(
            "toggle_medication_active",
            "medication",
            med_id,
            get_current_uid(request),
            {"student_id": med["student_id"], "active": new_active},
        )
    except sqlite3.Error:
        logger.exception("Could not toggle medication %s", med_id)
        return redirect(url_for("student_list", msg="Error al actualizar medicamento."))
    return redirect(url_for("student_edit", student_id=med["student_id"]))


def _report_range(args):
    today = db.now().date()
    try:
        date_to = as_iso_date(args.get("to") or today.isoformat())
        date_from = as_iso_date(args.get("from") or (today - timedelta(days=30)).isoformat())
    except ValueError:
        return None, None, "Fecha inválida."
    if date_from > date_to:
        return date_from, date_to, "La fecha inicial no puede ser posterior a la final."
    return date_from, date_to, None


SOS_COLUMNS = [
    ("date", "Fecha"),
    ("hour", "Hora"),
    ("student_name_sortable", "Estudiante"),
    ("medication_name", "Medicamento"),
    ("dosage", "Dosis"),
    ("notes", "Observaciones"),
]


@app.route("/reports/sos")
def sos_report():
    date_from, date_to, error = _report_range(request.args)
    rows = []
    if not error:
        try:
            rows = db.list_sos_administrations(date_from, date_to)
        except sqlite3.Error:
            logger.exception("Could not load SOS report")
            error = "Error al leer datos."
    return render_template(
        "sos_report.html",
        rows=rows,
        columns=SOS_COLUMNS,
        date_from=date_from or "",
        date_to=date_to or "",
        error=error,
    )


@app.route("/reports/sos.csv")
def sos_report_csv():
    date_from, date_to, error = _report_range(request.args)
    if error:
        return error, 400
    try:
        rows = db.list_sos_administrations(date_from, date_to)
    except sqlite3.Error:
        logger.exception("Could not load SOS report for %s..%s", date_from, date_to)
        return "Error al leer datos.", 503
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow([label for _, label in SOS_COLUMNS])
    for row in rows:
        writer.writerow([row.get(key) or "" for key, _ in SOS_COLUMNS])
    filename = f"sos_{date_from}_{date_to}.csv"
    return Response(
        buffer.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "POST":
        uid = request.form.get("uid", "").strip()
        if not uid:
            return render_template("login.html", error="Ingresa tu usuario.")
        session["uid"] = uid
        logger.info("Staff %s signed in", uid)
        return redirect(url_for("roster"))
    return render_template("login.html", error=None)


@app.route("/logout", methods=["POST"])
def logout():
    session.pop("uid", None)
    return redirect(url_for("login"))


@app.route("/dev/seed", methods=["POST"])
@require_roles(ADMIN)
def dev_seed():
    if not app.debug:
        return "Not found", 404
    try:
        db.seed_demo()
        db.log_audit("seed_demo", "seed", None, get_current_uid(request), None)
    except sqlite3.Error:
        logger.exception("Could not load demo data")
        return redirect(url_for("roster", msg="Error al cargar datos de demostración."))
    return redirect(url_for("roster", date=db.today_iso(), msg="Demo data loaded"))


if __name__ == "__main__":
    app.run(debug=True)
