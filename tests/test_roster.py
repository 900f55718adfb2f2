"""
Tests for the roster projection.
"""
import unicodedata

import pytest

from conftest import make_administration, make_medication, make_student
from services.dose_status import AdministrationStatus
from services.roster import StatusFilter, build_roster, parse_status_filter, sortable_full_name, student_sort_key
from services.windows import FASTING_BREAKFAST, SingleWindow

LUNCH = SingleWindow("ALMUERZO")
DAY = "2024-01-15"


@pytest.fixture
def abc():
    students = [
        make_student(1, first_name="Ana", first_surname="Abad"),
        make_student(2, first_name="Bruno", first_surname="Bravo"),
        make_student(3, first_name="Carla", first_surname="Cano"),
    ]
    medications = [
        make_medication(med_id=10, student_id=1),
        make_medication(med_id=20, student_id=2),
        make_medication(med_id=30, student_id=3, time_ranges=["CENA"]),
    ]
    administrations = [make_administration(student_id=1, medication_id=10)]
    return students, medications, administrations


def _names(roster):
    return [entry["student"]["first_name"] for entry in roster]


@pytest.mark.parametrize(
    "status_filter, expected",
    [("ALL", ["Ana", "Bruno"]), ("GIVEN", ["Ana"]), ("NOSHOW", ["Bruno"])],
)
def test_status_filters(abc, status_filter, expected):
    students, medications, administrations = abc
    roster = build_roster(students, medications, administrations, DAY, LUNCH, status_filter)
    assert _names(roster) == expected


def test_dose_statuses(abc):
    students, medications, administrations = abc
    roster = build_roster(students, medications, administrations, DAY, LUNCH)
    statuses = {entry["student"]["id"]: [d["status"] for d in entry["doses"]] for entry in roster}
    assert statuses == {1: [AdministrationStatus.GIVEN], 2: [AdministrationStatus.PENDING]}
    assert roster[0]["display_name"] == "Abad Lago, Ana"


def test_sorted_by_surname():
    students = [make_student(1, first_surname="Gómez"), make_student(2, first_surname="Alvarez")]
    medications = [make_medication(med_id=1, student_id=1), make_medication(med_id=2, student_id=2)]
    roster = build_roster(students, medications, [], DAY, LUNCH)
    assert [e["student"]["first_surname"] for e in roster] == ["Alvarez", "Gómez"]


def test_sort_ignores_accents_and_places_enye_after_n():
    students = [
        make_student(1, first_surname="Ortiz"),
        make_student(2, first_surname="Ñandú"),
        make_student(3, first_surname="Nuñez"),
        make_student(4, first_surname="Álvarez"),
        make_student(5, first_surname="Benítez"),
    ]
    ordered = sorted(students, key=student_sort_key)
    assert [s["first_surname"] for s in ordered] == ["Álvarez", "Benítez", "Nuñez", "Ñandú", "Ortiz"]


def test_decomposed_enye_sorts_like_composed():
    students = [
        make_student(1, first_surname=unicodedata.normalize("NFD", "Ñandú")),
        make_student(2, first_surname="Nuñez"),
        make_student(3, first_surname="Ortiz"),
    ]
    ordered = sorted(students, key=student_sort_key)
    assert [s["id"] for s in ordered] == [2, 1, 3]


def test_second_surname_then_name_break_ties():
    students = [
        make_student(1, first_name="Luis", first_surname="Ruiz", second_surname="Soto"),
        make_student(2, first_name="Ana", first_surname="Ruiz", second_surname="Soto"),
        make_student(3, first_name="Zoe", first_surname="Ruiz", second_surname="Arce"),
    ]
    assert [s["id"] for s in sorted(students, key=student_sort_key)] == [3, 2, 1]


def test_inactive_students_are_excluded():
    students = [make_student(1, active=False)]
    assert build_roster(students, [make_medication()], [], DAY, LUNCH) == []


def test_extra_only_student_is_listed():
    students = [make_student(1)]
    medications = [make_medication(med_id=5, kind="EXTRA", start_date=DAY, end_date=DAY)]
    roster = build_roster(students, medications, [], DAY, LUNCH)
    assert len(roster) == 1
    assert roster[0]["doses"][0]["extra"] is True


def test_unknown_medication_reference_is_tolerated():
    students = [make_student(1)]
    medications = [make_medication(med_id=1)]
    administrations = [make_administration(medication_id=999)]
    roster = build_roster(students, medications, administrations, DAY, LUNCH)
    assert roster[0]["doses"][0]["status"] == AdministrationStatus.PENDING


def test_superseded_given_does_not_count_as_given():
    students = [make_student(1)]
    medications = [make_medication(med_id=1)]
    administrations = [
        make_administration(admin_id=1, status="GIVEN", created_at="2024-01-15T12:00:00"),
        make_administration(admin_id=2, status="NOT_SHOWN", created_at="2024-01-15T12:30:00"),
    ]
    assert build_roster(students, medications, administrations, DAY, LUNCH, "GIVEN") == []
    assert len(build_roster(students, medications, administrations, DAY, LUNCH, "NOSHOW")) == 1


def test_combined_window_roster():
    students = [make_student(1)]
    medications = [make_medication(med_id=1, time_ranges=["DESAYUNO"])]
    administrations = [make_administration(time_range="DESAYUNO")]
    roster = build_roster(students, medications, administrations, DAY, FASTING_BREAKFAST, "GIVEN")
    assert _names(roster) == ["Ana"]


def test_parse_status_filter_aliases():
    assert parse_status_filter("no_show") == StatusFilter.NOSHOW
    assert parse_status_filter(None) == StatusFilter.ALL
    with pytest.raises(ValueError):
        parse_status_filter("MAYBE")


def test_sortable_full_name_without_second_surname():
    assert sortable_full_name(make_student(second_surname=None)) == "Pérez, Ana"
    assert sortable_full_name(make_student(second_surname="  ")) == "Pérez, Ana"
