"""
Tests for medication eligibility by date and time window.
"""
from datetime import date

import pytest

from conftest import make_medication
from services.eligibility import (
    as_iso_date,
    extra_medications_due_for_student,
    is_eligible,
    medications_due_for_student,
    standing_medications_due_for_student,
)
from services.windows import FASTING_BREAKFAST, SingleWindow, clean_time_ranges, parse_selector

ALL_SELECTORS = [SingleWindow(tag) for tag in ("AYUNO", "DESAYUNO", "ALMUERZO", "CENA", "SOS")] + [FASTING_BREAKFAST]


def test_lunch_medication_scenario():
    med = make_medication(time_ranges=["ALMUERZO"], start_date="2024-01-01", end_date="2024-01-31")
    assert is_eligible(med, "2024-01-15", SingleWindow("ALMUERZO"))
    assert not is_eligible(med, "2024-02-01", SingleWindow("ALMUERZO"))
    assert not is_eligible(med, "2024-01-15", SingleWindow("CENA"))


def test_range_is_inclusive():
    med = make_medication(start_date="2024-01-01", end_date="2024-01-31")
    assert is_eligible(med, "2024-01-01", SingleWindow("ALMUERZO"))
    assert is_eligible(med, "2024-01-31", SingleWindow("ALMUERZO"))


@pytest.mark.parametrize("selector", ALL_SELECTORS, ids=lambda s: s.key)
def test_outside_range_never_eligible(selector):
    med = make_medication(time_ranges=["AYUNO", "DESAYUNO", "ALMUERZO", "CENA", "SOS"])
    assert not is_eligible(med, "2023-12-31", selector)
    assert not is_eligible(med, "2024-02-01", selector)


@pytest.mark.parametrize("selector", ALL_SELECTORS, ids=lambda s: s.key)
def test_empty_time_ranges_never_eligible(selector):
    med = make_medication(time_ranges=[])
    assert not is_eligible(med, "2024-01-15", selector)


def test_combined_window_intersects_fasting_and_breakfast():
    assert is_eligible(make_medication(time_ranges=["DESAYUNO", "CENA"]), "2024-01-15", FASTING_BREAKFAST)
    assert is_eligible(make_medication(time_ranges=["AYUNO"]), "2024-01-15", FASTING_BREAKFAST)
    assert not is_eligible(make_medication(time_ranges=["ALMUERZO", "CENA", "SOS"]), "2024-01-15", FASTING_BREAKFAST)


def test_inactive_medication_not_eligible():
    assert not is_eligible(make_medication(active=False), "2024-01-15", SingleWindow("ALMUERZO"))


def test_calendar_dates_are_accepted():
    med = make_medication()
    assert is_eligible(med, date(2024, 1, 9), SingleWindow("ALMUERZO"))
    assert as_iso_date(date(2024, 1, 9)) == "2024-01-09"
    with pytest.raises(ValueError):
        as_iso_date("09/01/2024")


def test_due_medications_filter_owner_and_kind():
    meds = [
        make_medication(med_id=1, student_id=1),
        make_medication(med_id=2, student_id=2),
        make_medication(med_id=3, student_id=1, kind="EXTRA"),
        make_medication(med_id=4, student_id=1, time_ranges=["CENA"]),
    ]
    lunch = SingleWindow("ALMUERZO")
    assert [m["id"] for m in medications_due_for_student(1, meds, "2024-01-15", lunch)] == [1, 3]
    assert [m["id"] for m in standing_medications_due_for_student(1, meds, "2024-01-15", lunch)] == [1]
    assert [m["id"] for m in extra_medications_due_for_student(1, meds, "2024-01-15", lunch)] == [3]


def test_parse_selector():
    assert parse_selector("almuerzo") == SingleWindow("ALMUERZO")
    assert parse_selector("AYUNO_DESAYUNO") is FASTING_BREAKFAST
    assert parse_selector(None, "CENA") == SingleWindow("CENA")
    with pytest.raises(ValueError):
        parse_selector("MERIENDA")


def test_combined_window_storage_tag():
    assert FASTING_BREAKFAST.storage_tag(["DESAYUNO", "AYUNO"]) == "AYUNO"
    assert FASTING_BREAKFAST.storage_tag(["DESAYUNO", "CENA"]) == "DESAYUNO"
    assert FASTING_BREAKFAST.storage_tag(None) == "AYUNO"


def test_clean_time_ranges_keeps_known_tags_in_day_order():
    assert clean_time_ranges(["cena", "AYUNO", "MERIENDA", "CENA"]) == ["AYUNO", "CENA"]
