"""
Tests for administration status resolution.
"""
import pytest

from conftest import make_administration
from services.dose_status import AdministrationStatus, normalize_status, status_of
from services.windows import FASTING_BREAKFAST, SingleWindow


def test_no_administration_is_pending():
    assert status_of(1, 1, [], "2024-03-01", SingleWindow("CENA")) == AdministrationStatus.PENDING


def test_given_record_is_returned():
    admins = [make_administration(status="GIVEN")]
    assert status_of(1, 1, admins, "2024-01-15", SingleWindow("ALMUERZO")) == AdministrationStatus.GIVEN


def test_latest_created_record_wins():
    admins = [
        make_administration(admin_id=2, status="NOT_SHOWN", created_at="2024-01-15T13:00:00"),
        make_administration(admin_id=1, status="GIVEN", created_at="2024-01-15T12:00:00"),
    ]
    assert status_of(1, 1, admins, "2024-01-15", SingleWindow("ALMUERZO")) == AdministrationStatus.NOT_SHOWN
    admins[0]["created_at"] = "2024-01-15T11:00:00"
    assert status_of(1, 1, admins, "2024-01-15", SingleWindow("ALMUERZO")) == AdministrationStatus.GIVEN


@pytest.mark.parametrize("raw", ["NOSHOW", "NO_SHOW", "NOT_SHOWN", "no_show"])
def test_no_show_variants_are_normalised(raw):
    admins = [make_administration(status=raw)]
    assert status_of(1, 1, admins, "2024-01-15", SingleWindow("ALMUERZO")) == AdministrationStatus.NOT_SHOWN
    assert normalize_status(raw) == AdministrationStatus.NOT_SHOWN


def test_other_keys_do_not_match():
    admins = [
        make_administration(student_id=2),
        make_administration(medication_id=9),
        make_administration(date="2024-01-16"),
        make_administration(time_range="CENA"),
    ]
    assert status_of(1, 1, admins, "2024-01-15", SingleWindow("ALMUERZO")) == AdministrationStatus.PENDING


def test_combined_window_matches_fasting_event():
    admins = [make_administration(time_range="AYUNO")]
    assert status_of(1, 1, admins, "2024-01-15", FASTING_BREAKFAST) == AdministrationStatus.GIVEN
    assert status_of(1, 1, admins, "2024-01-15", SingleWindow("DESAYUNO")) == AdministrationStatus.PENDING


def test_unknown_status_reads_as_pending():
    admins = [make_administration(status="LOST")]
    assert status_of(1, 1, admins, "2024-01-15", SingleWindow("ALMUERZO")) == AdministrationStatus.PENDING
    with pytest.raises(ValueError):
        normalize_status("LOST")
