import logging

from services.eligibility import as_iso_date
from services.roster import StatusFilter, build_roster, parse_status_filter

logger = logging.getLogger(__name__)


class RosterState:
    """Owns the student, medication and administration snapshots behind a roster.

    Snapshots are replaced whole, never edited. Administrations depend on the
    date and window, so each filter change starts a new generation and
    administration snapshots loaded for an older generation are dropped.

    The web routes build a fresh state per request and call `refresh` once,
    so a superseded load only happens for a long-lived state that changes
    filters while a load is in flight.
    """

    def __init__(self, reference_date, selector, status_filter=StatusFilter.ALL):
        self.students = ()
        self.medications = ()
        self.administrations = ()
        self.generation = 0
        self.reference_date = as_iso_date(reference_date)
        self.selector = selector
        self.status_filter = parse_status_filter(status_filter)

    def set_filters(self, reference_date=None, selector=None, status_filter=None) -> int:
        day = as_iso_date(reference_date) if reference_date is not None else self.reference_date
        selector = selector or self.selector
        if day != self.reference_date or selector != self.selector:
            self.generation += 1
            self.administrations = ()
        self.reference_date = day
        self.selector = selector
        if status_filter is not None:
            self.status_filter = parse_status_filter(status_filter)
        return self.generation

    def replace_students(self, rows):
        self.students = tuple(rows)

    def replace_medications(self, rows):
        self.medications = tuple(rows)

    def replace_administrations(self, generation: int, rows) -> bool:
        if generation != self.generation:
            logger.debug("Dropping administrations for stale generation %s (current %s)", generation, self.generation)
            return False
        self.administrations = tuple(rows)
        return True

    def refresh(self, store):
        """Reload every snapshot from `store` (the db module or a stand-in)."""
        generation = self.generation
        self.replace_students(store.list_active_students())
        self.replace_medications(store.list_medications())
        self.replace_administrations(
            generation,
            store.list_administrations(self.reference_date, sorted(self.selector.tags)),
        )

    def roster(self):
        return build_roster(
            self.students,
            self.medications,
            self.administrations,
            self.reference_date,
            self.selector,
            self.status_filter,
        )
