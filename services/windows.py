import enum
from dataclasses import dataclass


class TimeWindow(str, enum.Enum):
    """Momento del día en que se administra una dosis."""

    AYUNO = "AYUNO"
    DESAYUNO = "DESAYUNO"
    ALMUERZO = "ALMUERZO"
    CENA = "CENA"
    SOS = "SOS"


WINDOW_ORDER = [w.value for w in TimeWindow]

WINDOW_LABELS = {
    "AYUNO": "Ayuno",
    "DESAYUNO": "Desayuno",
    "ALMUERZO": "Almuerzo",
    "CENA": "Cena",
    "SOS": "SOS",
}

COMBINED_FASTING = "AYUNO_DESAYUNO"


@dataclass(frozen=True)
class SingleWindow:
    tag: str

    @property
    def key(self) -> str:
        return self.tag

    @property
    def label(self) -> str:
        return WINDOW_LABELS[self.tag]

    @property
    def tags(self) -> frozenset:
        return frozenset({self.tag})

    def contains(self, tag: str | None) -> bool:
        return tag in self.tags

    def matches(self, time_ranges) -> bool:
        return _intersects(self.tags, time_ranges)

    def storage_tag(self, time_ranges=None) -> str:
        return self.tag


@dataclass(frozen=True)
class CombinedWindow:
    key: str
    tags: frozenset

    @property
    def label(self) -> str:
        return " + ".join(WINDOW_LABELS[t] for t in WINDOW_ORDER if t in self.tags)

    def contains(self, tag: str | None) -> bool:
        return tag in self.tags

    def matches(self, time_ranges) -> bool:
        return _intersects(self.tags, time_ranges)

    def storage_tag(self, time_ranges=None) -> str:
        """Concrete tag recorded on an administration taken under this window.

        The first tag (in day order) the medication carries; the first tag of
        the window when there is no medication.
        """
        carried = set(time_ranges or [])
        ordered = [t for t in WINDOW_ORDER if t in self.tags]
        for tag in ordered:
            if tag in carried:
                return tag
        return ordered[0]


FASTING_BREAKFAST = CombinedWindow(COMBINED_FASTING, frozenset({"AYUNO", "DESAYUNO"}))


def _intersects(tags: frozenset, time_ranges) -> bool:
    if not time_ranges:
        return False
    return not tags.isdisjoint(time_ranges)


def parse_selector(value: str | None, default: str | None = None):
    """Map a request value (`DESAYUNO`, `AYUNO_DESAYUNO`...) to a selector."""
    raw = (value or default or "").strip().upper()
    if raw == COMBINED_FASTING:
        return FASTING_BREAKFAST
    if raw in WINDOW_ORDER:
        return SingleWindow(raw)
    raise ValueError(f"Momento del día inválido: {value!r}")


def selector_choices():
    """(key, label) pairs in the order the filter bar shows them."""
    choices = [(FASTING_BREAKFAST.key, FASTING_BREAKFAST.label)]
    choices.extend((tag, SingleWindow(tag).label) for tag in WINDOW_ORDER)
    return choices


def clean_time_ranges(values) -> list[str]:
    """Keep known tags only, deduplicated, in day order."""
    wanted = {str(v).strip().upper() for v in values or []}
    return [tag for tag in WINDOW_ORDER if tag in wanted]
