"""
Category → color assignment and the persisted user override map.
"""

import colorsys
import hashlib
import logging
from typing import TYPE_CHECKING
from typing import Mapping

from team_calendar.models import DAYS_OFF_CATEGORY
from team_calendar.models import ITERATION_CATEGORY
from team_calendar.models import UNCATEGORIZED
from team_calendar.models import TeamCalendarError
from team_calendar.models import TransportError
from team_calendar.observable import ObservableValue

if TYPE_CHECKING:
    from team_calendar.storage import DataStore

_logger = logging.getLogger(__name__)

COLOR_SETTINGS_KEY = "eventColors"

DEFAULT_COLORS = {
    DAYS_OFF_CATEGORY: "#ff6b6b",
    ITERATION_CATEGORY: "#4dabf7",
    UNCATEGORIZED: "#868e96",
}


def generate_color(category: str) -> str:
    """Deterministic ``#rrggbb`` for *category*.

    Uses SHA-256 rather than ``hash()`` so the result survives interpreter
    restarts (``PYTHONHASHSEED`` randomization).
    """
    if not category or not category.strip():
        return DEFAULT_COLORS[UNCATEGORIZED]
    digest = hashlib.sha256(category.encode("utf-8", "surrogatepass")).digest()
    hue = int.from_bytes(digest[0:2], "big") % 360
    saturation = 55 + digest[2] % 20
    lightness = 42 + digest[3] % 15
    r, g, b = colorsys.hls_to_rgb(hue / 360.0, lightness / 100.0, saturation / 100.0)
    return "#{:02x}{:02x}{:02x}".format(round(r * 255), round(g * 255), round(b * 255))


def default_color(category: str) -> str:
    """Static table for well-known categories, hashed color for the rest."""
    if not category or not category.strip():
        return DEFAULT_COLORS[UNCATEGORIZED]
    return DEFAULT_COLORS.get(category) or generate_color(category)


def resolve_color(category: str, overrides: Mapping[str, str] | None = None) -> str:
    """User override first, then :func:`default_color`."""
    if overrides:
        key = category if category and category.strip() else UNCATEGORIZED
        custom = overrides.get(key)
        if custom:
            return custom
    return default_color(category)


class ColorSettings:
    """User-editable color overrides persisted as the ``eventColors`` blob."""

    def __init__(self, overrides: Mapping[str, str] | None = None):
        self.observable: ObservableValue[dict[str, str]] = ObservableValue(dict(overrides or {}))

    @property
    def overrides(self) -> dict[str, str]:
        return self.observable.value

    def resolve(self, category: str) -> str:
        return resolve_color(category, self.overrides)

    def merge(self, updates: Mapping[str, str]):
        """Merge *updates* into the existing overrides (never replaces the map)."""
        merged = dict(self.overrides)
        merged.update(updates)
        self.observable.value = merged

    def reset(self, category: str):
        """Drop the override for *category* so it falls back to its default."""
        if category in self.overrides:
            merged = dict(self.overrides)
            del merged[category]
            self.observable.value = merged

    async def load(self, store: "DataStore"):
        """Load saved overrides; missing or unreadable data keeps the defaults."""
        try:
            data = await store.get_value(COLOR_SETTINGS_KEY)
        except TeamCalendarError as e:
            _logger.warning("Could not load color settings, using defaults: %s", e)
            return
        if not data:
            _logger.debug("No saved color settings found, using defaults")
            return
        if not isinstance(data, dict):
            _logger.warning("Ignoring malformed color settings blob (%s)", type(data).__name__)
            return
        self.observable.value = {str(k): str(v) for k, v in data.items() if v}

    async def save(self, store: "DataStore"):
        try:
            await store.set_value(COLOR_SETTINGS_KEY, dict(self.overrides))
        except TransportError:
            _logger.error("Failed to save color settings")
            raise
