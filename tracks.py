"""Track and level configuration loader."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from errors import ValidationError

# Columns that exist on ``daily_checkins``; check-in flags are interpolated into SQL.
CHECKIN_COLUMNS: tuple[str, ...] = ("data_task", "lang_task", "soft_task")

CUSTOM_TRACK = "custom"


class TrackConfigError(ValueError):
    """Raised when ``tracks.json`` contains invalid data."""


@dataclass(frozen=True)
class Track:
    """One of the fixed learning tracks."""

    id: str
    checkin_key: str
    checkin_column: str
    label: str
    label_ar: str


@dataclass(frozen=True)
class Level:
    id: str
    label: str
    label_ar: str


class TrackRegistry:
    """Load the fixed tracks, learner levels and English sub-levels from ``tracks.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "tracks.json"
        self._tracks: List[Track] = []
        self._levels: List[Level] = []
        self._english_levels: List[str] = []
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload the registry from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Track configuration not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, dict):
            raise TrackConfigError("Track configuration must contain a JSON object")

        tracks: List[Track] = []
        seen: set[str] = set()
        seen_keys: set[str] = set()
        for idx, entry in enumerate(raw.get("tracks") or [], start=1):
            if not isinstance(entry, dict):
                raise TrackConfigError(f"Track #{idx} must be a JSON object")
            track_id = str(entry.get("id", "")).strip()
            if not track_id:
                raise TrackConfigError(f"Track #{idx} is missing a non-empty 'id'")
            if track_id in seen or track_id == CUSTOM_TRACK:
                raise TrackConfigError(f"Duplicate or reserved track id: {track_id}")
            seen.add(track_id)

            checkin_key = str(entry.get("checkin_key") or track_id).strip()
            if checkin_key in seen_keys:
                raise TrackConfigError(f"Duplicate check-in key: {checkin_key}")
            seen_keys.add(checkin_key)

            column = str(entry.get("checkin_column", "")).strip()
            if column not in CHECKIN_COLUMNS:
                raise TrackConfigError(
                    f"Track {track_id} uses unknown check-in column '{column}'"
                )
            label = str(entry.get("label") or track_id).strip()
            label_ar = str(entry.get("label_ar") or label).strip()
            tracks.append(Track(track_id, checkin_key, column, label, label_ar))

        if not tracks:
            raise TrackConfigError("Track configuration must define at least one track")

        levels: List[Level] = []
        for idx, entry in enumerate(raw.get("levels") or [], start=1):
            if not isinstance(entry, dict) or not str(entry.get("id", "")).strip():
                raise TrackConfigError(f"Level #{idx} is missing a non-empty 'id'")
            level_id = str(entry["id"]).strip()
            label = str(entry.get("label") or level_id).strip()
            levels.append(Level(level_id, label, str(entry.get("label_ar") or label).strip()))

        if not levels:
            raise TrackConfigError("Track configuration must define at least one level")

        english_levels = [str(value).strip() for value in raw.get("english_levels") or []]

        self._tracks = tracks
        self._levels = levels
        self._english_levels = [value for value in english_levels if value]

    # ------------------------------------------------------------------
    def track_ids(self) -> Sequence[str]:
        """Return the fixed track identifiers in configuration order."""

        return tuple(track.id for track in self._tracks)

    def level_ids(self) -> Sequence[str]:
        return tuple(level.id for level in self._levels)

    def english_level_ids(self) -> Sequence[str]:
        return tuple(self._english_levels)

    def check_levels(self, level: Optional[str], english_level: Optional[str] = None) -> None:
        """Raise ``ValidationError`` unless both values are configured (or unset)."""

        if level is not None and level not in self.level_ids():
            raise ValidationError(
                f"unknown level '{level}'; expected one of {', '.join(self.level_ids())}",
                message_ar="المستوى غير معروف",
                field="level",
            )
        if english_level is not None and english_level not in self.english_level_ids():
            raise ValidationError(
                f"unknown english level '{english_level}'",
                message_ar="مستوى اللغة الإنجليزية غير معروف",
                field="english_level",
            )

    def for_checkin(self, key: str) -> Optional[Track]:
        """Resolve a check-in key (``lang``) or a track id (``english``) to its track."""

        candidate = (key or "").strip().lower()
        for track in self._tracks:
            if candidate in (track.checkin_key, track.id):
                return track
        return None

    def label_map(self, *, arabic: bool = True) -> dict[str, str]:
        """Return a mapping from track identifier to its display label."""

        return {
            track.id: track.label_ar if arabic else track.label for track in self._tracks
        }

    # ------------------------------------------------------------------
    def __iter__(self) -> Iterable[Track]:
        return iter(self._tracks)


def is_visible(
    item_level: Optional[str],
    learner_level: Optional[str],
    *,
    item_english_level: Optional[str] = None,
    learner_english_level: Optional[str] = None,
) -> bool:
    """Return whether a catalog item is visible to a learner.

    Unrestricted items are visible to every level. Restricted items need an
    exact level match; the English sub-level is checked the same way.
    """

    if item_level and item_level != learner_level:
        return False
    if item_english_level and item_english_level != learner_english_level:
        return False
    return True


TRACKS = TrackRegistry()
"""Singleton registry used throughout the application."""
