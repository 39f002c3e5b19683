"""Paths, environment overrides and persisted preferences.

Directory layout::

    $CAMVIGIL_ARCHIVE_ROOT (or ~/CamVigil_StoragePartition)
      CamVigilArchives/
        camvigil.sqlite
        cam0/cam0_20250101_080000_00000.mkv
        cam1/...

    <external volume>/CamVigilExports/CamVigil_2025-01-01.mp4

User preferences live in ``QSettings("CamVigil", "CamVigil")``.
"""

import json
import logging
import os
from typing import List, Optional

from PySide6.QtCore import QSettings

from .models import CameraProfile, ExportOptions, DEFAULT_SEGMENT_SECONDS

logger = logging.getLogger(__name__)

ARCHIVE_ROOT_ENV = "CAMVIGIL_ARCHIVE_ROOT"
EXPORT_ROOT_ENV = "CAMVIGIL_EXPORT_ROOT"

ARCHIVE_SUBDIR = "CamVigilArchives"
EXPORT_SUBDIR = "CamVigilExports"
DB_FILENAME = "camvigil.sqlite"

LOW_SPACE_WARN_BYTES = 5 * 1024 ** 3
CLEANUP_INTERVAL_MS = 60 * 60 * 1000  # hourly


def default_storage_root() -> str:
    """Storage root: ``$CAMVIGIL_ARCHIVE_ROOT`` or ``~/CamVigil_StoragePartition``."""
    env = os.environ.get(ARCHIVE_ROOT_ENV, "")
    if env:
        return env
    return os.path.join(os.path.expanduser("~"), "CamVigil_StoragePartition")


def archive_dir() -> str:
    """Directory that holds the segment tree and the index database."""
    return os.path.join(default_storage_root(), ARCHIVE_SUBDIR)


def db_path(archive: str) -> str:
    return os.path.join(archive, DB_FILENAME)


def load_camera_profiles(path: str) -> List[CameraProfile]:
    """Read a camera list from JSON.

    Accepts either a bare list or ``{"cameras": [...]}``; each entry
    needs at least ``url``.  Raises ``ValueError`` on bad content.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("cameras", [])
    if not isinstance(data, list):
        raise ValueError(f"Camera config must be a list: {path}")
    profiles: List[CameraProfile] = []
    for i, entry in enumerate(data):
        if not isinstance(entry, dict) or not entry.get("url"):
            raise ValueError(f"Camera #{i} in {path} has no url")
        profiles.append(CameraProfile.from_dict(entry))
    return profiles


def save_camera_profiles(path: str, profiles: List[CameraProfile]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"cameras": [p.to_dict() for p in profiles]}, f, indent=2)


class AppSettings:
    """Typed access to the persisted preferences.

    Pass an explicit ``QSettings`` (e.g. an INI file in tests) to avoid
    touching the user's real settings store.
    """

    def __init__(self, settings: Optional[QSettings] = None) -> None:
        self._settings = settings if settings is not None else QSettings("CamVigil", "CamVigil")

    # ── recording ───────────────────────────────────────────────────

    @property
    def segment_duration(self) -> int:
        return int(self._settings.value("segmentDuration", DEFAULT_SEGMENT_SECONDS, type=int))

    @segment_duration.setter
    def segment_duration(self, seconds: int) -> None:
        self._settings.setValue("segmentDuration", int(seconds))

    @property
    def retention_days(self) -> int:
        """Days to keep segments; 0 disables the age limit."""
        return int(self._settings.value("retentionDays", 0, type=int))

    @retention_days.setter
    def retention_days(self, days: int) -> None:
        self._settings.setValue("retentionDays", int(days))

    @property
    def max_archive_gb(self) -> float:
        """Archive size cap in GiB; 0 disables the size limit."""
        return float(self._settings.value("maxArchiveGb", 0.0, type=float))

    @max_archive_gb.setter
    def max_archive_gb(self, gb: float) -> None:
        self._settings.setValue("maxArchiveGb", float(gb))

    # ── export ──────────────────────────────────────────────────────

    def export_options(self) -> ExportOptions:
        raw = self._settings.value("exportOptions", "")
        if not raw:
            return ExportOptions()
        try:
            return ExportOptions.from_dict(json.loads(raw))
        except (ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable export options: %s", exc)
            return ExportOptions()

    def set_export_options(self, opts: ExportOptions) -> None:
        self._settings.setValue("exportOptions", json.dumps(opts.to_dict()))

    def sync(self) -> None:
        self._settings.sync()
