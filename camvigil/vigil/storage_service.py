"""External-volume detection and free-space queries.

An *external* volume is a mounted, ready, writable filesystem under one of
the removable-media mount roots (``/media``, ``/run/media``, ``/mnt``,
``/Volumes``).  ``$CAMVIGIL_EXPORT_ROOT`` overrides detection entirely,
which is also how tests point exports at a temp directory.
"""

import logging
import os
from typing import List, Optional

from PySide6.QtCore import QStorageInfo

from .config import EXPORT_ROOT_ENV

logger = logging.getLogger(__name__)

_REMOVABLE_ROOTS = ("/media/", "/run/media/", "/mnt/", "/Volumes/")


def free_bytes_at(path: str) -> int:
    """Bytes available to the current user on the volume holding *path*.

    Walks up to the nearest existing ancestor so it works for directories
    that have not been created yet.  Returns 0 if nothing is mounted.
    """
    probe = os.path.abspath(path)
    while not os.path.exists(probe):
        parent = os.path.dirname(probe)
        if parent == probe:
            break
        probe = parent
    info = QStorageInfo(probe)
    if not info.isValid() or not info.isReady():
        return 0
    return int(info.bytesAvailable())


class StorageService:
    """Answers "is there an export drive, where, and how full is it?".

    Passed explicitly to :class:`PlaybackExporter`; there is no
    process-wide instance.
    """

    def __init__(self, export_root: Optional[str] = None) -> None:
        self._override = export_root

    def _candidates(self) -> List[str]:
        roots: List[str] = []
        for vol in QStorageInfo.mountedVolumes():
            if not vol.isValid() or not vol.isReady() or vol.isReadOnly():
                continue
            root = vol.rootPath()
            if any(root.startswith(prefix) for prefix in _REMOVABLE_ROOTS):
                roots.append(root)
        return sorted(roots)

    def external_root(self) -> str:
        """Root of the export volume, or ``""`` when none is attached."""
        override = self._override or os.environ.get(EXPORT_ROOT_ENV, "")
        if override:
            return override if os.path.isdir(override) else ""
        found = self._candidates()
        if found:
            if len(found) > 1:
                logger.info("Several external volumes mounted, using %s", found[0])
            return found[0]
        return ""

    def has_external(self) -> bool:
        return bool(self.external_root())

    def free_bytes(self, path: Optional[str] = None) -> int:
        """Free bytes on *path*'s volume (default: the external root)."""
        target = path or self.external_root()
        if not target:
            return 0
        return free_bytes_at(target)
