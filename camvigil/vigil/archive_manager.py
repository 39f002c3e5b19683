"""Recording-session orchestration.

:class:`ArchiveManager` owns one recording session at a time:

* brings up the :class:`DbWriter` thread and opens the index (blocking,
  once, before any segment events can flow);
* registers the cameras and begins a session row;
* starts one :class:`ArchiveWorker` per camera;
* relays worker events to the writer from a single dispatch thread, so
  the writer sees one ordered command stream regardless of how many
  cameras are recording.

The dispatch thread (``archive-dispatch``) is the orchestrator's event
thread: ``segment_written`` and ``worker_error`` are emitted from it.
Receivers that live in the Qt thread get them queued through the default
``AutoConnection``; connect with ``DirectConnection`` to run on the
dispatch thread instead.

States: idle → recording (``start_recording``) → idle (``stop_recording``).
Calling ``start_recording`` while recording raises
:class:`AlreadyRecordingError`.
"""

import logging
import os
import queue
import threading
import time
from typing import Callable, List, Optional

from PySide6.QtCore import QObject, QTimer, Signal

from . import config
from .archive_worker import (
    ArchiveWorker,
    RecordingError,
    SegmentClosed,
    SegmentFinalized,
    SegmentOpened,
)
from .db_writer import DbWriter
from .errors import AlreadyRecordingError, ArchiveError, StoreOpenError
from .models import CameraProfile, RecordingSession, DEFAULT_SEGMENT_SECONDS, NS_PER_SEC
from .storage_service import free_bytes_at
from .utils import fmt_time

logger = logging.getLogger(__name__)

_STOP = object()


class ArchiveManager(QObject):
    """Starts, stops and feeds the per-camera archive workers."""

    segment_written = Signal()          # a segment file was completed
    worker_error = Signal(int, str)     # camera index, message

    def __init__(
        self,
        parent: QObject | None = None,
        segment_seconds: int = DEFAULT_SEGMENT_SECONDS,
        retention_days: int = 0,
        max_archive_bytes: int = 0,
        worker_factory: Callable[..., ArchiveWorker] = ArchiveWorker,
        writer_factory: Callable[[], DbWriter] = DbWriter,
    ) -> None:
        super().__init__(parent)
        self._segment_seconds = int(segment_seconds)
        self.retention_days = int(retention_days)
        self.max_archive_bytes = int(max_archive_bytes)
        self._worker_factory = worker_factory
        self._writer_factory = writer_factory

        self._archive_dir = config.archive_dir()
        os.makedirs(self._archive_dir, exist_ok=True)

        self._db: Optional[DbWriter] = None
        self._session: Optional[RecordingSession] = None
        self._workers: List[ArchiveWorker] = []
        self._events: "queue.Queue" = queue.Queue()
        self._dispatcher: Optional[threading.Thread] = None

        self._cleanup_timer = QTimer(self)
        self._cleanup_timer.timeout.connect(self.cleanup_archive)
        self._cleanup_timer.start(config.CLEANUP_INTERVAL_MS)

        logger.info("ArchiveManager initialized, archive_dir=%s", self._archive_dir)

    # ── properties ──────────────────────────────────────────────────

    @property
    def archive_root(self) -> str:
        return self._archive_dir

    @property
    def is_recording(self) -> bool:
        return bool(self._workers)

    @property
    def session(self) -> Optional[RecordingSession]:
        return self._session

    @property
    def segment_duration(self) -> int:
        return self._segment_seconds

    @property
    def db(self) -> Optional[DbWriter]:
        """The index writer, once the first session has opened it."""
        return self._db

    # ── public API ──────────────────────────────────────────────────

    def start_recording(self, profiles: List[CameraProfile]) -> RecordingSession:
        """Begin a new session recording every camera in *profiles*.

        Raises :class:`AlreadyRecordingError` if a session is active,
        :class:`StoreOpenError` if the index cannot be opened (nothing is
        started in that case), and :class:`ArchiveError` for an empty list.
        """
        if self._workers:
            raise AlreadyRecordingError("A recording session is already active")
        if not profiles:
            raise ArchiveError("No cameras to record")

        # Re-resolve each start so a changed env override is honoured
        self._archive_dir = config.archive_dir()
        os.makedirs(self._archive_dir, exist_ok=True)

        avail = free_bytes_at(self._archive_dir)
        if 0 < avail < config.LOW_SPACE_WARN_BYTES:
            logger.warning("Low free space in %s: %d MB available",
                           self._archive_dir, avail // (1024 * 1024))

        db = self._ensure_db()

        for p in profiles:
            db.ensure_camera(p.url, p.sub_url, p.display_name)

        session = RecordingSession.create(self._archive_dir, self._segment_seconds, profiles)
        db.begin_session(session.session_id, session.archive_root, session.segment_duration_s)
        self._session = session
        logger.info("Session %s | master start %s",
                    session.session_id, session.master_start.strftime("%Y%m%d_%H%M%S"))

        self._events = queue.Queue()
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, args=(self._events, session, db),
            name="archive-dispatch", daemon=True,
        )
        self._dispatcher.start()

        for i, profile in enumerate(profiles):
            worker = self._worker_factory(
                profile.url, i, self._archive_dir, self._segment_seconds,
                session.master_start, self._events,
            )
            self._workers.append(worker)
            worker.start()
            logger.info("Started archive worker for cam%d (%s)", i, profile.display_name or profile.url)

        logger.info("Recording %d camera(s) to %s", len(profiles), self._archive_dir)
        return session

    def stop_recording(self) -> None:
        """Stop every worker and wait for all pending events to be relayed."""
        if not self._workers and self._dispatcher is None:
            return
        for worker in self._workers:
            worker.stop()
        for worker in self._workers:
            if not worker.wait(30.0):
                logger.warning("cam%d worker did not exit in time", worker.camera_index)
        self._workers.clear()

        if self._dispatcher is not None:
            self._events.put(_STOP)
            self._dispatcher.join()
            self._dispatcher = None
        self._session = None
        logger.info("All archive workers stopped.")

    def update_segment_duration(self, seconds: int) -> None:
        """Change the segment length; live workers switch at their next boundary."""
        if seconds <= 0:
            raise ValueError(f"Segment duration must be positive, got {seconds}")
        logger.info("Update segment duration to %ds", seconds)
        self._segment_seconds = int(seconds)
        for worker in self._workers:
            worker.update_segment_duration(seconds)

    def cleanup_archive(self) -> int:
        """Apply the retention policy.  Returns the number of segments removed.

        Closed segments older than ``retention_days`` are deleted, then the
        oldest closed segments until the archive fits ``max_archive_bytes``.
        A zero limit disables that rule; segments being written are kept.
        """
        if not self._archive_dir:
            logger.info("No archive directory set.")
            return 0
        if not os.path.isdir(self._archive_dir):
            logger.info("Archive directory does not exist: %s", self._archive_dir)
            return 0
        if self.retention_days <= 0 and self.max_archive_bytes <= 0:
            logger.debug("Cleanup skipped: no retention limits configured")
            return 0

        older_than = None
        if self.retention_days > 0:
            older_than = time.time_ns() - self.retention_days * 86400 * NS_PER_SEC
        max_bytes = self.max_archive_bytes if self.max_archive_bytes > 0 else None
        try:
            removed = self._ensure_db().purge_segments(older_than, max_bytes)
        except StoreOpenError as exc:
            logger.error("Cleanup failed: %s", exc)
            return 0
        logger.info("Cleanup complete, removed %d segment(s)", removed)
        return removed

    def shutdown(self) -> None:
        """Stop recording and the index writer.  Call before exit."""
        self.stop_recording()
        self._cleanup_timer.stop()
        if self._db is not None:
            self._db.stop()
            self._db = None
        logger.info("ArchiveManager shut down.")

    # ── internal ────────────────────────────────────────────────────

    def _ensure_db(self) -> DbWriter:
        if self._db is not None:
            return self._db
        db = self._writer_factory()
        db.start()
        try:
            db.open_at(config.db_path(self._archive_dir))
        except StoreOpenError:
            db.stop()
            logger.error("Could not open segment index in %s", self._archive_dir)
            raise
        self._db = db
        return db

    def _dispatch_loop(self, events: "queue.Queue", session: RecordingSession, db: DbWriter) -> None:
        while True:
            event = events.get()
            if event is _STOP:
                break
            try:
                self._relay(event, session, db)
            except Exception:
                logger.exception("Failed to relay %r", event)

    def _relay(self, event, session: RecordingSession, db: DbWriter) -> None:
        if isinstance(event, SegmentOpened):
            cam_url = session.cameras[event.camera_index].url
            db.add_segment_opened(session.session_id, cam_url, event.path, event.start_ns)
        elif isinstance(event, SegmentClosed):
            logger.debug("cam%d closed %s (%s)", event.camera_index,
                         os.path.basename(event.path), fmt_time(event.duration_ms))
            db.finalize_segment_by_path(event.path, event.end_ns, event.duration_ms)
        elif isinstance(event, SegmentFinalized):
            self.segment_written.emit()
        elif isinstance(event, RecordingError):
            logger.warning("ArchiveWorker cam%d error: %s", event.camera_index, event.message)
            self.worker_error.emit(event.camera_index, event.message)
        else:
            logger.warning("Unknown archive event %r", event)
