"""Segment index database, owned by a single writer thread.

Every statement runs on the writer's own thread; callers either *post*
a command (fire-and-forget, errors are logged) or *call* one and block
for its result.  Commands are executed in the order they were queued,
so a ``finalize_segment_by_path`` posted after ``add_segment_opened``
for the same path always sees the row.

Schema::

    cameras  (id, url UNIQUE, sub_url, display_name)
    sessions (id TEXT PK, archive_root, segment_duration_s, started_ns)
    segments (id, session_id, camera_id, path UNIQUE, start_ns,
              end_ns NULL, duration_ms NULL, size_bytes NULL)
"""

import logging
import os
import queue
import sqlite3
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, List, Optional, Tuple

from .errors import StoreOpenError
from .models import Segment

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS cameras (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL UNIQUE,
        sub_url TEXT NOT NULL DEFAULT '',
        display_name TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        archive_root TEXT NOT NULL,
        segment_duration_s INTEGER NOT NULL,
        started_ns INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS segments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions(id),
        camera_id INTEGER NOT NULL REFERENCES cameras(id),
        path TEXT NOT NULL UNIQUE,
        start_ns INTEGER NOT NULL,
        end_ns INTEGER,
        duration_ms INTEGER,
        size_bytes INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_segments_cam_start ON segments(camera_id, start_ns)",
)

_STOP = object()


class DbWriter:
    """Single-threaded owner of the sqlite index."""

    def __init__(self) -> None:
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._conn: Optional[sqlite3.Connection] = None
        self._path: str = ""

    # ── lifecycle ───────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def path(self) -> str:
        return self._path

    def start(self) -> None:
        if self.is_running:
            return
        self._thread = threading.Thread(target=self._loop, name="db-writer", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        """Drain queued commands, close the database and join the thread."""
        if self._thread is None:
            return
        self._inbox.put(_STOP)
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("DB writer did not stop within %.0fs", timeout)
        self._thread = None

    # ── commands ────────────────────────────────────────────────────

    def open_at(self, path: str, timeout: float = 30.0) -> None:
        """Open (or create) the database.  Blocks until done.

        Raises :class:`StoreOpenError` if the file cannot be opened or the
        schema cannot be created.
        """
        try:
            self._call(self._open, path, timeout=timeout)
        except StoreOpenError:
            raise
        except Exception as exc:
            raise StoreOpenError(f"Cannot open index at {path}: {exc}") from exc

    def ensure_camera(self, url: str, sub_url: str = "", display_name: str = "") -> None:
        self._post(self._ensure_camera, url, sub_url, display_name)

    def begin_session(self, session_id: str, archive_root: str, duration_s: int) -> None:
        self._post(self._begin_session, session_id, archive_root, duration_s)

    def add_segment_opened(self, session_id: str, camera_url: str, path: str, start_ns: int) -> None:
        self._post(self._add_segment_opened, session_id, camera_url, path, start_ns)

    def finalize_segment_by_path(self, path: str, end_ns: int, duration_ms: int) -> None:
        self._post(self._finalize_segment, path, end_ns, duration_ms)

    # ── queries (blocking) ──────────────────────────────────────────

    def segments_between(self, camera_url: str, start_ns: int, end_ns: int) -> List[Segment]:
        """Segments for *camera_url* overlapping ``[start_ns, end_ns)``, by start."""
        return self._call(self._segments_between, camera_url, start_ns, end_ns)

    def purge_segments(
        self,
        older_than_ns: Optional[int] = None,
        max_total_bytes: Optional[int] = None,
    ) -> int:
        """Delete closed segments (file and row) by age and/or total size.

        Oldest segments go first.  Segments still being written are
        never touched.  Returns the number removed.
        """
        return self._call(self._purge, older_than_ns, max_total_bytes)

    def flush(self, timeout: float = 30.0) -> None:
        """Block until everything queued so far has been executed."""
        self._call(lambda: None, timeout=timeout)

    # ── plumbing ────────────────────────────────────────────────────

    def _post(self, fn: Callable, *args: Any) -> None:
        if not self.is_running:
            logger.warning("DB writer not running, dropping %s", fn.__name__)
            return
        self._inbox.put((fn, args, None))

    def _call(self, fn: Callable, *args: Any, timeout: float = 30.0) -> Any:
        if not self.is_running:
            raise StoreOpenError("DB writer is not running")
        fut: Future = Future()
        self._inbox.put((fn, args, fut))
        return fut.result(timeout=timeout)

    def _loop(self) -> None:
        while True:
            item = self._inbox.get()
            if item is _STOP:
                break
            fn, args, fut = item
            try:
                result = fn(*args)
            except Exception as exc:
                if fut is not None:
                    fut.set_exception(exc)
                else:
                    logger.error("DB command %s failed: %s", fn.__name__, exc)
            else:
                if fut is not None:
                    fut.set_result(result)
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        logger.info("DB writer stopped (%s)", self._path or "never opened")

    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreOpenError("Database is not open")
        return self._conn

    # ── implementations (writer thread only) ────────────────────────

    def _open(self, path: str) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        conn = sqlite3.connect(path)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            for stmt in _SCHEMA:
                conn.execute(stmt)
            conn.commit()
        except sqlite3.Error:
            conn.close()
            raise
        self._conn = conn
        self._path = path
        logger.info("Opened segment index %s", path)

    def _ensure_camera(self, url: str, sub_url: str, display_name: str) -> None:
        db = self._db()
        db.execute(
            "INSERT INTO cameras (url, sub_url, display_name) VALUES (?, ?, ?) "
            "ON CONFLICT(url) DO UPDATE SET sub_url = excluded.sub_url, "
            "display_name = excluded.display_name",
            (url, sub_url, display_name),
        )
        db.commit()

    def _camera_id(self, url: str) -> int:
        row = self._db().execute("SELECT id FROM cameras WHERE url = ?", (url,)).fetchone()
        if row is None:
            raise KeyError(f"Unknown camera {url}")
        return int(row[0])

    def _begin_session(self, session_id: str, archive_root: str, duration_s: int) -> None:
        db = self._db()
        db.execute(
            "INSERT INTO sessions (id, archive_root, segment_duration_s, started_ns) "
            "VALUES (?, ?, ?, ?)",
            (session_id, archive_root, int(duration_s), time.time_ns()),
        )
        db.commit()

    def _add_segment_opened(self, session_id: str, camera_url: str, path: str, start_ns: int) -> None:
        db = self._db()
        db.execute(
            "INSERT INTO segments (session_id, camera_id, path, start_ns) VALUES (?, ?, ?, ?)",
            (session_id, self._camera_id(camera_url), path, int(start_ns)),
        )
        db.commit()

    def _finalize_segment(self, path: str, end_ns: int, duration_ms: int) -> None:
        try:
            size = os.path.getsize(path)
        except OSError:
            size = None
        db = self._db()
        cur = db.execute(
            "UPDATE segments SET end_ns = ?, duration_ms = ?, size_bytes = ? "
            "WHERE path = ? AND end_ns IS NULL",
            (int(end_ns), int(duration_ms), size, path),
        )
        db.commit()
        if cur.rowcount == 0:
            logger.warning("Finalize for unknown or closed segment %s", path)

    def _segments_between(self, camera_url: str, start_ns: int, end_ns: int) -> List[Segment]:
        rows = self._db().execute(
            "SELECT s.camera_id, s.path, s.start_ns, s.end_ns, s.duration_ms "
            "FROM segments s JOIN cameras c ON c.id = s.camera_id "
            "WHERE c.url = ? AND s.start_ns < ? AND (s.end_ns IS NULL OR s.end_ns > ?) "
            "ORDER BY s.start_ns ASC",
            (camera_url, int(end_ns), int(start_ns)),
        ).fetchall()
        return [Segment(*row) for row in rows]

    def _purge(self, older_than_ns: Optional[int], max_total_bytes: Optional[int]) -> int:
        db = self._db()
        victims: List[Tuple[int, str]] = []
        if older_than_ns is not None:
            victims += db.execute(
                "SELECT id, path FROM segments WHERE end_ns IS NOT NULL AND end_ns < ? "
                "ORDER BY start_ns ASC",
                (int(older_than_ns),),
            ).fetchall()
        if max_total_bytes is not None:
            doomed = {vid for vid, _ in victims}
            rows = db.execute(
                "SELECT id, path, COALESCE(size_bytes, 0) FROM segments "
                "WHERE end_ns IS NOT NULL ORDER BY start_ns ASC",
            ).fetchall()
            total = sum(int(size) for vid, _, size in rows if vid not in doomed)
            for vid, path, size in rows:
                if total <= max_total_bytes:
                    break
                if vid in doomed:
                    continue
                victims.append((vid, path))
                total -= int(size)
        for vid, path in victims:
            db.execute("DELETE FROM segments WHERE id = ?", (vid,))
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not delete %s: %s", path, exc)
        db.commit()
        return len(victims)
