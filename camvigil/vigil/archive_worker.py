"""Per-camera archive recorder.

Each :class:`ArchiveWorker` runs ffmpeg's segment muxer against one
camera stream, copying the stream into fixed-length Matroska files
without transcoding.  Segment boundaries are reported as typed events on
a queue shared with the session manager:

* ``SegmentOpened`` — ffmpeg logged "Opening '<file>' for writing".
* ``SegmentClosed`` + ``SegmentFinalized`` — ffmpeg appended the file to
  its live CSV segment list (written to stdout).
* ``RecordingError`` — ffmpeg failed to launch or exited on its own.

A worker never retries after an error; other cameras are unaffected.
"""

import logging
import os
import queue
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set

from .models import NS_PER_MS, NS_PER_SEC
from .utils import ffmpeg_exe as _ffmpeg_exe, subprocess_kwargs as _subprocess_kwargs

logger = logging.getLogger(__name__)

SEGMENT_EXT = ".mkv"
_STOP_GRACE_S = 10.0

_OPENING_RE = re.compile(r"Opening '(?P<path>.+?)' for writing")


# ── events ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SegmentOpened:
    camera_index: int
    path: str
    start_ns: int


@dataclass(frozen=True)
class SegmentClosed:
    camera_index: int
    path: str
    end_ns: int
    duration_ms: int


@dataclass(frozen=True)
class SegmentFinalized:
    camera_index: int
    path: str


@dataclass(frozen=True)
class RecordingError:
    camera_index: int
    message: str


# ── helpers ─────────────────────────────────────────────────────────

def segment_pattern(out_dir: str, camera_index: int, master_start: datetime) -> str:
    """ffmpeg output pattern: ``cam<i>_<master start>_<seq>.mkv``.

    Every camera in a session shares the master start stamp, so files
    with the same sequence number line up across cameras.
    """
    stamp = master_start.strftime("%Y%m%d_%H%M%S")
    return os.path.join(out_dir, f"cam{camera_index}_{stamp}_%05d{SEGMENT_EXT}")


def build_segment_args(
    ffmpeg: str,
    url: str,
    pattern: str,
    segment_seconds: int,
    start_number: int = 0,
) -> List[str]:
    """Argument list for one segment-muxer run (stream copy, CSV list on stdout)."""
    cmd = [ffmpeg, "-hide_banner", "-nostats", "-loglevel", "info"]
    if url.startswith("rtsp://") or url.startswith("rtsps://"):
        cmd += ["-rtsp_transport", "tcp"]
    cmd += [
        "-i", url,
        "-map", "0",
        "-c", "copy",
        "-f", "segment",
        "-segment_time", str(segment_seconds),
        "-segment_format", "matroska",
        "-reset_timestamps", "1",
        "-segment_start_number", str(start_number),
        "-segment_list", "pipe:1",
        "-segment_list_type", "csv",
        "-segment_list_flags", "live",
        pattern,
    ]
    return cmd


def parse_list_entry(line: str) -> Optional[tuple]:
    """Parse one CSV segment-list line into ``(filename, start_s, end_s)``."""
    line = line.strip()
    if not line:
        return None
    name, sep, rest = line.rpartition(",")
    name, sep2, start = name.rpartition(",")
    if not sep or not sep2:
        return None
    try:
        return name.strip('"'), float(start), float(rest)
    except ValueError:
        return None


class ArchiveWorker:
    """Records one camera into consecutive segment files on its own thread."""

    def __init__(
        self,
        url: str,
        camera_index: int,
        archive_dir: str,
        segment_seconds: int,
        master_start: datetime,
        events: "queue.Queue",
        ffmpeg_path: str = "",
    ) -> None:
        self.url = url
        self.camera_index = camera_index
        self.out_dir = os.path.join(archive_dir, f"cam{camera_index}")
        self._segment_seconds = int(segment_seconds)
        self._pending_seconds: Optional[int] = None
        self._master_start = master_start
        self._events = events
        self._ffmpeg_path = ffmpeg_path
        self._next_number = 0
        self._opened: Dict[str, int] = {}
        self._closed: Set[str] = set()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._restart = False
        self._proc: Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None
        self._stderr_tail: List[str] = []

    # ── public API ──────────────────────────────────────────────────

    @property
    def segment_seconds(self) -> int:
        return self._segment_seconds

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"archive-cam{self.camera_index}", daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Ask ffmpeg to finish the current segment and exit.  Non-blocking."""
        self._stop_event.set()
        self._request_quit()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the worker thread.  Returns True once it has exited."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def update_segment_duration(self, seconds: int) -> None:
        """Use *seconds* for segments after the one currently open."""
        with self._lock:
            self._pending_seconds = int(seconds)

    # ── internal ────────────────────────────────────────────────────

    def _emit(self, event) -> None:
        self._events.put(event)

    def _request_quit(self) -> None:
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        try:
            if proc.stdin and not proc.stdin.closed:
                proc.stdin.write(b"q")
                proc.stdin.flush()
        except (BrokenPipeError, OSError):
            pass

    def _launch(self) -> Optional[subprocess.Popen]:
        os.makedirs(self.out_dir, exist_ok=True)
        ffmpeg = self._ffmpeg_path or _ffmpeg_exe()
        cmd = build_segment_args(
            ffmpeg, self.url,
            segment_pattern(self.out_dir, self.camera_index, self._master_start),
            self._segment_seconds, self._next_number,
        )
        logger.info("cam%d: launching segmenter (%ds): %s",
                    self.camera_index, self._segment_seconds, " ".join(cmd))
        try:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **_subprocess_kwargs(),
            )
        except OSError as exc:
            self._emit(RecordingError(self.camera_index, f"Cannot start ffmpeg: {exc}"))
            return None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._restart = False
            self._stderr_tail = []
            # per-run bookkeeping; the previous run's readers are joined
            with self._lock:
                self._opened.clear()
                self._closed.clear()
            proc = self._launch()
            if proc is None:
                return
            self._proc = proc
            if self._stop_event.is_set():
                self._request_quit()
            err_reader = threading.Thread(target=self._read_stderr, args=(proc,), daemon=True)
            err_reader.start()

            for raw in iter(proc.stdout.readline, b""):
                self._on_list_line(raw.decode(errors="replace"))

            try:
                proc.wait(timeout=_STOP_GRACE_S)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            err_reader.join(timeout=2.0)
            self._proc = None

            if self._stop_event.is_set():
                break
            if self._restart:
                logger.info("cam%d: restarting segmenter at %ds",
                            self.camera_index, self._segment_seconds)
                continue
            tail = " | ".join(self._stderr_tail[-5:])
            self._emit(RecordingError(
                self.camera_index,
                f"ffmpeg exited (rc={proc.returncode}): {tail or 'no output'}",
            ))
            return
        logger.info("cam%d: archive worker stopped", self.camera_index)

    def _read_stderr(self, proc: subprocess.Popen) -> None:
        for raw in iter(proc.stderr.readline, b""):
            line = raw.decode(errors="replace").rstrip()
            if not line:
                continue
            self._stderr_tail = (self._stderr_tail + [line])[-20:]
            m = _OPENING_RE.search(line)
            if m and m.group("path").endswith(SEGMENT_EXT):
                path = os.path.abspath(m.group("path"))
                start_ns = time.time_ns()
                with self._lock:
                    if path in self._closed:
                        continue
                    self._opened[path] = start_ns
                    self._emit(SegmentOpened(self.camera_index, path, start_ns))

    def _on_list_line(self, line: str) -> None:
        entry = parse_list_entry(line)
        if entry is None:
            return
        name, start_s, end_s = entry
        path = os.path.abspath(os.path.join(self.out_dir, os.path.basename(name)))
        duration_ns = max(0, int(round((end_s - start_s) * NS_PER_SEC)))
        # Opened must reach the queue before Closed for the same path
        with self._lock:
            start_ns = self._opened.pop(path, None)
            self._closed.add(path)
            if start_ns is None:
                # list entry arrived before (or without) the "Opening" log line
                start_ns = time.time_ns() - duration_ns
                self._emit(SegmentOpened(self.camera_index, path, start_ns))
            self._emit(SegmentClosed(self.camera_index, path, start_ns + duration_ns,
                                     duration_ns // NS_PER_MS))
            self._emit(SegmentFinalized(self.camera_index, path))
        self._next_number += 1

        with self._lock:
            pending, self._pending_seconds = self._pending_seconds, None
        if pending is not None and pending != self._segment_seconds:
            self._segment_seconds = pending
            self._restart = True
            self._request_quit()
