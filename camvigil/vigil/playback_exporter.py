"""Export a time range of archived segments as one MP4.

The selection is given in nanoseconds from local midnight of the day
being browsed, plus the playlist of segment files for that day.  The
export runs in a background thread:

1. check the selection and the export volume;
2. plan which files (and which slices of them) the selection touches,
   then check free space against a size estimate;
3. cut only the partial slices with ffmpeg (whole files pass through);
4. concatenate everything with ffmpeg's concat demuxer into a scratch
   directory on the destination volume;
5. ``os.replace`` the result into a unique final name.

The scratch directory is removed on every exit path, and a cancel kills
the running ffmpeg within ``POLL_INTERVAL_S``.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from datetime import date
from typing import List, Optional, Sequence

from PySide6.QtCore import QObject, Signal

from .config import EXPORT_SUBDIR
from .errors import (
    EncoderError,
    ExportCanceled,
    ExportError,
    ExportResourceError,
    ExportValidationError,
    FinalizeError,
)
from .models import ClipPart, ExportOptions, FileSeg, NS_PER_SEC
from .storage_service import StorageService
from .utils import (
    build_encoder_args,
    ffmpeg_exe as _ffmpeg_exe,
    secs,
    subprocess_kwargs as _subprocess_kwargs,
)

logger = logging.getLogger(__name__)

# Size estimate (bits per second); conservative, not measured.
PRECISE_VIDEO_BPS = 6.0e6
COPY_VIDEO_BPS = 4.0e6
AUDIO_BPS = 128.0e3
SIZE_FLOOR_BYTES = 200 * 1024 * 1024

PRECISE_PREROLL_NS = 3 * NS_PER_SEC  # coarse seek lands this far before the cut
POLL_INTERVAL_S = 0.05

_STDERR_TAIL = 800


# ── planning ────────────────────────────────────────────────────────

def validate_selection(playlist: Sequence[FileSeg], sel_start_ns: int, sel_end_ns: int) -> None:
    """Raise :class:`ExportValidationError` for an empty range or playlist."""
    if sel_end_ns <= sel_start_ns:
        raise ExportValidationError("Invalid selection")
    if not playlist:
        raise ExportValidationError("No playlist")


def compute_parts(
    playlist: Sequence[FileSeg],
    day_start_ns: int,
    sel_start_ns: int,
    sel_end_ns: int,
) -> List[ClipPart]:
    """Map a day-relative selection onto the files that cover it.

    *playlist* must be ascending by start and non-overlapping; scanning
    stops at the first file that reaches the end of the selection.
    Offsets in the returned parts are relative to each file's own start.
    ``whole_file`` is set when the part is the entire file.

    Raises :class:`ExportValidationError` for an empty or inverted
    selection, an empty playlist, or a selection that touches no file.
    """
    validate_selection(playlist, sel_start_ns, sel_end_ns)

    sel_a = day_start_ns + sel_start_ns
    sel_b = day_start_ns + sel_end_ns
    parts: List[ClipPart] = []
    for fs in playlist:
        a = max(fs.start_ns, sel_a)
        b = min(fs.end_ns, sel_b)
        if b > a:
            parts.append(ClipPart(
                path=fs.path,
                in_start_ns=a - fs.start_ns,
                in_end_ns=b - fs.start_ns,
                whole_file=(a == fs.start_ns and b == fs.end_ns),
            ))
        if fs.end_ns >= sel_b:
            break
    if not parts:
        raise ExportValidationError("Selection overlaps no files")
    return parts


def estimate_bytes(parts: Sequence[ClipPart], precise: bool) -> int:
    """Rough output size for *parts*, never below ``SIZE_FLOOR_BYTES``."""
    dur_s = sum(p.duration_ns for p in parts) / NS_PER_SEC
    v_bps = PRECISE_VIDEO_BPS if precise else COPY_VIDEO_BPS
    return max(SIZE_FLOOR_BYTES, int((v_bps + AUDIO_BPS) * dur_s / 8.0))


def default_base_name(today: Optional[date] = None) -> str:
    return f"CamVigil_{(today or date.today()).isoformat()}"


def unique_out_path(out_dir: str, base_name: str = "", today: Optional[date] = None) -> str:
    """First free ``<base>.mp4``, ``<base>(2).mp4``, ``<base>(3).mp4``, ... in *out_dir*."""
    base = base_name or default_base_name(today)
    out = os.path.join(out_dir, f"{base}.mp4")
    i = 1
    while os.path.exists(out):
        i += 1
        out = os.path.join(out_dir, f"{base}({i}).mp4")
    return out


# ── ffmpeg argument lists ───────────────────────────────────────────

def build_cut_args(ffmpeg: str, part: ClipPart, out_path: str, opts: ExportOptions) -> List[str]:
    """Arguments to cut *part* into *out_path*.

    Copy mode seeks straight to the start (keyframe accuracy) and copies
    all streams.  Precise mode seeks to a keyframe-safe point up to 3 s
    earlier, trims exactly from there and re-encodes video.
    """
    args = [ffmpeg, "-hide_banner", "-y"]
    if opts.precise:
        coarse = max(0, part.in_start_ns - PRECISE_PREROLL_NS)
        args += [
            "-ss", f"{coarse / NS_PER_SEC:.3f}",
            "-i", part.path,
            "-ss", secs(part.in_start_ns - coarse),
            "-to", secs(part.in_end_ns - coarse),
        ]
        args += build_encoder_args(opts.video_codec, opts.preset, opts.crf)
        args += [
            "-pix_fmt", "yuv420p",
            "-fflags", "+genpts",
            "-avoid_negative_ts", "make_zero",
        ]
        if opts.copy_audio:
            args += ["-c:a", "copy"]
        else:
            args += ["-c:a", "aac", "-b:a", "128k"]
    else:
        args += [
            "-ss", secs(part.in_start_ns),
            "-to", secs(part.in_end_ns),
            "-i", part.path,
            "-c", "copy",
            "-avoid_negative_ts", "make_zero",
        ]
    args.append(out_path)
    return args


def build_concat_args(
    ffmpeg: str,
    list_path: str,
    out_path: str,
    opts: ExportOptions,
    reencode: bool,
) -> List[str]:
    """Arguments to join the files listed in *list_path* into *out_path*."""
    args = [
        ffmpeg, "-hide_banner", "-y",
        "-f", "concat", "-safe", "0",
        "-i", list_path,
    ]
    if reencode:
        args += build_encoder_args(opts.video_codec, opts.preset, opts.crf)
        args += ["-pix_fmt", "yuv420p"]
        if opts.copy_audio:
            args += ["-c:a", "copy"]
        else:
            args += ["-c:a", "aac", "-b:a", "128k"]
    else:
        args += ["-c", "copy"]
    args += ["-movflags", "+faststart", out_path]
    return args


def write_concat_list(paths: Sequence[str], list_path: str) -> None:
    """Write an ffmpeg concat manifest; single quotes in paths are escaped."""
    with open(list_path, "w", encoding="utf-8") as f:
        for p in paths:
            escaped = os.path.abspath(p).replace("'", "'\\''")
            f.write(f"file '{escaped}'\n")


# ── exporter ────────────────────────────────────────────────────────

class PlaybackExporter(QObject):
    """Runs one export at a time on a background thread."""

    started = Signal()
    progress = Signal(float)  # 0–100
    log = Signal(str)
    finished = Signal(str)    # output path
    error = Signal(str)
    canceled = Signal()

    def __init__(self, storage: StorageService, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._storage = storage
        self._playlist: List[FileSeg] = []
        self._day_start_ns = 0
        self._sel_start_ns = 0
        self._sel_end_ns = 0
        self._opts = ExportOptions()
        self._abort = threading.Event()
        self._busy = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._last_progress = 0.0

    # ── configuration ───────────────────────────────────────────────

    def set_playlist(self, playlist: Sequence[FileSeg], day_start_ns: int) -> None:
        self._playlist = list(playlist)
        self._day_start_ns = int(day_start_ns)

    def set_selection(self, sel_start_ns: int, sel_end_ns: int) -> None:
        """Selection bounds in ns from midnight of the playlist's day."""
        self._sel_start_ns = int(sel_start_ns)
        self._sel_end_ns = int(sel_end_ns)

    def set_options(self, opts: ExportOptions) -> None:
        self._opts = opts

    @property
    def is_running(self) -> bool:
        return self._busy.locked()

    # ── public API ──────────────────────────────────────────────────

    def start(self) -> bool:
        """Run the export in a background thread.

        Returns False (and emits ``error``) if an export is already
        running on this exporter.
        """
        if not self._busy.acquire(blocking=False):
            self.error.emit("Export already running")
            return False
        self._abort.clear()
        self.started.emit()
        self._thread = threading.Thread(target=self._thread_main, name="export", daemon=True)
        self._thread.start()
        return True

    def cancel(self) -> None:
        """Request cancellation; safe from any thread."""
        self._abort.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the export thread.  Returns True when it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def run(self) -> str:
        """Run the export synchronously and return the output path.

        Raises :class:`ExportCanceled` on cancel and another
        :class:`ExportError` subclass on failure.
        """
        if not self._busy.acquire(blocking=False):
            raise ExportError("Export already running")
        try:
            self._abort.clear()
            return self._run()
        finally:
            self._busy.release()

    # ── internal ────────────────────────────────────────────────────

    def _thread_main(self) -> None:
        try:
            out_path = self._run()
        except ExportCanceled:
            self._log("[Export] canceled")
            self.canceled.emit()
        except EncoderError as exc:
            msg = f"{exc}: {exc.detail}" if exc.detail else str(exc)
            logger.error("Export failed: %s", msg)
            self.error.emit(msg)
        except ExportError as exc:
            logger.error("Export failed: %s", exc)
            self.error.emit(str(exc))
        except Exception as exc:
            logger.exception("Unexpected export failure")
            self.error.emit(str(exc))
        else:
            self.finished.emit(out_path)
        finally:
            self._busy.release()

    def _log(self, line: str) -> None:
        logger.info(line)
        self.log.emit(line)

    def _progress(self, pct: float) -> None:
        pct = min(100.0, max(self._last_progress, pct))
        self._last_progress = pct
        self.progress.emit(pct)

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise ExportCanceled("Canceled")

    def _run(self) -> str:
        opts = self._opts
        self._last_progress = 0.0
        self._log("[Export] start")
        validate_selection(self._playlist, self._sel_start_ns, self._sel_end_ns)

        if not self._storage.has_external():
            raise ExportResourceError("No external media detected")
        out_dir = opts.out_dir or os.path.join(self._storage.external_root(), EXPORT_SUBDIR)
        try:
            os.makedirs(out_dir, exist_ok=True)
        except OSError as exc:
            raise ExportResourceError(f"Cannot create output directory {out_dir}: {exc}") from exc

        parts = compute_parts(self._playlist, self._day_start_ns,
                              self._sel_start_ns, self._sel_end_ns)

        estimate = estimate_bytes(parts, opts.precise)
        free = self._storage.free_bytes(out_dir)
        need = max(opts.min_free_bytes, estimate)
        self._log(f"[Export] {len(parts)} part(s), estimate={estimate // (1024 * 1024)} MB, "
                  f"free={free // (1024 * 1024)} MB")
        if free < need:
            raise ExportResourceError(
                f"Not enough free space. Need ≥ {need // (1024 * 1024)} MB")

        self._check_abort()
        ffmpeg = opts.encoder_path or _ffmpeg_exe()
        try:
            scratch = tempfile.mkdtemp(prefix=".camvigil_export_", dir=out_dir)
        except OSError as exc:
            raise ExportResourceError(f"Temp directory creation failed: {exc}") from exc
        self._log(f"[Export] tmp: {scratch}")

        try:
            inputs = self._build_inputs(ffmpeg, parts, scratch, opts)

            list_path = os.path.join(scratch, "concat_inputs.txt")
            write_concat_list(inputs, list_path)

            reencode = opts.precise and any(not p.whole_file for p in parts)
            tmp_out = os.path.join(scratch, "export.mp4")
            self._check_abort()
            self._log("[Export] concat")
            self._run_ffmpeg(
                build_concat_args(ffmpeg, list_path, tmp_out, opts, reencode),
                scratch, "Concat failed",
            )
            self._progress(99.0)
            self._check_abort()

            final_out = unique_out_path(out_dir, opts.base_name)
            try:
                if os.path.exists(final_out):
                    os.remove(final_out)
                os.replace(tmp_out, final_out)
            except OSError as exc:
                raise FinalizeError(f"Failed to move export to {final_out}: {exc}") from exc
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
            if os.path.exists(scratch):
                logger.warning("Could not remove scratch directory %s", scratch)

        self._progress(100.0)
        self._log(f"[Export] OK -> {final_out}")
        return final_out

    def _build_inputs(
        self,
        ffmpeg: str,
        parts: Sequence[ClipPart],
        scratch: str,
        opts: ExportOptions,
    ) -> List[str]:
        """Cut the partial parts; whole parts pass through untouched."""
        n = len(parts)
        inputs: List[str] = []
        for i, part in enumerate(parts):
            self._check_abort()
            if part.whole_file:
                inputs.append(os.path.abspath(part.path))
                self._progress((i + 1) * 100.0 / (n + 2))
                continue
            cut = os.path.join(scratch, f"part_{i:04d}.mkv")
            self._log(f"[Export] cut {i + 1}/{n}")
            self._run_ffmpeg(build_cut_args(ffmpeg, part, cut, opts), scratch,
                             f"Cut {i + 1}/{n} failed")
            inputs.append(cut)
            self._progress((i + 1) * 100.0 / (n + 2))
        return inputs

    def _run_ffmpeg(self, args: List[str], scratch: str, what: str) -> None:
        """Run one ffmpeg invocation, polling for cancel while it runs."""
        self._check_abort()
        logger.debug("ffmpeg: %s", " ".join(args))
        err_path = os.path.join(scratch, "ffmpeg_stderr.log")
        with open(err_path, "wb") as err:
            try:
                proc = subprocess.Popen(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=err,
                    **_subprocess_kwargs(),
                )
            except OSError as exc:
                raise EncoderError(f"{what}: cannot start ffmpeg", str(exc)) from exc
            while True:
                try:
                    proc.wait(timeout=POLL_INTERVAL_S)
                    break
                except subprocess.TimeoutExpired:
                    if self._abort.is_set():
                        proc.kill()
                        proc.wait()
                        raise ExportCanceled("Canceled")
        if proc.returncode != 0:
            with open(err_path, "rb") as f:
                detail = f.read().decode(errors="replace").strip()[-_STDERR_TAIL:]
            if detail:
                self.log.emit(detail)
            if proc.returncode < 0:
                raise EncoderError(f"{what} (killed by signal {-proc.returncode})", detail)
            raise EncoderError(f"{what} (rc={proc.returncode})", detail)
