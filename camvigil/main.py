"""CamVigil — continuous multi-camera archiving and range export.

Usage::

    python main.py record cameras.json [--segment-seconds 300]
    python main.py export rtsp://cam0/stream 2025-01-01 08:00:00 08:15:00 [--precise]
"""

import argparse
import logging
import signal
import sys
from datetime import date

from PySide6.QtCore import QCoreApplication, QTimer

from vigil import config
from vigil.archive_manager import ArchiveManager
from vigil.db_writer import DbWriter
from vigil.errors import ArchiveError, ExportError
from vigil.playback_exporter import PlaybackExporter
from vigil.segment_index import playlist_for_day
from vigil.storage_service import StorageService
from vigil.utils import fmt_hms, parse_hms
from vigil.version import __version__

logging.basicConfig(
    level=logging.INFO,
    format="%(name)s | %(levelname)s | %(message)s",
)

_logger = logging.getLogger(__name__)


def _global_exception_handler(exc_type, exc_value, exc_tb):
    """Log unhandled exceptions instead of crashing silently."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    _logger.critical("Unhandled exception", exc_info=(exc_type, exc_value, exc_tb))


def _install_sigint(app: QCoreApplication) -> QTimer:
    """Let Ctrl+C quit the Qt event loop."""
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    # Python only runs signal handlers between bytecodes; wake up regularly
    timer = QTimer()
    timer.timeout.connect(lambda: None)
    timer.start(200)
    return timer


def _cmd_record(app: QCoreApplication, args: argparse.Namespace) -> int:
    settings = config.AppSettings()
    if args.segment_seconds:
        settings.segment_duration = args.segment_seconds
    profiles = config.load_camera_profiles(args.cameras)

    manager = ArchiveManager(
        segment_seconds=settings.segment_duration,
        retention_days=settings.retention_days,
        max_archive_bytes=int(settings.max_archive_gb * 1024 ** 3),
    )
    try:
        manager.start_recording(profiles)
    except ArchiveError as exc:
        _logger.error("Cannot start recording: %s", exc)
        manager.shutdown()
        return 1

    keepalive = _install_sigint(app)
    _logger.info("Recording %d camera(s). Press Ctrl+C to stop.", len(profiles))
    try:
        app.exec()
    finally:
        keepalive.stop()
        manager.shutdown()
        settings.sync()
    return 0


def _cmd_export(app: QCoreApplication, args: argparse.Namespace) -> int:
    settings = config.AppSettings()
    opts = settings.export_options()
    if args.precise:
        opts.precise = True
    if args.out_dir:
        opts.out_dir = args.out_dir
    if args.name:
        opts.base_name = args.name

    day = date.fromisoformat(args.day)
    sel_start = parse_hms(args.start)
    sel_end = parse_hms(args.end)

    db = DbWriter()
    db.start()
    try:
        db.open_at(config.db_path(config.archive_dir()))
        playlist, day_start = playlist_for_day(db, args.camera, day)
    except ArchiveError as exc:
        _logger.error("%s", exc)
        return 1
    finally:
        db.stop()
    _logger.info("%d segment(s) on %s, exporting %s–%s (%s)",
                 len(playlist), day, args.start, args.end, fmt_hms(sel_end - sel_start))

    exporter = PlaybackExporter(StorageService(args.export_root or None))
    exporter.set_playlist(playlist, day_start)
    exporter.set_selection(sel_start, sel_end)
    exporter.set_options(opts)

    result = {"rc": 1}

    def _done(path: str) -> None:
        print(path)
        result["rc"] = 0
        app.quit()

    def _failed(msg: str) -> None:
        _logger.error("Export failed: %s", msg)
        app.quit()

    def _canceled() -> None:
        _logger.warning("Export canceled")
        result["rc"] = 130
        app.quit()

    exporter.finished.connect(_done)
    exporter.error.connect(_failed)
    exporter.canceled.connect(_canceled)
    exporter.progress.connect(lambda pct: _logger.info("progress %.0f%%", pct))

    signal.signal(signal.SIGINT, lambda *_: exporter.cancel())
    keepalive = QTimer()
    keepalive.timeout.connect(lambda: None)
    keepalive.start(200)

    if not exporter.start():
        return 1
    app.exec()
    exporter.wait()
    return result["rc"]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="camvigil", description=__doc__.splitlines()[0])
    parser.add_argument("--version", action="version", version=__version__)
    sub = parser.add_subparsers(dest="command", required=True)

    rec = sub.add_parser("record", help="archive cameras until interrupted")
    rec.add_argument("cameras", help="JSON camera list")
    rec.add_argument("--segment-seconds", type=int, default=0)

    exp = sub.add_parser("export", help="export a time range of one camera")
    exp.add_argument("camera", help="camera stream url as recorded")
    exp.add_argument("day", help="YYYY-MM-DD")
    exp.add_argument("start", help="HH:MM:SS")
    exp.add_argument("end", help="HH:MM:SS")
    exp.add_argument("--precise", action="store_true", help="re-encode for exact cut points")
    exp.add_argument("--out-dir", default="")
    exp.add_argument("--name", default="", help="output base name")
    exp.add_argument("--export-root", default="", help="use this directory as the export volume")
    return parser


def main() -> None:
    """Application entry point."""
    sys.excepthook = _global_exception_handler
    args = _build_parser().parse_args()

    app = QCoreApplication(sys.argv[:1])
    app.setApplicationName("CamVigil")
    app.setApplicationVersion(__version__)

    try:
        if args.command == "record":
            rc = _cmd_record(app, args)
        else:
            rc = _cmd_export(app, args)
    except (ValueError, OSError, ExportError) as exc:
        _logger.error("%s", exc)
        rc = 2
    sys.exit(rc)


if __name__ == "__main__":
    main()
