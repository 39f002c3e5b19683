"""Shared pytest fixtures for CamVigil tests."""

import gc
import os

import pytest

from PySide6.QtCore import QCoreApplication

from vigil.models import CameraProfile, FileSeg, NS_PER_SEC


# ── Qt ──────────────────────────────────────────────────────────────

@pytest.fixture(scope="session", autouse=True)
def qapp():
    """One QCoreApplication for the whole run (QTimer needs it).

    Torn down explicitly at session end so Qt is gone before the
    interpreter starts finalizing.
    """
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([])
    yield app
    app.processEvents()
    gc.collect()
    app.shutdown()


# ── Environment ─────────────────────────────────────────────────────

@pytest.fixture
def archive_root(tmp_path, monkeypatch) -> str:
    """Point the archive root at a temp dir; returns the archive dir."""
    root = tmp_path / "storage"
    monkeypatch.setenv("CAMVIGIL_ARCHIVE_ROOT", str(root))
    return str(root / "CamVigilArchives")


@pytest.fixture
def export_root(tmp_path) -> str:
    """A directory standing in for the external export volume."""
    path = tmp_path / "usb"
    path.mkdir()
    return str(path)


# ── Cameras ─────────────────────────────────────────────────────────

@pytest.fixture
def two_cameras() -> list[CameraProfile]:
    return [
        CameraProfile(url="rtsp://10.0.0.10/main", sub_url="rtsp://10.0.0.10/sub", display_name="Door"),
        CameraProfile(url="rtsp://10.0.0.11/main", sub_url="", display_name="Yard"),
    ]


# ── Playlists ───────────────────────────────────────────────────────

DAY_START = 1_700_000_000 * NS_PER_SEC
MIN = 60 * NS_PER_SEC


@pytest.fixture
def day_start() -> int:
    return DAY_START


@pytest.fixture
def five_minute_playlist(tmp_path) -> list[FileSeg]:
    """Three adjacent 5-minute segments starting at 08:00 on DAY_START's day.

    The files exist on disk (tiny placeholders) so passthrough parts have
    something to point at.
    """
    segs: list[FileSeg] = []
    base = DAY_START + 8 * 60 * MIN
    for i in range(3):
        path = tmp_path / "archive" / f"cam0_20231114_080000_{i:05d}.mkv"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x1a\x45\xdf\xa3" + b"\x00" * 60)
        segs.append(FileSeg(path=str(path), start_ns=base + i * 5 * MIN, end_ns=base + (i + 1) * 5 * MIN))
    return segs


def scratch_dirs(out_dir: str) -> list[str]:
    """Leftover export scratch directories in *out_dir*."""
    if not os.path.isdir(out_dir):
        return []
    return [n for n in os.listdir(out_dir) if n.startswith(".camvigil_export_")]
