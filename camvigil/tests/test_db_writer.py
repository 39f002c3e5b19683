"""Tests for vigil.db_writer — the single-writer segment index."""

import os
import sqlite3

import pytest

from vigil.db_writer import DbWriter
from vigil.errors import StoreOpenError

CAM = "rtsp://10.0.0.10/main"


@pytest.fixture
def writer(tmp_path):
    w = DbWriter()
    w.start()
    w.open_at(str(tmp_path / "idx" / "camvigil.sqlite"))
    w.ensure_camera(CAM, "rtsp://10.0.0.10/sub", "Door")
    w.begin_session("sess-1", str(tmp_path), 300)
    yield w
    w.stop()


def _touch(path, size: int) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x00" * size)
    return str(path)


# ── lifecycle ───────────────────────────────────────────────────────


class TestLifecycle:
    def test_open_creates_schema(self, tmp_path) -> None:
        db_file = tmp_path / "a" / "b" / "idx.sqlite"
        w = DbWriter()
        w.start()
        w.open_at(str(db_file))
        w.stop()
        assert w.path == str(db_file)
        conn = sqlite3.connect(str(db_file))
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        conn.close()
        assert {"cameras", "sessions", "segments"} <= tables

    def test_open_failure_raises_store_open_error(self, tmp_path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x")
        w = DbWriter()
        w.start()
        try:
            with pytest.raises(StoreOpenError):
                w.open_at(str(blocker / "idx.sqlite"))
        finally:
            w.stop()

    def test_call_without_thread(self) -> None:
        with pytest.raises(StoreOpenError):
            DbWriter().segments_between(CAM, 0, 1)

    def test_post_without_thread_is_dropped(self) -> None:
        DbWriter().ensure_camera(CAM)  # logs, no exception

    def test_stop_is_idempotent(self) -> None:
        w = DbWriter()
        w.stop()
        w.start()
        w.stop()
        w.stop()
        assert not w.is_running


# ── segments ────────────────────────────────────────────────────────


class TestSegments:
    def test_open_then_finalize(self, writer, tmp_path) -> None:
        path = _touch(tmp_path / "cam0" / "a.mkv", 1234)
        writer.add_segment_opened("sess-1", CAM, path, 1000)
        writer.finalize_segment_by_path(path, 5000, 4)
        segs = writer.segments_between(CAM, 0, 10_000)
        assert len(segs) == 1
        assert segs[0].path == path
        assert (segs[0].start_ns, segs[0].end_ns, segs[0].duration_ms) == (1000, 5000, 4)
        assert segs[0].is_closed

    def test_open_segment_visible_until_closed(self, writer, tmp_path) -> None:
        path = str(tmp_path / "cam0" / "open.mkv")
        writer.add_segment_opened("sess-1", CAM, path, 1000)
        segs = writer.segments_between(CAM, 0, 2000)
        assert len(segs) == 1
        assert not segs[0].is_closed

    def test_finalize_is_applied_once(self, writer, tmp_path) -> None:
        path = str(tmp_path / "x.mkv")
        writer.add_segment_opened("sess-1", CAM, path, 0)
        writer.finalize_segment_by_path(path, 100, 0)
        writer.finalize_segment_by_path(path, 999, 0)
        assert writer.segments_between(CAM, 0, 1000)[0].end_ns == 100

    def test_unknown_camera_does_not_stop_writer(self, writer, tmp_path) -> None:
        writer.add_segment_opened("sess-1", "rtsp://nobody", str(tmp_path / "n.mkv"), 0)
        writer.flush()
        assert writer.is_running
        assert writer.segments_between("rtsp://nobody", 0, 10) == []

    def test_range_query_overlap_and_order(self, writer, tmp_path) -> None:
        for i, (a, b) in enumerate([(200, 300), (0, 100), (100, 200)]):
            p = str(tmp_path / f"s{i}.mkv")
            writer.add_segment_opened("sess-1", CAM, p, a)
            writer.finalize_segment_by_path(p, b, (b - a) // 1_000_000)
        segs = writer.segments_between(CAM, 50, 150)
        assert [(s.start_ns, s.end_ns) for s in segs] == [(0, 100), (100, 200)]
        assert writer.segments_between(CAM, 300, 400) == []

    def test_ensure_camera_upserts(self, writer) -> None:
        writer.ensure_camera(CAM, "rtsp://10.0.0.10/sub2", "Front door")
        writer.flush()
        conn = sqlite3.connect(writer.path)
        rows = conn.execute("SELECT url, sub_url, display_name FROM cameras").fetchall()
        conn.close()
        assert rows == [(CAM, "rtsp://10.0.0.10/sub2", "Front door")]


# ── retention ───────────────────────────────────────────────────────


class TestPurge:
    def _record(self, writer, tmp_path, name: str, start: int, end, size: int = 100) -> str:
        path = _touch(tmp_path / "cam0" / name, size)
        writer.add_segment_opened("sess-1", CAM, path, start)
        if end is not None:
            writer.finalize_segment_by_path(path, end, 0)
        return path

    def test_purge_by_age(self, writer, tmp_path) -> None:
        old = self._record(writer, tmp_path, "old.mkv", 0, 100)
        new = self._record(writer, tmp_path, "new.mkv", 100, 200)
        assert writer.purge_segments(older_than_ns=150) == 1
        assert not os.path.exists(old)
        assert os.path.exists(new)
        assert [s.path for s in writer.segments_between(CAM, 0, 1000)] == [new]

    def test_purge_by_size_oldest_first(self, writer, tmp_path) -> None:
        paths = [self._record(writer, tmp_path, f"s{i}.mkv", i * 100, (i + 1) * 100) for i in range(4)]
        assert writer.purge_segments(max_total_bytes=250) == 2
        assert [os.path.exists(p) for p in paths] == [False, False, True, True]

    def test_open_segments_never_purged(self, writer, tmp_path) -> None:
        live = self._record(writer, tmp_path, "live.mkv", 0, None)
        assert writer.purge_segments(older_than_ns=10 ** 18, max_total_bytes=0) == 0
        assert os.path.exists(live)

    def test_missing_file_still_removes_row(self, writer, tmp_path) -> None:
        path = self._record(writer, tmp_path, "gone.mkv", 0, 100)
        os.remove(path)
        assert writer.purge_segments(older_than_ns=1000) == 1
        assert writer.segments_between(CAM, 0, 1000) == []
