"""Tests for vigil.segment_index — playlist construction."""

from datetime import date, datetime

from vigil.models import FileSeg, Segment, NS_PER_SEC
from vigil.segment_index import build_playlist, day_bounds_ns, playlist_for_day


def _s(path: str, start: int, end) -> Segment:
    return Segment(camera_id=1, path=path, start_ns=start, end_ns=end,
                   duration_ms=None if end is None else (end - start) // 1_000_000)


class TestDayBounds:
    def test_local_midnight(self) -> None:
        start, end = day_bounds_ns(date(2024, 5, 1))
        assert start == int(datetime(2024, 5, 1).timestamp()) * NS_PER_SEC
        assert end == int(datetime(2024, 5, 2).timestamp()) * NS_PER_SEC


class TestBuildPlaylist:
    def test_sorted(self) -> None:
        pl = build_playlist([_s("b", 100, 200), _s("a", 0, 100)])
        assert [f.path for f in pl] == ["a", "b"]

    def test_skips_open_and_empty(self) -> None:
        pl = build_playlist([_s("open", 0, None), _s("empty", 50, 50), _s("ok", 100, 200)])
        assert pl == [FileSeg("ok", 100, 200)]

    def test_overlap_truncates_previous(self) -> None:
        pl = build_playlist([_s("a", 0, 150), _s("b", 100, 200)])
        assert pl == [FileSeg("a", 0, 100), FileSeg("b", 100, 200)]

    def test_same_start_keeps_later_entry(self) -> None:
        pl = build_playlist([_s("a", 0, 100), _s("b", 0, 120)])
        assert pl == [FileSeg("b", 0, 120)]

    def test_result_is_non_overlapping(self) -> None:
        rows = [_s("a", 0, 300), _s("b", 50, 100), _s("c", 90, 400), _s("d", 400, 500)]
        pl = build_playlist(rows)
        for prev, cur in zip(pl, pl[1:]):
            assert prev.end_ns <= cur.start_ns
            assert prev.start_ns < prev.end_ns

    def test_empty(self) -> None:
        assert build_playlist([]) == []


class _FakeWriter:
    def __init__(self, rows) -> None:
        self.rows = rows
        self.queries = []

    def segments_between(self, url, start_ns, end_ns):
        self.queries.append((url, start_ns, end_ns))
        return self.rows


class TestPlaylistForDay:
    def test_queries_whole_day(self) -> None:
        day = date(2024, 5, 1)
        start, end = day_bounds_ns(day)
        w = _FakeWriter([_s("a", start + NS_PER_SEC, start + 301 * NS_PER_SEC)])
        playlist, day_start = playlist_for_day(w, "rtsp://cam", day)
        assert day_start == start
        assert w.queries == [("rtsp://cam", start, end)]
        assert playlist == [FileSeg("a", start + NS_PER_SEC, start + 301 * NS_PER_SEC)]
