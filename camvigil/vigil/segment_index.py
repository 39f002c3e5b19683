"""Build export playlists from the segment index.

The exporter's planner assumes its playlist is ascending by start time
and free of overlaps; :func:`build_playlist` is where that is enforced.
"""

import logging
from datetime import date, datetime, time as dtime, timedelta
from typing import Iterable, List, Tuple

from .models import FileSeg, Segment, NS_PER_SEC

logger = logging.getLogger(__name__)


def day_bounds_ns(day: date) -> Tuple[int, int]:
    """Local midnight of *day* and of the following day, in epoch ns."""
    start = datetime.combine(day, dtime.min)
    end = start + timedelta(days=1)
    return int(start.timestamp()) * NS_PER_SEC, int(end.timestamp()) * NS_PER_SEC


def build_playlist(segments: Iterable[Segment]) -> List[FileSeg]:
    """Turn index rows into an ascending, non-overlapping playlist.

    Segments that were never closed (no end time) are skipped.  When a
    segment starts before the previous one ends, the previous entry is
    cut short at that start so offsets inside each file stay valid; an
    entry with nothing left is dropped.
    """
    closed = sorted(
        (s for s in segments if s.end_ns is not None and s.end_ns > s.start_ns),
        key=lambda s: (s.start_ns, s.end_ns),
    )
    out: List[FileSeg] = []
    for seg in closed:
        while out and seg.start_ns < out[-1].end_ns:
            prev = out.pop()
            if seg.start_ns > prev.start_ns:
                out.append(FileSeg(path=prev.path, start_ns=prev.start_ns, end_ns=seg.start_ns))
            else:
                logger.debug("Dropping overlapped segment %s", prev.path)
        out.append(FileSeg(path=seg.path, start_ns=seg.start_ns, end_ns=seg.end_ns))
    return out


def playlist_for_day(writer, camera_url: str, day: date) -> Tuple[List[FileSeg], int]:
    """Query *writer* for one camera's day.  Returns ``(playlist, day_start_ns)``."""
    day_start, day_end = day_bounds_ns(day)
    rows = writer.segments_between(camera_url, day_start, day_end)
    return build_playlist(rows), day_start
