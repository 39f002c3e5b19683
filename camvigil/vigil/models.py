"""Core data models for CamVigil.

Defines the dataclasses shared by the recorder and the exporter:
camera profiles, recording sessions, archived segments, and the
transient playlist / clip types used when exporting a time range.
Types that are stored as JSON support ``to_dict()`` / ``from_dict()``.

All timestamps are integer nanoseconds.  ``FileSeg`` times are absolute
(epoch); ``ClipPart`` offsets are relative to the start of their file.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
import uuid


NS_PER_SEC = 1_000_000_000
NS_PER_MS = 1_000_000

DEFAULT_SEGMENT_SECONDS = 300  # 5 min


@dataclass(frozen=True)
class CameraProfile:
    """Connection details for one camera.  Immutable for a session."""
    url: str
    sub_url: str = ""
    display_name: str = ""

    def to_dict(self) -> dict:
        return {"url": self.url, "subUrl": self.sub_url, "displayName": self.display_name}

    @staticmethod
    def from_dict(d: dict) -> "CameraProfile":
        return CameraProfile(
            url=d["url"],
            sub_url=d.get("subUrl", ""),
            display_name=d.get("displayName", ""),
        )


@dataclass
class RecordingSession:
    """One recording run spanning all active cameras."""

    session_id: str
    archive_root: str
    segment_duration_s: int
    cameras: List[CameraProfile]
    master_start: datetime

    @staticmethod
    def create(
        archive_root: str,
        segment_duration_s: int,
        cameras: List[CameraProfile],
    ) -> "RecordingSession":
        """Factory that generates a fresh session id and master start."""
        return RecordingSession(
            session_id=str(uuid.uuid4()),
            archive_root=archive_root,
            segment_duration_s=segment_duration_s,
            cameras=list(cameras),
            master_start=datetime.now(),
        )


@dataclass
class Segment:
    """One archived file for one camera.

    ``end_ns`` and ``duration_ms`` stay ``None`` until the worker reports
    the segment closed.  A closed segment is never reopened.
    """
    camera_id: int
    path: str
    start_ns: int
    end_ns: Optional[int] = None
    duration_ms: Optional[int] = None

    @property
    def is_closed(self) -> bool:
        return self.end_ns is not None


@dataclass(frozen=True)
class FileSeg:
    """A playlist entry: one segment file and its absolute time span."""
    path: str
    start_ns: int
    end_ns: int

    @property
    def duration_ns(self) -> int:
        return self.end_ns - self.start_ns


@dataclass(frozen=True)
class ClipPart:
    """A slice of one source file, with offsets relative to its start."""
    path: str
    in_start_ns: int
    in_end_ns: int
    whole_file: bool = False

    @property
    def duration_ns(self) -> int:
        return self.in_end_ns - self.in_start_ns


@dataclass
class ExportOptions:
    """Settings for one export run.  Not modified while a run is active.

    An empty ``encoder_path`` means the bundled ffmpeg; an empty
    ``out_dir`` means ``<external volume>/CamVigilExports``; an empty
    ``base_name`` means ``CamVigil_<date>``.
    """

    encoder_path: str = ""
    out_dir: str = ""
    base_name: str = ""
    precise: bool = False      # False => stream copy, True => re-encode
    video_codec: str = "libx264"
    preset: str = "veryfast"
    crf: int = 18
    copy_audio: bool = True    # precise mode only
    min_free_bytes: int = 512 * 1024 * 1024

    def to_dict(self) -> dict:
        return {
            "encoderPath": self.encoder_path,
            "outDir": self.out_dir,
            "baseName": self.base_name,
            "precise": self.precise,
            "videoCodec": self.video_codec,
            "preset": self.preset,
            "crf": self.crf,
            "copyAudio": self.copy_audio,
            "minFreeBytes": self.min_free_bytes,
        }

    @staticmethod
    def from_dict(d: dict) -> "ExportOptions":
        """Reconstruct from a dict; missing keys keep their defaults."""
        opts = ExportOptions()
        keys = {
            "encoderPath": "encoder_path",
            "outDir": "out_dir",
            "baseName": "base_name",
            "precise": "precise",
            "videoCodec": "video_codec",
            "preset": "preset",
            "crf": "crf",
            "copyAudio": "copy_audio",
            "minFreeBytes": "min_free_bytes",
        }
        for src, attr in keys.items():
            if src in d:
                setattr(opts, attr, d[src])
        return opts
