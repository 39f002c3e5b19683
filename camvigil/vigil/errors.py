"""Exception types raised by the archive and export layers."""


class ArchiveError(RuntimeError):
    """Base class for recording-session failures."""


class StoreOpenError(ArchiveError):
    """The segment index database could not be opened."""


class AlreadyRecordingError(ArchiveError):
    """``start_recording`` was called while a session is active."""


class ExportError(RuntimeError):
    """Base class for export failures."""


class ExportValidationError(ExportError):
    """The selection or playlist cannot be exported."""


class ExportResourceError(ExportError):
    """No usable export volume, or not enough free space on it."""


class EncoderError(ExportError):
    """An ffmpeg invocation failed to start or exited unsuccessfully."""

    def __init__(self, message: str, detail: str = "") -> None:
        super().__init__(message)
        self.detail = detail


class ExportCanceled(ExportError):
    """The run was canceled by the caller (not a failure)."""


class FinalizeError(ExportError):
    """Moving the finished file into place failed."""
