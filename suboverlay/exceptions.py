"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
Job-level failures are reported to consumers as ``error`` events carrying the
exception message; direct calls (imports, subtitle fetches) raise them.
"""

from typing import Optional


class SubOverlayError(Exception):
    """Base class for all application errors."""
    pass


class ConfigurationError(SubOverlayError):
    """A setting or request parameter is missing or invalid."""
    pass


class MissingUrlError(ConfigurationError):
    """A download was requested without a URL."""
    pass


class ToolNotConfiguredError(ConfigurationError):
    """The path to an external tool (yt-dlp, ffmpeg) could not be resolved."""
    pass


class SubprocessLaunchError(SubOverlayError):
    """The external tool could not be spawned."""
    pass


class SubprocessExitError(SubOverlayError):
    """The external tool exited with a non-zero code."""

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = ''):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class OutputNotLocatedError(SubOverlayError):
    """The tool reported success but no output artifact could be found."""
    pass


class FilesystemError(SubOverlayError):
    """A copy, rename or stat operation on a cache file failed."""
    pass


class NotAFileError(FilesystemError):
    """The source of an ingestion is missing or is not a regular file."""
    pass


class UserCancelledError(SubOverlayError):
    """The user aborted an operation. Not a failure."""
    pass


class NoSubtitlesAvailableError(SubOverlayError):
    """The media has neither manual nor automatic subtitle tracks."""
    pass


class URLExtractionError(SubOverlayError):
    """Custom exception for URL metadata probe failures."""
    pass


class MissingImportError(SubOverlayError):
    """A cache import was requested without any file."""
    pass


class ImportFailedError(SubOverlayError):
    """Importing a local media or subtitle file into the cache failed."""
    pass
