from __future__ import annotations


class ConversionError(Exception):
    """Base error for the conversion pipeline and track queue."""


class SubmissionRejected(ConversionError, ValueError):
    """Raised when a submitted file is too large or is not audio/video."""


class DecodeError(ConversionError):
    """Raised when input bytes cannot be decoded to PCM."""


class RenderError(ConversionError):
    """Raised when resampling or channel remixing fails."""


class EncodeError(ConversionError):
    """Raised when the WAV container cannot be produced."""


class ConversionCancelled(ConversionError):
    """Raised when a batch run's cancellation token is observed mid-job."""


class TrackStateError(ConversionError):
    """Raised on an illegal track transition or edit (e.g. touching a processing track)."""


class BatchAlreadyRunning(ConversionError):
    """Raised when a batch run is started while another one is active."""


class ResultReleasedError(ConversionError):
    """Raised when a released result payload is read."""
