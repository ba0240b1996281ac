"""Exception hierarchy for the VeriSight pipeline."""


class VeriSightError(Exception):
    """Base exception for all VeriSight errors."""

    pass


class MediaLoadError(VeriSightError):
    """Raised when the video container or its video stream can't be read."""

    pass


class AudioDecodeError(VeriSightError):
    """Raised when the audio track can't be decoded. Never leaves the audio resampler."""

    pass


class AnalysisError(VeriSightError):
    """Base exception for failures of the remote analysis call."""

    pass


class TransportError(AnalysisError):
    """Raised when the analysis service can't be reached."""

    pass


class RateLimitedError(AnalysisError):
    """Raised when the analysis service reports overload (HTTP 429)."""

    pass


class MalformedResponseError(AnalysisError):
    """Raised when the analysis service returns a report without the required fields."""

    pass


class RenderExportError(VeriSightError):
    """Raised when the dossier document can't be generated or saved."""

    pass


class WorkflowError(VeriSightError):
    """Raised on a transition the run state machine doesn't allow."""

    pass
