"""
Defines custom exceptions used throughout the engine.

Process failures never surface as exceptions; they are recorded on the job.
These exceptions cover caller mistakes and isolated pipeline steps.
"""

class DlEngineError(Exception):
    """Base class for all engine errors."""
    pass

class JobNotFoundError(DlEngineError):
    """Raised when a job id is not present in the registry."""
    pass

class PresetNotFoundError(DlEngineError):
    """Raised when no preset can be resolved for a job."""
    pass

class ThumbnailDownloadError(DlEngineError):
    """Custom exception for a failed direct thumbnail download."""
    pass
