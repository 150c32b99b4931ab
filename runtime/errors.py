"""
Error taxonomy shared by the grid runtime and the composition pipeline.

Only ValidationError and TranscodeFailure ever reach a caller as failures.
UploadFailure, DistributionFailure and PersistenceReadFailure are raised by
the low-level adapters and absorbed by the layer above them.
"""


class BoogieError(Exception):
    """Base class for all Boogie Square errors."""


class ValidationError(BoogieError):
    """Wrong input shape or count. Nothing was mutated."""


class SlotLockedError(ValidationError):
    """The slot belongs to another contributor, or the user already owns one."""


class UploadFailure(BoogieError):
    """Raw media could not be pushed to durable storage."""


class TranscodeFailure(BoogieError):
    """An ffmpeg stage failed. The run is aborted."""


class DistributionFailure(BoogieError):
    """Storage upload or notification send for a finished mosaic failed."""


class PersistenceReadFailure(BoogieError):
    """Persisted grid data is missing or unreadable."""
