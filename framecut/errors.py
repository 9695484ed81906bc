from __future__ import annotations


class FramecutError(RuntimeError):
    """Base class for every error raised by the composition engine."""
    pass


class UnsupportedInput(FramecutError):
    """Container/codec cannot be opened, or a required track is missing."""
    pass


class DecodeFailure(FramecutError):
    """Samples of a specific track cannot be decoded."""
    pass


class IncompatibleFormat(FramecutError, ValueError):
    """PCM buffers (or tracks) that must share a format do not."""
    pass


class TooSmallRegion(FramecutError, ValueError):
    """A crop/resize/watermark target resolves below the minimum encodable size."""
    pass


class EncodeCapabilityMissing(FramecutError):
    """None of the candidate codecs can be encoded in this environment."""
    pass


class NoDataProduced(FramecutError):
    """Output finalized without producing any bytes."""
    pass


class CompositionError(FramecutError):
    """Top-level failure of a composition job."""
    pass


class CompositionCancelled(FramecutError):
    """Raised when a job is cancelled cooperatively. Not a user-facing failure."""
    pass
