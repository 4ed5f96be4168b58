"""Exception hierarchy for LiveLabel.

Startup errors are fatal and reported once. Conversion and classification
errors are per-frame: the affected frame is dropped and the next one is
processed normally.
"""

from __future__ import annotations


class LiveLabelError(Exception):
    """Base class for all LiveLabel errors."""

    def __init__(self, message: str, context: dict[str, object] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)


# -- Startup -----------------------------------------------------------------


class StartupError(LiveLabelError):
    """The capture pipeline could not be started."""


class DeviceUnavailableError(StartupError):
    """No capturable video source is available."""


class InputAttachError(StartupError):
    """The video source could not be attached to the capture pipeline."""


class ModelLoadError(StartupError):
    """The classification model or its labels could not be fetched or loaded."""


# -- Per-frame ---------------------------------------------------------------


class ConversionError(LiveLabelError):
    """A frame could not be converted into a tensor buffer."""


class AllocationError(ConversionError):
    """The target buffer could not be allocated."""


class UnsupportedFormatError(ConversionError):
    """The source encoding or layout cannot be converted to the target encoding."""


class ClassificationError(LiveLabelError):
    """The classifier failed to produce a result for a buffer."""
