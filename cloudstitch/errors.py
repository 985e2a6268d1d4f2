"""
Error kinds raised by the stitching pipeline.

All of them derive from StitchError so a batch driver can catch the family
in one place, log the failed scan and move on.
"""


class StitchError(Exception):
    """Base class for every pipeline failure."""


class ConfigurationError(StitchError, ValueError):
    """Invalid stage parameters (non-positive voxel size, k >= cloud size, ...)."""


class MalformedInputError(StitchError, ValueError):
    """Unreadable cloud file or pose record that cannot be parsed."""


class AlignmentDegenerateError(StitchError, RuntimeError):
    """Too few points for normal / descriptor estimation or correspondence search."""


class SequenceError(StitchError, RuntimeError):
    """Concurrent or out-of-order use of one fused model."""
