from __future__ import annotations

"""
Error taxonomy shared by the recognition core, the catalog codec and the
session protocol.
"""


class RecognitionError(Exception):
    """Base class for all errors raised by this project."""
    pass


class DecodeError(RecognitionError):
    """Raised when image bytes, a chunk header or a message envelope cannot be decoded."""
    pass


class ConfigurationError(RecognitionError, ValueError):
    """Raised at construction time when extractor/matcher/preprocess knobs are invalid."""
    pass


class PoseNotFound(RecognitionError):
    """
    Raised when a pose summary is requested for an estimate without a transform.

    Callers filter on PoseEstimate.found before summarizing; reaching this
    exception means that filter was skipped.
    """
    pass


class CodecIntegrityError(RecognitionError):
    """Raised when a serialized catalog fails a consistency check."""
    pass


class CatalogUnavailable(RecognitionError):
    """Raised when a catalog provider cannot produce a snapshot for a session."""
    pass
