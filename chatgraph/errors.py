from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for failures that abort a processing run."""


class ModelNotReady(PipelineError):
    pass


class InvalidInput(PipelineError):
    pass


class DimensionMismatch(PipelineError):
    pass


class BatchFailure(PipelineError):
    pass


class EmbeddingClusterMismatch(PipelineError):
    pass


class ArchiveFormatError(ValueError):
    """Raised when an exported conversations archive cannot be parsed."""
