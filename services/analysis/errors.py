"""
Typed errors for the analysis pipeline.

Every per-attempt failure is raised as one of these inside the Dispatcher,
caught there and recorded on the run. None of them crosses the queue or
poll boundary.
"""


class AnalysisError(RuntimeError):
    """Base class for analysis pipeline failures."""

    kind = "error"


class ModelNotAllowedError(AnalysisError):
    """A requested model is not on the allowlist (configuration error)."""

    kind = "configuration"


class ProviderError(AnalysisError):
    """Transport or provider failure: timeout, network error, 5xx, SDK error."""

    kind = "provider"


class MetadataValidationError(AnalysisError):
    """Provider output is not a well-formed JSON object."""

    kind = "validation"


class LeaseLostError(AnalysisError):
    """The job lease was reclaimed before the worker could commit."""

    kind = "lease"
