"""
errors.py

Exception types shared by the pipeline, stores and integrations.
"""


class ConfigurationError(ValueError):
    """A required connection string or API key is missing."""


class StorageError(RuntimeError):
    """The backing store is unreachable or rejected a write."""


class TrackerError(RuntimeError):
    """The issue tracker refused or failed a request."""


class ExtractionError(RuntimeError):
    """The language model produced no usable extraction for a transcript."""
