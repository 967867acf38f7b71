"""Error taxonomy for the benchmarking core.

Synchronous read paths propagate these to the caller. Background job
execution catches them, logs, and routes the job through the retry rules.
"""


class BenchmarkError(Exception):
    """Base exception for all benchmarking errors."""


class ValidationError(BenchmarkError):
    """Raised when input is malformed and must be rejected before classification."""


class UnknownPeerGroupError(ValidationError):
    """Raised when a peer group id is not present in the catalog."""


class TransientComputeError(BenchmarkError):
    """Raised when classification, ranking or upstream data fetching fails.

    These failures are retried through the job path.
    """


class PersistenceError(BenchmarkError):
    """Raised when the backing store (database or Redis) is unavailable."""


class ConfigurationError(BenchmarkError):
    """Raised when a configuration update contains invalid values."""


class JobStateError(BenchmarkError):
    """Raised when a job status transition is not allowed."""
