"""
Error taxonomy for the reconcile loop.

  ValidationError / BuildError  → user-correctable, persisted as a Failed status
  TransientStoreError           → retried with backoff, only counted in status
  NotFoundError                 → the object is gone, nothing to do
"""


class OperatorError(Exception):
    """Base class for all reconcile-loop errors."""


class ValidationError(OperatorError):
    """The cluster spec is structurally invalid."""


class BuildError(OperatorError):
    """A valid spec could not be turned into workload objects."""


class InvalidObjectError(BuildError):
    """The API server rejected a built object as invalid (HTTP 422)."""


class NotFoundError(OperatorError):
    """The requested object does not exist (HTTP 404)."""


class TransientStoreError(OperatorError):
    """The resource store is unavailable or returned a retryable error."""


class ConflictError(TransientStoreError):
    """A conditional write lost against a newer resourceVersion (HTTP 409)."""
