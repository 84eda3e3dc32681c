"""
Error taxonomy for the audit core.

InputError and DependencyFailure are raised. Insufficient-sample skips and
degraded defaults are returned as data (RuleSkip, DistanceCheck.degraded)
so callers can disclose them without treating them as failures.
"""


class FieldAuditError(Exception):
    """Base class for errors raised by the audit core."""


class InputError(FieldAuditError, ValueError):
    """Malformed window, out-of-range coordinate, or unknown entity id."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class DependencyFailure(FieldAuditError):
    """A storage read or write failed. The whole batch must be retried."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Storage operation '{operation}' failed{detail}")
        self.operation = operation
        self.cause = cause
