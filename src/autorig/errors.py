"""Custom exception hierarchy for autorig."""


class AutorigError(Exception):
    """Base exception for all autorig errors."""


class ParseError(AutorigError):
    """Raised when JSON/YAML parsing or schema deserialization fails."""


class ValidationError(AutorigError):
    """Raised when semantic validation fails (cycles, bad refs, etc.)."""


class HierarchyError(ValidationError):
    """Raised when a reparent would break the bone forest."""


class ExportError(AutorigError):
    """Raised when glTF/GLB export fails."""


class OracleError(AutorigError):
    """Base class for external suggestion oracle failures."""

    retryable = False


class OracleUnavailableError(OracleError):
    """Raised on oracle timeout or transport failure. Safe to retry."""

    retryable = True


class OracleResponseError(OracleError):
    """Raised when an oracle response yields no usable entries."""


class OracleCancelledError(OracleError):
    """Raised when a request was cancelled or superseded by a newer one."""
