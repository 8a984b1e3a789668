"""Coded diagnostics for recoverable rigging problems.

Every recoverable problem (a dropped oracle entry, a capped influence list, a
stale model hash) is reported under a stable W-code. Callers decide per code
whether it is shown, hidden or fatal by passing a :class:`WarningPolicy`.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass

from autorig.errors import ValidationError

UNKNOWN_BONE = "W01"
INVALID_ENTRY = "W02"
INFLUENCES_CAPPED = "W03"
MODEL_HASH_MISMATCH = "W04"
WEIGHTS_INCOMPLETE = "W05"
UNKNOWN_PROJECT_VERSION = "W06"

WARNING_CODES: dict[str, str] = {
    UNKNOWN_BONE: "oracle reply names a bone that is not in the skeleton",
    INVALID_ENTRY: "oracle reply entry is malformed and was dropped",
    INFLUENCES_CAPPED: "vertex had more than four influences; extras were dropped",
    MODEL_HASH_MISMATCH: "model file is missing or differs from the saved hash",
    WEIGHTS_INCOMPLETE: "stored weights do not cover every vertex",
    UNKNOWN_PROJECT_VERSION: "project file has a missing or unrecognised version",
}

KNOWN_CODES: frozenset[str] = frozenset(WARNING_CODES)


class AutorigWarning(UserWarning):
    """Warning with a machine-readable code."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(f"[{code}] {message}")


def parse_code_list(raw: str) -> frozenset[str]:
    """Parse ``"W01, w03"`` style input into a set of known codes.

    Raises ``ValueError`` naming the first unknown code.
    """
    tokens = (token.strip().upper() for token in raw.split(","))
    codes = frozenset(token for token in tokens if token)
    unknown = sorted(codes - KNOWN_CODES)
    if unknown:
        raise ValueError(f"Unknown warning code: {unknown[0]!r} (known: {', '.join(sorted(KNOWN_CODES))})")
    return codes


@dataclass(frozen=True)
class WarningPolicy:
    """Per-code handling. A code in both sets is suppressed."""

    warn_as_error: frozenset[str] = frozenset()
    suppress: frozenset[str] = frozenset()

    @classmethod
    def from_options(cls, warn_as_error: str | None = None, suppress: str | None = None) -> WarningPolicy:
        return cls(
            warn_as_error=parse_code_list(warn_as_error or ""),
            suppress=parse_code_list(suppress or ""),
        )

    def action(self, code: str) -> str:
        """``"ignore"``, ``"error"`` or ``"warn"`` for ``code``."""
        if code in self.suppress:
            return "ignore"
        if code in self.warn_as_error:
            return "error"
        return "warn"


def emit_warning(code: str, message: str, *, policy: WarningPolicy | None = None) -> None:
    """Report ``message`` under ``code``.

    Suppressed codes are dropped and escalated codes raise ``ValidationError``.
    Anything else becomes an ``AutorigWarning`` attributed to the caller.
    """
    action = policy.action(code) if policy is not None else "warn"
    if action == "ignore":
        return
    if action == "error":
        raise ValidationError(f"[{code}] {message}")
    warnings.warn(AutorigWarning(code, message), stacklevel=2)
