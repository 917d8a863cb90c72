"""Coded diagnostics for recoverable import conditions."""

from __future__ import annotations

import warnings
from dataclasses import dataclass

from glimport.errors import ValidationError

CODE_DESCRIPTIONS: dict[str, str] = {
    "W01": "first chunk type tag is not JSON",
    "W02": "declared container length disagrees with the actual length",
    "W03": "source format not recognized",
    "W04": "optional extension used but not supported",
}

KNOWN_CODES: frozenset[str] = frozenset(CODE_DESCRIPTIONS)


class GlimportWarning(UserWarning):
    """Warning with a machine-readable code."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(f"[{code}] {message}")


@dataclass(frozen=True)
class WarningPolicy:
    """Controls how individual warning codes are handled."""

    warn_as_error: frozenset[str] = frozenset()
    suppress: frozenset[str] = frozenset()

    @classmethod
    def from_options(cls, warn_as_error: str | None, suppress: str | None) -> WarningPolicy | None:
        """Build a policy from comma-separated code lists, or None if both are unset."""
        if warn_as_error is None and suppress is None:
            return None
        return cls(
            warn_as_error=parse_code_list(warn_as_error) if warn_as_error else frozenset(),
            suppress=parse_code_list(suppress) if suppress else frozenset(),
        )


def emit_warning(code: str, message: str, *, policy: WarningPolicy | None = None) -> None:
    """Report a recoverable condition under ``code``.

    Suppressed codes are dropped, warn-as-error codes raise ``ValidationError``
    and everything else becomes a ``GlimportWarning``.
    """
    if policy is not None:
        if code in policy.suppress:
            return
        if code in policy.warn_as_error:
            raise ValidationError(f"[{code}] {message}")

    warnings.warn(GlimportWarning(code, message), stacklevel=3)


def parse_code_list(raw: str) -> frozenset[str]:
    """Parse a comma-separated string of W-codes.

    Raises ``ValueError`` for unknown codes.
    """
    codes = {token.strip() for token in raw.split(",") if token.strip()}
    unknown = sorted(codes - KNOWN_CODES)
    if unknown:
        raise ValueError(
            f"Unknown warning code: {', '.join(unknown)} (known: {sorted(KNOWN_CODES)})"
        )
    return frozenset(codes)
