"""score_etl.failures

Failure taxonomy for per-record conversion, plus run-level errors.

A converter signals a bad record by raising ConversionFailure.  Its kind is
one of exactly three FailureKind values, and disposition_for() maps every
kind to what the orchestrator does with the record:

    INVALID_SCORE   the record itself is malformed or out of domain
                    -> SKIP (permanent; re-ingesting fails identically)
    NOT_FOUND       well-formed, but the catalog lacks the chart/song now
                    -> ORPHAN (the only retryable kind)
    INTERNAL        an invariant the pipeline should guarantee was violated
                    -> SKIP_INTERNAL (counted as skipped, logged at error)
"""

from __future__ import annotations

import enum
from typing import Any


# ---------------------------------------------------------------------------
# Per-record conversion failures
# ---------------------------------------------------------------------------

class FailureKind(str, enum.Enum):
    INVALID_SCORE = "invalid_score"
    NOT_FOUND = "song_or_chart_not_found"
    INTERNAL = "internal"


class Disposition(str, enum.Enum):
    SKIP = "skip"
    ORPHAN = "orphan"
    SKIP_INTERNAL = "skip_internal"


class ConversionFailure(Exception):
    """Raised by a converter when one raw record cannot be converted.

    raw/context are attached by the orchestrator when the converter did not
    supply them, so every logged failure can be reproduced.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        raw: Any = None,
        context: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.raw = raw
        self.context = context

    @property
    def retryable(self) -> bool:
        return self.kind is FailureKind.NOT_FOUND

    def __repr__(self) -> str:
        return f"ConversionFailure({self.kind.value}, {self.message!r})"


def InvalidScoreFailure(message: str) -> ConversionFailure:  # noqa: N802
    return ConversionFailure(FailureKind.INVALID_SCORE, message)


def SongOrChartNotFoundFailure(  # noqa: N802
    message: str,
    raw: Any = None,
    context: Any = None,
) -> ConversionFailure:
    return ConversionFailure(FailureKind.NOT_FOUND, message, raw, context)


def InternalFailure(message: str) -> ConversionFailure:  # noqa: N802
    return ConversionFailure(FailureKind.INTERNAL, message)


def disposition_for(kind: FailureKind) -> Disposition:
    """Return the orchestrator disposition for a failure kind.

    Raises:
        TypeError: kind is not a FailureKind (no catch-all disposition).
    """
    if kind is FailureKind.INVALID_SCORE:
        return Disposition.SKIP
    if kind is FailureKind.NOT_FOUND:
        return Disposition.ORPHAN
    if kind is FailureKind.INTERNAL:
        return Disposition.SKIP_INTERNAL
    raise TypeError(f"unhandled failure kind: {kind!r}")


# ---------------------------------------------------------------------------
# Run-level errors
# ---------------------------------------------------------------------------

class ImportConflictError(Exception):
    """Raised when an import (or reconciliation) is already in flight for a user."""

    def __init__(self, user_id: str, lock_name: str = "import_lock") -> None:
        super().__init__(f"{lock_name}: an import is already in progress for user {user_id!r}")
        self.user_id = user_id
        self.lock_name = lock_name


class LockLostError(ImportConflictError):
    """Raised when a running holder finds its lock reclaimed by another run."""

    def __init__(self, user_id: str, lock_name: str = "import_lock") -> None:
        super().__init__(user_id, lock_name)
        self.args = (f"{lock_name}: lock for user {user_id!r} was reclaimed by another run",)


class ImportFatalError(Exception):
    """Raised when an import run must abort; carries the partial summary."""

    def __init__(self, message: str, summary: Any = None) -> None:
        super().__init__(message)
        self.summary = summary


class UnknownImportTypeError(ValueError):
    """Raised when no converter is registered for an import type."""
