"""Exception hierarchy for the Kaia timeline engine.

Identity and validation errors are synchronous contract violations: they are
raised straight back to the caller and indicate misuse, not a system fault.
Render-time failures never surface as exceptions in the submitting context;
they are recorded on the export job and observed through its status.

Example:
    >>> try:
    ...     store.get("missing")
    ... except NotFoundError as e:
    ...     print(e.item_id)
"""

from __future__ import annotations

from typing import Any


class KaiaError(Exception):
    """Base exception for all engine errors.

    All engine exceptions inherit from this class to allow for easy
    exception handling at a higher level.
    """

    pass


class NotFoundError(KaiaError):
    """Raised when looking up an unknown or deleted identifier."""

    def __init__(self, item_id: str, what: str = "item") -> None:
        self.item_id = item_id
        self.what = what
        super().__init__(f"{what} not found: {item_id}")


class KindMismatchError(KaiaError):
    """Raised when an identifier is reused across record variants.

    Kind is part of identity: an id minted for a Memory can never name a
    Milestone, even after the Memory has been deleted.
    """

    def __init__(self, item_id: str, expected: Any, actual: Any) -> None:
        self.item_id = item_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Item {item_id} is a {_label(expected)}, not a {_label(actual)}"
        )


class DuplicateItemError(KaiaError):
    """Raised when adding a reference that is already selected."""

    def __init__(self, item_ref: Any) -> None:
        self.item_ref = item_ref
        super().__init__(f"Already selected: {item_ref}")


class InvalidPermutationError(KaiaError):
    """Raised when a reorder is not a permutation of the current selection.

    Attributes:
        missing: Refs in the selection that the new order left out.
        extra: Refs in the new order that are not selected (or repeated).
    """

    def __init__(self, missing: frozenset, extra: frozenset) -> None:
        self.missing = missing
        self.extra = extra
        super().__init__(
            f"New order is not a permutation of the selection "
            f"(missing={sorted(map(str, missing))}, extra={sorted(map(str, extra))})"
        )


class OwnerMismatchError(KaiaError):
    """Raised when an item belongs to a different owner than the selection."""

    def __init__(self, expected_owner: str, actual_owner: str) -> None:
        self.expected_owner = expected_owner
        self.actual_owner = actual_owner
        super().__init__(
            f"Selection belongs to {expected_owner}, item belongs to {actual_owner}"
        )


class NotCancelableError(KaiaError):
    """Raised when cancelling an export job that is no longer queued."""

    def __init__(self, job_id: str, state: Any) -> None:
        self.job_id = job_id
        self.state = state
        super().__init__(f"Export job {job_id} cannot be cancelled in state {_label(state)}")


class InvalidCursorError(KaiaError, ValueError):
    """Raised when a pagination cursor cannot be decoded or does not fit the request."""

    pass


class RenderFailure(KaiaError):
    """Structured failure reported by an export renderer.

    The export job manager stores ``code``, ``message`` and ``references``
    verbatim on the failed job's error detail.

    Attributes:
        code: Machine-readable failure code (e.g. "UnresolvedReference").
        message: Human-readable explanation.
        references: Identifiers the failure concerns.
    """

    def __init__(self, code: str, message: str, references: tuple[str, ...] = ()) -> None:
        self.code = code
        self.message = message
        self.references = tuple(references)
        super().__init__(f"{code}: {message}")


def _label(value: Any) -> str:
    return getattr(value, "value", str(value))
