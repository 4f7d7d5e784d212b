"""
Error taxonomy for the study engine.

- ValidationError: bad input (rating, ids, scope, scheduler preset)
- NotFoundError: a referenced question or card is missing
- PersistenceError: the memory store failed; the caller may retry
- StateInvariantError: queue bookkeeping is corrupt (a bug, never patched)
"""

from __future__ import annotations


class DrillQueueError(Exception):
    """Base class for all study engine errors."""


class ValidationError(DrillQueueError, ValueError):
    """Input failed validation."""


class NotFoundError(DrillQueueError, LookupError):
    """A referenced question, card or memory record does not exist."""


class PersistenceError(DrillQueueError):
    """Reading or writing the memory store failed.

    Retrying the same operation with the same or a slightly later timestamp
    is safe; nothing in the session was mutated.
    """

    retryable = True


class StateInvariantError(DrillQueueError, RuntimeError):
    """An item was found in two session structures at once."""
