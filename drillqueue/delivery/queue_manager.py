"""
Session Queue Manager.

Owns the per-session queues and decides which card to show next:
- learning queue: cards on a minutes-scale step, served first
- review queue / new queue: mixed at a fixed ratio (default 2 review : 1 new)
- deferred heap: re-queued cards parked until their show_after time

All mutation is synchronous. A card id lives in exactly one place at a time:
one of the three queues, the deferred heap, or the display slot.
"""

from __future__ import annotations

import heapq
import itertools
from collections import deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger

from .errors import StateInvariantError, ValidationError
from .memory_model import MemoryState, ensure_utc

if TYPE_CHECKING:
    from .question_bank import Question

# =============================================================================
# Data Classes
# =============================================================================


class CardType(str, Enum):
    """Session-local classification, fixed when the card enters the session."""

    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"


@dataclass
class SessionItem:
    """A question wrapped with its memory snapshot for one study session."""

    question: Question
    memory_state: MemoryState | None
    card_type: CardType
    is_retry: bool = False
    show_after: datetime | None = None  # Only meaningful while deferred

    @property
    def id(self) -> str:
        return self.question.id


@dataclass(frozen=True)
class QueueCounts:
    """Remaining cards per type, including the one on display."""

    new: int
    learning: int
    review: int

    @property
    def total(self) -> int:
        return self.new + self.learning + self.review


# =============================================================================
# Queue Manager
# =============================================================================


class SessionQueueManager:
    """
    Three FIFO queues plus a due-time ordered deferred heap.

    get_next() priority:
    1. Promote deferred cards whose show_after has passed into learning
    2. Learning queue
    3. Review/new mix at reviews_per_new : 1
    4. Earliest deferred card, even if not yet due
    5. None (session finished)
    """

    def __init__(self, reviews_per_new: int = 2):
        """
        Initialize an empty session.

        Args:
            reviews_per_new: Review cards served between two new cards
        """
        if reviews_per_new < 0:
            raise ValidationError(f"reviews_per_new must be >= 0, got {reviews_per_new}")
        self.reviews_per_new = reviews_per_new

        self.new_queue: deque[SessionItem] = deque()
        self.review_queue: deque[SessionItem] = deque()
        self.learning_queue: deque[SessionItem] = deque()
        self._deferred: list[tuple[datetime, int, SessionItem]] = []  # (show_after, seq, item)
        self._seq = itertools.count()

        self.current: SessionItem | None = None
        self.reviews_since_new = 0

        self._tracked: set[str] = set()

    # =========================================================================
    # Seeding & Insertion
    # =========================================================================

    def seed(
        self,
        new: Iterable[SessionItem] = (),
        learning: Iterable[SessionItem] = (),
        review: Iterable[SessionItem] = (),
    ) -> None:
        """Fill the three queues at session start (order is preserved)."""
        for item in learning:
            self._add(self.learning_queue, item)
        for item in review:
            self._add(self.review_queue, item)
        for item in new:
            self._add(self.new_queue, item)

    def defer(self, item: SessionItem) -> None:
        """Park a card until item.show_after."""
        if item.show_after is None:
            raise ValidationError(f"Deferred card {item.id} needs a show_after time")
        item.show_after = ensure_utc(item.show_after)
        self._track(item)
        heapq.heappush(self._deferred, (item.show_after, next(self._seq), item))
        logger.debug("Deferred {} until {}", item.id, item.show_after.isoformat())

    def _add(self, queue: deque[SessionItem], item: SessionItem) -> None:
        self._track(item)
        queue.append(item)

    def _track(self, item: SessionItem) -> None:
        if item.id in self._tracked:
            logger.critical("Card {} is already in the session; refusing duplicate insert", item.id)
            raise StateInvariantError(f"Card {item.id} is already queued, deferred or displayed")
        self._tracked.add(item.id)

    # =========================================================================
    # Selection
    # =========================================================================

    def get_next(self, now: datetime) -> SessionItem | None:
        """
        Pop the next card and put it on display.

        Args:
            now: Current time, used to promote due deferred cards

        Returns:
            The card to show, or None when the session is finished
        """
        if self.current is not None:
            logger.critical("get_next called while {} is still displayed", self.current.id)
            raise StateInvariantError(f"Card {self.current.id} is still displayed")

        now = ensure_utc(now)
        self._promote(now)
        item = self._take()
        self.current = item

        if item is not None:
            logger.debug(
                "Serving {} ({}{}), remaining: {}",
                item.id,
                item.card_type.value,
                ", retry" if item.is_retry else "",
                self.counts(),
            )
        return item

    def peek(self, now: datetime) -> SessionItem | None:
        """The card get_next(now) would return, without changing anything."""
        now = ensure_utc(now)
        if self.learning_queue:
            return self.learning_queue[0]
        if self._deferred and self._deferred[0][0] <= now:
            return self._deferred[0][2]
        if self.review_queue and self.new_queue:
            if self.reviews_since_new < self.reviews_per_new:
                return self.review_queue[0]
            return self.new_queue[0]
        if self.review_queue:
            return self.review_queue[0]
        if self.new_queue:
            return self.new_queue[0]
        if self._deferred:
            return self._deferred[0][2]
        return None

    def complete_current(self) -> SessionItem:
        """Take the displayed card off screen once its rating is stored."""
        if self.current is None:
            raise StateInvariantError("No card is displayed")
        item = self.current
        self.current = None
        self._tracked.discard(item.id)
        return item

    def _promote(self, now: datetime) -> None:
        # Heap is ordered, so the first non-due entry ends the scan
        while self._deferred and self._deferred[0][0] <= now:
            _, _, item = heapq.heappop(self._deferred)
            self.learning_queue.append(item)
            logger.debug("Promoted {} from deferred to learning", item.id)

    def _take(self) -> SessionItem | None:
        if self.learning_queue:
            return self.learning_queue.popleft()

        if self.review_queue and self.new_queue:
            if self.reviews_since_new < self.reviews_per_new:
                self.reviews_since_new += 1
                return self.review_queue.popleft()
            self.reviews_since_new = 0
            return self.new_queue.popleft()

        if self.review_queue:
            return self.review_queue.popleft()
        if self.new_queue:
            self.reviews_since_new = 0
            return self.new_queue.popleft()

        # Only future-dated cards left: show them now rather than finish early
        if self._deferred:
            _, _, item = heapq.heappop(self._deferred)
            return item

        return None

    # =========================================================================
    # Counters & Introspection
    # =========================================================================

    def _displayed(self, card_type: CardType) -> int:
        return 1 if self.current is not None and self.current.card_type == card_type else 0

    @property
    def new_count(self) -> int:
        return len(self.new_queue) + self._displayed(CardType.NEW)

    @property
    def learning_count(self) -> int:
        return len(self.learning_queue) + len(self._deferred) + self._displayed(CardType.LEARNING)

    @property
    def review_count(self) -> int:
        return len(self.review_queue) + self._displayed(CardType.REVIEW)

    @property
    def remaining(self) -> int:
        return self.new_count + self.learning_count + self.review_count

    def counts(self) -> QueueCounts:
        return QueueCounts(new=self.new_count, learning=self.learning_count, review=self.review_count)

    @property
    def size(self) -> int:
        """Cards still in the session, including the displayed one."""
        return (
            len(self.new_queue)
            + len(self.review_queue)
            + len(self.learning_queue)
            + len(self._deferred)
            + (1 if self.current is not None else 0)
        )

    @property
    def deferred_count(self) -> int:
        return len(self._deferred)

    @property
    def next_deferred_at(self) -> datetime | None:
        return self._deferred[0][0] if self._deferred else None

    def deferred_items(self) -> list[SessionItem]:
        """Deferred cards in the order they will resurface."""
        return [entry[2] for entry in sorted(self._deferred)]

    def __contains__(self, card_id: object) -> bool:
        return card_id in self._tracked

    def __iter__(self) -> Iterator[SessionItem]:
        if self.current is not None:
            yield self.current
        yield from self.learning_queue
        yield from self.review_queue
        yield from self.new_queue
        yield from self.deferred_items()

    def check_invariants(self) -> None:
        """
        Verify no card appears twice across queues, heap and display.

        Raises:
            StateInvariantError: On any duplicate or bookkeeping mismatch
        """
        seen: set[str] = set()
        for item in self:
            if item.id in seen:
                logger.critical("Card {} found in two session structures", item.id)
                raise StateInvariantError(f"Card {item.id} found in two session structures")
            seen.add(item.id)
        if seen != self._tracked:
            logger.critical("Tracked ids diverged from queue contents")
            raise StateInvariantError("Tracked card ids do not match queue contents")
