"""
Study Session Controller.

Entry point for a drill session:
- start_session: resolve a scope, classify cards against stored memory,
  seed the queue manager and serve the first card
- submit_rating: schedule the displayed card with the memory model,
  persist it, re-queue it if it comes due again soon, serve the next card

Persistence is pessimistic: the store write must succeed before any queue,
counter or display change. A failed write leaves the session exactly as it
was, so the same rating can be submitted again.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger

from .errors import NotFoundError, PersistenceError, ValidationError
from .memory_model import CardState, MemoryModel, MemoryState, Rating, ensure_utc, utcnow
from .memory_store import MemoryStore, ReviewLogEntry
from .queue_manager import CardType, QueueCounts, SessionItem, SessionQueueManager

if TYPE_CHECKING:
    from config import Settings

    from .question_bank import CandidatePoolResolver, Question, StudyScope

# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class SessionConfig:
    """Session tuning knobs."""

    lookahead_minutes: float = 20.0  # Pull in cards due within this window
    reviews_per_new: int = 2
    session_limit: int | None = 20  # None = no cap

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionConfig:
        return cls(
            lookahead_minutes=settings.lookahead_minutes,
            reviews_per_new=settings.reviews_per_new,
            session_limit=settings.session_limit,
        )


@dataclass(frozen=True)
class SessionTotals:
    """Card counts fixed at session start."""

    new: int = 0
    review: int = 0
    learning: int = 0

    @property
    def total(self) -> int:
        return self.new + self.review + self.learning


@dataclass
class SessionPlan:
    """Classified candidates for a scope, after the limit is applied."""

    new: list[SessionItem]
    learning: list[SessionItem]
    review: list[SessionItem]
    excluded: int = 0  # Candidates not due within the lookahead window

    @property
    def size(self) -> int:
        return len(self.new) + len(self.learning) + len(self.review)


@dataclass
class SessionStart:
    first_card: SessionItem | None
    total_new: int
    total_review: int
    total_learning: int
    finished: bool
    counts: QueueCounts


@dataclass
class RatingOutcome:
    next_card: SessionItem | None
    finished: bool
    counts: QueueCounts
    answered_count: int
    memory_state: MemoryState


# =============================================================================
# Controller
# =============================================================================


class StudySessionController:
    """
    Drives one learner's study session.

    Example:
        controller = StudySessionController("local", bank, store)
        start = controller.start_session(StudyScope(topic_id="t1"))
        outcome = controller.submit_rating(start.first_card.id, "Good")
    """

    def __init__(
        self,
        user_id: str,
        resolver: CandidatePoolResolver,
        store: MemoryStore,
        model: MemoryModel | None = None,
        config: SessionConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the controller.

        Args:
            user_id: Learner whose memory records are read and written
            resolver: Source of candidate questions
            store: Memory store (read at start, written on every rating)
            model: FSRS model (default parameters if None)
            config: Session settings (defaults if None)
            clock: Returns the current time; injectable for tests
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError(f"Malformed user_id: {user_id!r}")

        self.user_id = user_id
        self.resolver = resolver
        self.store = store
        self.model = model or MemoryModel()
        self.config = config or SessionConfig()
        self.clock = clock

        self.queue = SessionQueueManager(reviews_per_new=self.config.reviews_per_new)
        self._totals = SessionTotals()
        self._answered = 0
        self.scope: StudyScope | None = None

    # =========================================================================
    # Session Lifecycle
    # =========================================================================

    def plan_session(
        self,
        scope: StudyScope,
        limit: int | None = None,
        kinds: Iterable[str] | None = None,
    ) -> SessionPlan:
        """
        Classify a scope's candidates without starting a session.

        Args:
            scope: Topic, subject or space to study
            limit: Max cards (default: config.session_limit)
            kinds: Allowed question kinds (default: resolver's default)

        Returns:
            SessionPlan with learning and review ordered by due time and
            new cards in resolver order
        """
        if limit is None:
            limit = self.config.session_limit
        if limit is not None and limit < 1:
            raise ValidationError(f"Session limit must be >= 1, got {limit}")

        now = self._now()
        horizon = now + timedelta(minutes=self.config.lookahead_minutes)

        # Duplicate ids from the resolver: first occurrence wins
        unique: dict[str, Question] = {}
        for question in self.resolver.resolve(scope, kinds):
            unique.setdefault(question.id, question)
        questions = list(unique.values())
        states = self.store.read_many(self.user_id, [q.id for q in questions])

        new: list[SessionItem] = []
        learning: list[SessionItem] = []
        review: list[SessionItem] = []
        excluded = 0

        for question in questions:
            state = states.get(question.id)
            if _is_unscheduled(state):
                # Partial records are reseeded by the model like a new card
                new.append(SessionItem(question, state, CardType.NEW))
            elif state.next_review_at is not None and state.next_review_at <= horizon:
                if state.is_learning:
                    learning.append(SessionItem(question, state, CardType.LEARNING))
                else:
                    review.append(SessionItem(question, state, CardType.REVIEW))
            else:
                excluded += 1

        learning.sort(key=_due_key)
        review.sort(key=_due_key)

        if limit is not None:
            learning = learning[:limit]
            review = review[: limit - len(learning)]
            new = new[: limit - len(learning) - len(review)]

        logger.debug(
            "Planned {}: {} learning, {} review, {} new, {} not due",
            scope,
            len(learning),
            len(review),
            len(new),
            excluded,
        )
        return SessionPlan(new=new, learning=learning, review=review, excluded=excluded)

    def start_session(
        self,
        scope: StudyScope,
        limit: int | None = None,
        kinds: Iterable[str] | None = None,
    ) -> SessionStart:
        """
        Assemble the queues for a scope and serve the first card.

        Starting again discards the previous session.

        Raises:
            ValidationError: On a bad limit
            PersistenceError: If memory records could not be read
        """
        plan = self.plan_session(scope, limit=limit, kinds=kinds)

        self.queue = SessionQueueManager(reviews_per_new=self.config.reviews_per_new)
        self.queue.seed(new=plan.new, learning=plan.learning, review=plan.review)
        self._totals = SessionTotals(
            new=len(plan.new),
            review=len(plan.review),
            learning=len(plan.learning),
        )
        self._answered = 0
        self.scope = scope

        first = self.queue.get_next(self._now())

        logger.info(
            "Session started for {} on {}: {} new, {} review, {} learning",
            self.user_id,
            scope,
            self._totals.new,
            self._totals.review,
            self._totals.learning,
        )
        if first is None:
            logger.info("Nothing to study for {}", scope)

        return SessionStart(
            first_card=first,
            total_new=self._totals.new,
            total_review=self._totals.review,
            total_learning=self._totals.learning,
            finished=first is None,
            counts=self.queue.counts(),
        )

    def submit_rating(
        self,
        card_id: str,
        rating: Rating | str | int,
        review_duration_ms: int = 0,
    ) -> RatingOutcome:
        """
        Record a rating for the displayed card and serve the next one.

        Args:
            card_id: Id of the displayed card
            rating: Again/Hard/Good/Easy (name or 1-4)
            review_duration_ms: Time spent on the card

        Returns:
            RatingOutcome with the next card (None when finished)

        Raises:
            NotFoundError: If no card is displayed
            ValidationError: On a mismatched card id or bad rating
            PersistenceError: If the store write failed (session unchanged)
        """
        item = self.queue.current
        if item is None:
            raise NotFoundError("No card is displayed")
        if card_id != item.id:
            raise ValidationError(f"Card {card_id} is not the displayed card ({item.id})")
        rating = Rating.parse(rating)

        now = self._now()
        new_state = self.model.advance(item.memory_state, rating, now)
        prior = item.memory_state.state if item.memory_state else CardState.NEW

        entry = ReviewLogEntry(
            rating=rating,
            state=prior,
            reviewed_at=now,
            elapsed_days=new_state.elapsed_days,
            scheduled_days=new_state.scheduled_days,
            stability=new_state.stability,
            difficulty=new_state.difficulty,
            review_duration_ms=max(int(review_duration_ms), 0),
        )
        try:
            self.store.upsert(self.user_id, item.id, new_state, entry)
        except PersistenceError as e:
            logger.warning("Could not save rating for {}: {}", item.id, e)
            raise

        self.queue.complete_current()
        self._requeue(item, new_state, now)
        self._answered += 1

        next_card = self.queue.get_next(now)
        if next_card is None:
            logger.info(
                "Session finished for {} on {}: {} answered",
                self.user_id,
                self.scope,
                self._answered,
            )

        return RatingOutcome(
            next_card=next_card,
            finished=next_card is None,
            counts=self.queue.counts(),
            answered_count=self._answered,
            memory_state=new_state,
        )

    def _requeue(self, item: SessionItem, state: MemoryState, now: datetime) -> None:
        """Defer the card if it comes due within the lookahead window."""
        if state.next_review_at is None:
            return
        diff_minutes = (state.next_review_at - now).total_seconds() / 60

        if diff_minutes <= 0:
            logger.warning(
                "Dropping {} from session: scheduled due time {} is not in the future",
                item.id,
                state.next_review_at.isoformat(),
            )
            return
        if diff_minutes > self.config.lookahead_minutes:
            logger.debug("{} leaves session, due in {:.1f} min", item.id, diff_minutes)
            return

        self.queue.defer(
            SessionItem(
                question=item.question,
                memory_state=state,
                card_type=CardType.LEARNING if state.is_learning else CardType.REVIEW,
                is_retry=True,
                show_after=state.next_review_at,
            )
        )

    # =========================================================================
    # Session State
    # =========================================================================

    @property
    def current_card(self) -> SessionItem | None:
        return self.queue.current

    @property
    def counts(self) -> QueueCounts:
        return self.queue.counts()

    @property
    def answered_count(self) -> int:
        return self._answered

    @property
    def is_finished(self) -> bool:
        return self.queue.size == 0

    @property
    def totals(self) -> SessionTotals:
        return self._totals

    @property
    def progress(self) -> float:
        """Answered share of everything seen or still queued (0.0 - 1.0)."""
        seen = self._answered + self.queue.size
        return self._answered / seen if seen else 0.0

    def _now(self) -> datetime:
        return ensure_utc(self.clock())


def _is_unscheduled(state: MemoryState | None) -> bool:
    """New, or missing the fields needed to schedule it."""
    return (
        state is None
        or state.is_new
        or state.next_review_at is None
        or state.stability <= 0
        or state.difficulty <= 0
    )


def _due_key(item: SessionItem) -> datetime:
    return item.memory_state.next_review_at  # type: ignore[union-attr]
