"""
FSRS Memory Model.

Turns a recall rating into an updated memory state and due timestamp.

Implements the FSRS-5 DSR (Difficulty, Stability, Retrievability) model:
- New cards are seeded from rating-specific constants
- Learning/Relearning cards walk a minutes-scale step schedule
- Review cards get a days-scale interval derived from stability and the
  requested retention, optionally fuzzed to spread due dates

The model is a pure function of (state, rating, now). Fuzz is drawn from a
PRNG seeded with the review timestamp, so the same call gives the same result.

References:
    https://github.com/open-spaced-repetition/fsrs4anki
    https://github.com/open-spaced-repetition/py-fsrs
"""

from __future__ import annotations

import math
import random
from collections.abc import Iterable
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

if TYPE_CHECKING:
    from config import Settings

# =============================================================================
# Constants
# =============================================================================

DECAY = -0.5
FACTOR = 0.9 ** (1 / DECAY) - 1  # 19/81, so that R(S) == 0.9

MINUTES_PER_DAY = 1440

# FSRS-5 population defaults
DEFAULT_WEIGHTS: tuple[float, ...] = (
    0.40255, 1.18385, 3.173, 15.69105,   # w0-w3   initial stability per rating
    7.1949, 0.5345,                      # w4-w5   initial difficulty
    1.4604, 0.0046,                      # w6-w7   difficulty delta / mean reversion
    1.54575, 0.1192, 1.01925,            # w8-w10  recall stability
    1.9395, 0.11, 0.29605, 2.2698,       # w11-w14 forget stability
    0.2315, 2.9898,                      # w15-w16 hard penalty / easy bonus
    0.51655, 0.6621,                     # w17-w18 short-term stability
)

# (start_days, end_days, factor)
FUZZ_RANGES: tuple[tuple[float, float, float], ...] = (
    (2.5, 7.0, 0.15),
    (7.0, 20.0, 0.1),
    (20.0, math.inf, 0.05),
)


# =============================================================================
# Data Classes
# =============================================================================


class Rating(IntEnum):
    """Quality of recall reported by the learner."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4

    @classmethod
    def parse(cls, value: Any) -> Rating:
        """
        Coerce a rating from its name ("Again", "good", ...) or number (1-4).

        Raises:
            ValidationError: If the value is not a recognized rating
        """
        if isinstance(value, Rating):
            return value
        if isinstance(value, str):
            name = value.strip().upper()
            if name in cls.__members__:
                return cls[name]
            if name.isdigit():
                value = int(name)
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        raise ValidationError(f"Unrecognized rating: {value!r} (expected Again, Hard, Good or Easy)")

    @property
    def label(self) -> str:
        return self.name.capitalize()


class CardState(str, Enum):
    """Lifecycle state of a memory record."""

    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"


@dataclass
class MemoryState:
    """
    Memory record for one user x question.

    A missing record is equivalent to the default (New) instance.
    next_review_at is set for every state except New.
    """

    state: CardState = CardState.NEW
    stability: float = 0.0  # Days until recall probability falls to 90%
    difficulty: float = 0.0  # 1 (easy) .. 10 (hard)
    elapsed_days: float = 0.0  # Days between the last two reviews
    scheduled_days: float = 0.0  # Interval assigned at the last review
    lapses: int = 0
    repetitions: int = 0
    step: int = 0  # Index into learning/relearning steps
    last_reviewed_at: datetime | None = None
    next_review_at: datetime | None = None

    @property
    def is_new(self) -> bool:
        return self.state == CardState.NEW

    @property
    def is_learning(self) -> bool:
        """Learning or relearning (minutes-scale steps)."""
        return self.state in (CardState.LEARNING, CardState.RELEARNING)

    def due_in(self, now: datetime) -> timedelta | None:
        """Time until this record is due (negative when overdue), None for new."""
        if self.next_review_at is None:
            return None
        return self.next_review_at - ensure_utc(now)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> MemoryState:
        """
        Build a state from a stored mapping.

        Missing or null fields fall back to New-card defaults.
        """
        data = data or {}
        raw_state = data.get("state") or CardState.NEW.value
        try:
            state = CardState(raw_state.value if isinstance(raw_state, CardState) else str(raw_state).lower())
        except ValueError as e:
            raise ValidationError(f"Unknown card state: {raw_state!r}") from e

        def _num(key: str, cast: type) -> Any:
            value = data.get(key)
            return cast(0) if value is None else cast(value)

        last = data.get("last_reviewed_at")
        nxt = data.get("next_review_at")
        return cls(
            state=state,
            stability=_num("stability", float),
            difficulty=_num("difficulty", float),
            elapsed_days=_num("elapsed_days", float),
            scheduled_days=_num("scheduled_days", float),
            lapses=_num("lapses", int),
            repetitions=_num("repetitions", int),
            step=_num("step", int),
            last_reviewed_at=_parse_dt(last),
            next_review_at=_parse_dt(nxt),
        )


# =============================================================================
# Scheduler Parameters
# =============================================================================


def validate_steps(steps: Iterable[float]) -> tuple[float, ...]:
    """
    Check a learning/relearning step list (minutes).

    Every step must be positive and shorter than one day.
    """
    steps = tuple(float(s) for s in steps)
    if not steps:
        raise ValueError("At least one step is required")
    for step in steps:
        if step <= 0:
            raise ValueError(f"Step {step:g} minutes must be positive")
        if step >= MINUTES_PER_DAY:
            raise ValueError(
                f"Step {step:g} minutes exceeds 1 day ({MINUTES_PER_DAY} minutes). "
                "All steps must be < 24 hours."
            )
    return steps


class SchedulerParameters(BaseModel):
    """FSRS preset: weights, retention target and step schedule."""

    model_config = ConfigDict(frozen=True)

    w: tuple[float, ...] = Field(default=DEFAULT_WEIGHTS, description="19 FSRS weights")
    request_retention: float = Field(default=0.9, ge=0.7, le=0.99)
    maximum_interval: int = Field(default=36500, ge=1, description="Days")
    enable_fuzz: bool = True
    learning_steps: tuple[float, ...] = Field(default=(1.0, 10.0), description="Minutes")
    relearning_steps: tuple[float, ...] = Field(default=(10.0,), description="Minutes")
    graduating_interval: int = Field(default=1, ge=1, description="Days")
    easy_interval: int = Field(default=4, ge=1, description="Days")

    @field_validator("w")
    @classmethod
    def _check_weights(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        if len(v) != len(DEFAULT_WEIGHTS):
            raise ValueError(f"FSRS parameters must contain exactly {len(DEFAULT_WEIGHTS)} weights")
        return v

    @field_validator("learning_steps", "relearning_steps")
    @classmethod
    def _check_steps(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        return validate_steps(v)

    @classmethod
    def build(cls, **kwargs: Any) -> SchedulerParameters:
        """Construct a preset, reporting bad values as ValidationError."""
        try:
            return cls(**kwargs)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid scheduler parameters: {e}") from e

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerParameters:
        """Build the preset from application settings."""
        kwargs: dict[str, Any] = {
            "request_retention": settings.fsrs_request_retention,
            "maximum_interval": settings.fsrs_maximum_interval,
            "enable_fuzz": settings.fsrs_enable_fuzz,
            "learning_steps": settings.fsrs_learning_steps,
            "relearning_steps": settings.fsrs_relearning_steps,
            "graduating_interval": settings.fsrs_graduating_interval,
            "easy_interval": settings.fsrs_easy_interval,
        }
        if settings.fsrs_weights:
            kwargs["w"] = settings.fsrs_weights
        return cls.build(**kwargs)


# =============================================================================
# Memory Model
# =============================================================================


class MemoryModel:
    """
    FSRS scheduler for a single memory record.

    State machine:
    - New + any rating -> Learning (seeded stability/difficulty)
    - Learning/Relearning + Again -> same state, first step
    - Learning/Relearning + Hard -> same state, same step (hard delay)
    - Learning/Relearning + Good -> next step, or Review once steps run out
    - Learning/Relearning + Easy -> Review
    - Review + Again -> Relearning (lapse)
    - Review + Hard/Good/Easy -> Review with a longer interval
    """

    def __init__(self, params: SchedulerParameters | None = None):
        self.params = params or SchedulerParameters()
        self.w = self.params.w

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def advance(
        self,
        state: MemoryState | None,
        rating: Rating | str | int,
        now: datetime,
    ) -> MemoryState:
        """
        Apply one rating to a memory state.

        Args:
            state: Current state, or None for a never-seen question
            rating: Again/Hard/Good/Easy (name or 1-4)
            now: Review timestamp (naive values are taken as UTC)

        Returns:
            New MemoryState; the input is not modified

        Raises:
            ValidationError: If the rating is not recognized
        """
        rating = Rating.parse(rating)
        now = ensure_utc(now)

        if state is None or state.is_new or state.stability <= 0 or state.difficulty <= 0:
            new_state = self._first_review(state, rating, now)
        else:
            new_state = self._next_review(state, rating, now)

        logger.debug(
            "FSRS {} -> {} via {}: S={:.3f} D={:.3f} due in {}",
            state.state.value if state else CardState.NEW.value,
            new_state.state.value,
            rating.label,
            new_state.stability,
            new_state.difficulty,
            format_interval(new_state.next_review_at - now),
        )
        return new_state

    def preview(self, state: MemoryState | None, now: datetime) -> dict[Rating, MemoryState]:
        """Outcome of every rating, e.g. for labelling answer buttons."""
        return {rating: self.advance(state, rating, now) for rating in Rating}

    def retrievability(self, state: MemoryState | None, now: datetime) -> float:
        """Probability of recall right now (0 for new cards)."""
        if state is None or state.is_new or state.stability <= 0:
            return 0.0
        if state.last_reviewed_at is None:
            return 1.0
        return self._forgetting_curve(_days_between(state.last_reviewed_at, now), state.stability)

    def next_interval(self, stability: float) -> int:
        """Days until recall probability falls to the requested retention."""
        ivl = stability / FACTOR * (self.params.request_retention ** (1 / DECAY) - 1)
        return int(_clamp(round(ivl), 1, self.params.maximum_interval))

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _first_review(self, prior: MemoryState | None, rating: Rating, now: datetime) -> MemoryState:
        steps = self.params.learning_steps
        if rating == Rating.AGAIN:
            step, minutes = 0, steps[0]
        elif rating == Rating.HARD:
            step, minutes = 0, self._hard_delay(steps, 0)
        elif rating == Rating.GOOD:
            step = min(1, len(steps) - 1)
            minutes = steps[step]
        else:
            step = len(steps) - 1
            minutes = steps[step]

        prior = prior or MemoryState()
        return MemoryState(
            state=CardState.LEARNING,
            stability=self._initial_stability(rating),
            difficulty=self._initial_difficulty(rating),
            elapsed_days=0.0,
            scheduled_days=minutes / MINUTES_PER_DAY,
            lapses=prior.lapses,
            repetitions=prior.repetitions + 1,
            step=step,
            last_reviewed_at=now,
            next_review_at=now + timedelta(minutes=minutes),
        )

    def _next_review(self, state: MemoryState, rating: Rating, now: datetime) -> MemoryState:
        elapsed = _days_between(state.last_reviewed_at, now) if state.last_reviewed_at else 0.0

        if elapsed < 1:
            stability = self._short_term_stability(state.stability, rating)
        else:
            r = self._forgetting_curve(elapsed, state.stability)
            if rating == Rating.AGAIN:
                stability = self._forget_stability(state.difficulty, state.stability, r)
            else:
                stability = self._recall_stability(state.difficulty, state.stability, r, rating)
        if not state.is_learning and rating != Rating.AGAIN:
            # A successful review never shrinks stability, even the same day
            stability = max(stability, state.stability)
        difficulty = self._next_difficulty(state.difficulty, rating)

        updated = replace(
            state,
            stability=stability,
            difficulty=difficulty,
            elapsed_days=elapsed,
            repetitions=state.repetitions + 1,
            last_reviewed_at=now,
        )

        if state.is_learning:
            return self._step(updated, rating, now)
        return self._review(updated, rating, now)

    def _step(self, state: MemoryState, rating: Rating, now: datetime) -> MemoryState:
        """Walk the learning or relearning step schedule."""
        steps = (
            self.params.learning_steps
            if state.state == CardState.LEARNING
            else self.params.relearning_steps
        )
        step = min(max(state.step, 0), len(steps) - 1)

        if rating == Rating.AGAIN:
            return self._at_step(state, 0, steps[0], now)
        if rating == Rating.HARD:
            return self._at_step(state, step, self._hard_delay(steps, step), now)
        if rating == Rating.GOOD and step + 1 < len(steps):
            return self._at_step(state, step + 1, steps[step + 1], now)
        return self._graduate(state, rating, now)

    def _review(self, state: MemoryState, rating: Rating, now: datetime) -> MemoryState:
        if rating == Rating.AGAIN:
            minutes = self.params.relearning_steps[0]
            return replace(
                state,
                state=CardState.RELEARNING,
                lapses=state.lapses + 1,
                step=0,
                scheduled_days=minutes / MINUTES_PER_DAY,
                next_review_at=now + timedelta(minutes=minutes),
            )

        days = self._fuzz(self.next_interval(state.stability), state, now)
        return replace(
            state,
            state=CardState.REVIEW,
            step=0,
            scheduled_days=float(days),
            next_review_at=now + timedelta(days=days),
        )

    def _graduate(self, state: MemoryState, rating: Rating, now: datetime) -> MemoryState:
        floor = self.params.easy_interval if rating == Rating.EASY else self.params.graduating_interval
        days = self._fuzz(self.next_interval(state.stability), state, now)
        days = int(min(max(days, floor), self.params.maximum_interval))
        return replace(
            state,
            state=CardState.REVIEW,
            step=0,
            scheduled_days=float(days),
            next_review_at=now + timedelta(days=days),
        )

    @staticmethod
    def _at_step(state: MemoryState, step: int, minutes: float, now: datetime) -> MemoryState:
        return replace(
            state,
            step=step,
            scheduled_days=minutes / MINUTES_PER_DAY,
            next_review_at=now + timedelta(minutes=minutes),
        )

    @staticmethod
    def _hard_delay(steps: tuple[float, ...], step: int) -> float:
        if step == 0 and len(steps) == 1:
            return steps[0] * 1.5
        if step == 0:
            return (steps[0] + steps[1]) / 2
        return steps[step]

    # -------------------------------------------------------------------------
    # FSRS formulas
    # -------------------------------------------------------------------------

    def _initial_stability(self, rating: Rating) -> float:
        return max(self.w[rating - 1], 0.01)

    def _initial_difficulty(self, rating: Rating) -> float:
        d = self.w[4] - math.exp(self.w[5] * (rating - 1)) + 1
        return _clamp(d, 1.0, 10.0)

    @staticmethod
    def _forgetting_curve(elapsed_days: float, stability: float) -> float:
        return (1 + FACTOR * elapsed_days / stability) ** DECAY

    def _next_difficulty(self, d: float, rating: Rating) -> float:
        # Linear damping towards 10, then mean reversion towards D0(Easy)
        delta = -self.w[6] * (rating - 3)
        damped = d + delta * (10.0 - d) / 9.0
        reverted = self.w[7] * self._initial_difficulty(Rating.EASY) + (1 - self.w[7]) * damped
        if rating == Rating.AGAIN:
            # Mean reversion must not let a lapse make the card easier
            reverted = max(reverted, d)
        return _clamp(reverted, 1.0, 10.0)

    def _recall_stability(self, d: float, s: float, r: float, rating: Rating) -> float:
        hard_penalty = self.w[15] if rating == Rating.HARD else 1.0
        easy_bonus = self.w[16] if rating == Rating.EASY else 1.0
        return s * (
            1
            + math.exp(self.w[8])
            * (11 - d)
            * s ** -self.w[9]
            * (math.exp((1 - r) * self.w[10]) - 1)
            * hard_penalty
            * easy_bonus
        )

    def _forget_stability(self, d: float, s: float, r: float) -> float:
        long_term = (
            self.w[11]
            * d ** -self.w[12]
            * ((s + 1) ** self.w[13] - 1)
            * math.exp((1 - r) * self.w[14])
        )
        short_term = s / math.exp(self.w[17] * self.w[18])
        return max(min(long_term, short_term), 0.01)

    def _short_term_stability(self, s: float, rating: Rating) -> float:
        increase = math.exp(self.w[17] * (rating - 3 + self.w[18]))
        if rating >= Rating.GOOD:
            increase = max(increase, 1.0)
        return max(s * increase, 0.01)

    def _fuzz(self, days: int, state: MemoryState, now: datetime) -> int:
        """Spread an interval over a small window to avoid due-date clustering."""
        if not self.params.enable_fuzz or days < 2.5:
            return days

        delta = 1.0
        for start, end, factor in FUZZ_RANGES:
            delta += factor * max(min(days, end) - start, 0.0)

        max_ivl = min(int(round(days + delta)), self.params.maximum_interval)
        min_ivl = min(max(2, int(round(days - delta))), max_ivl)

        seed = f"{int(now.timestamp() * 1000)}_{state.repetitions}_{state.difficulty * state.stability}"
        rng = random.Random(seed)
        fuzzed = int(rng.random() * (max_ivl - min_ivl + 1) + min_ivl)
        return min(fuzzed, max_ivl)


# =============================================================================
# Helpers
# =============================================================================


def ensure_utc(dt: datetime) -> datetime:
    """Return an aware UTC datetime (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_interval(delta: timedelta) -> str:
    """
    Human-readable interval label.

    Examples: "<1m", "<10m", "3h", "4d"
    """
    seconds = delta.total_seconds()
    minutes = math.floor(seconds / 60)
    hours = math.floor(seconds / 3600)
    days = math.floor(seconds / 86400)

    if minutes < 1:
        return "<1m"
    if minutes < 60:
        return f"<{minutes}m"
    if hours < 24:
        return f"{hours}h"
    return f"{days}d"


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _days_between(start: datetime, end: datetime) -> float:
    return max((ensure_utc(end) - ensure_utc(start)).total_seconds() / 86400.0, 0.0)


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).replace("Z", "+00:00")
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp: {value!r}") from e
