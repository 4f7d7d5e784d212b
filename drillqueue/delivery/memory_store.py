"""
Memory Store: persisted FSRS state per user x question.

Provides:
- read_many / upsert of MemoryState records (one row per user x question)
- Review log written in the same transaction as the upsert
- Aggregate stats for the CLI

Backed by SQLAlchemy, so any database URL works; the default is a local
SQLite file at ~/.drillqueue/state.db.
"""

from __future__ import annotations

from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from loguru import logger
from sqlalchemy import (
    DateTime,
    Engine,
    Float,
    Index,
    Integer,
    String,
    create_engine,
    func,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import PersistenceError, ValidationError
from .memory_model import CardState, MemoryState, Rating, ensure_utc

DEFAULT_DATABASE_URL = "sqlite:///~/.drillqueue/state.db"

# SQLite caps bound parameters per statement
_READ_CHUNK = 500

# =============================================================================
# ORM Models
# =============================================================================


class Base(DeclarativeBase):
    pass


class MemoryStateRecord(Base):
    """One FSRS memory record per user x question."""

    __tablename__ = "memory_state"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    question_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(String(16), default=CardState.NEW.value)
    stability: Mapped[float] = mapped_column(Float, default=0.0)
    difficulty: Mapped[float] = mapped_column(Float, default=0.0)
    elapsed_days: Mapped[float] = mapped_column(Float, default=0.0)
    scheduled_days: Mapped[float] = mapped_column(Float, default=0.0)
    lapses: Mapped[int] = mapped_column(Integer, default=0)
    repetitions: Mapped[int] = mapped_column(Integer, default=0)
    step: Mapped[int] = mapped_column(Integer, default=0)
    last_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_review_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("idx_memory_state_due", "user_id", "next_review_at"),)

    def to_state(self) -> MemoryState:
        return MemoryState(
            state=CardState(self.state),
            stability=self.stability,
            difficulty=self.difficulty,
            elapsed_days=self.elapsed_days,
            scheduled_days=self.scheduled_days,
            lapses=self.lapses,
            repetitions=self.repetitions,
            step=self.step,
            last_reviewed_at=_from_db(self.last_reviewed_at),
            next_review_at=_from_db(self.next_review_at),
        )

    def apply(self, state: MemoryState) -> None:
        self.state = state.state.value
        self.stability = state.stability
        self.difficulty = state.difficulty
        self.elapsed_days = state.elapsed_days
        self.scheduled_days = state.scheduled_days
        self.lapses = state.lapses
        self.repetitions = state.repetitions
        self.step = state.step
        self.last_reviewed_at = _to_db(state.last_reviewed_at)
        self.next_review_at = _to_db(state.next_review_at)


class ReviewLogRecord(Base):
    """A single rating event."""

    __tablename__ = "review_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64))
    question_id: Mapped[str] = mapped_column(String(64))
    rating: Mapped[int] = mapped_column(Integer)
    state: Mapped[str] = mapped_column(String(16))
    reviewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    elapsed_days: Mapped[float] = mapped_column(Float, default=0.0)
    scheduled_days: Mapped[float] = mapped_column(Float, default=0.0)
    stability: Mapped[float] = mapped_column(Float, default=0.0)
    difficulty: Mapped[float] = mapped_column(Float, default=0.0)
    review_duration_ms: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (Index("idx_review_log_question", "user_id", "question_id"),)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class ReviewLogEntry:
    """A rating event; state is the card state before the rating."""

    rating: Rating
    state: CardState
    reviewed_at: datetime
    elapsed_days: float = 0.0
    scheduled_days: float = 0.0
    stability: float = 0.0
    difficulty: float = 0.0
    review_duration_ms: int = 0


class MemoryStore(Protocol):
    """Persistence boundary used by the session controller."""

    def read_many(self, user_id: str, question_ids: Iterable[str]) -> dict[str, MemoryState]:
        ...

    def upsert(
        self,
        user_id: str,
        question_id: str,
        state: MemoryState,
        review: ReviewLogEntry | None = None,
    ) -> None:
        ...


# =============================================================================
# SQL Store
# =============================================================================


class SqlMemoryStore:
    """
    SQLAlchemy-backed MemoryStore.

    Each upsert (plus its review-log row) runs in one transaction, so a
    failed write leaves nothing behind.
    """

    def __init__(self, database_url: str | None = None, engine: Engine | None = None):
        """
        Initialize the store and create tables if needed.

        Args:
            database_url: SQLAlchemy URL (default: ~/.drillqueue/state.db)
            engine: Pre-built engine (takes precedence over database_url)
        """
        if engine is None:
            try:
                url = _prepare_url(database_url or DEFAULT_DATABASE_URL)
                engine = create_engine(url, pool_pre_ping=True)
            except (OSError, SQLAlchemyError) as e:
                raise PersistenceError(f"Could not open memory store: {e}") from e
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not initialize memory store: {e}") from e

        logger.info(f"MemoryStore initialized at {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Transactional scope; database errors surface as PersistenceError."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:  # Intentionally broad - rollback on any error before re-raising
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Memory State Operations
    # =========================================================================

    def read_many(self, user_id: str, question_ids: Iterable[str]) -> dict[str, MemoryState]:
        """
        Fetch memory records for many questions.

        Args:
            user_id: Learner id
            question_ids: Questions to look up

        Returns:
            question_id -> MemoryState; questions never rated are absent
        """
        _check_id(user_id, "user_id")
        ids = list(dict.fromkeys(question_ids))
        for qid in ids:
            _check_id(qid, "question_id")

        found: dict[str, MemoryState] = {}
        with self.session_scope() as session:
            for start in range(0, len(ids), _READ_CHUNK):
                chunk = ids[start : start + _READ_CHUNK]
                rows = session.scalars(
                    select(MemoryStateRecord).where(
                        MemoryStateRecord.user_id == user_id,
                        MemoryStateRecord.question_id.in_(chunk),
                    )
                )
                for row in rows:
                    found[row.question_id] = row.to_state()
        return found

    def get(self, user_id: str, question_id: str) -> MemoryState | None:
        """Single-record convenience wrapper around read_many."""
        return self.read_many(user_id, [question_id]).get(question_id)

    def upsert(
        self,
        user_id: str,
        question_id: str,
        state: MemoryState,
        review: ReviewLogEntry | None = None,
    ) -> None:
        """
        Insert or replace the memory record, logging the review alongside.

        Raises:
            PersistenceError: If the write did not commit
        """
        _check_id(user_id, "user_id")
        _check_id(question_id, "question_id")

        with self.session_scope() as session:
            record = session.get(MemoryStateRecord, (user_id, question_id))
            if record is None:
                record = MemoryStateRecord(user_id=user_id, question_id=question_id)
                session.add(record)
            record.apply(state)

            if review is not None:
                session.add(
                    ReviewLogRecord(
                        user_id=user_id,
                        question_id=question_id,
                        rating=int(review.rating),
                        state=review.state.value,
                        reviewed_at=_to_db(review.reviewed_at),
                        elapsed_days=review.elapsed_days,
                        scheduled_days=review.scheduled_days,
                        stability=review.stability,
                        difficulty=review.difficulty,
                        review_duration_ms=review.review_duration_ms,
                    )
                )

        logger.debug(
            "Stored {}/{}: {} due {}",
            user_id,
            question_id,
            state.state.value,
            state.next_review_at.isoformat() if state.next_review_at else "-",
        )

    # =========================================================================
    # Review Log Operations
    # =========================================================================

    def review_history(self, user_id: str, question_id: str, limit: int = 10) -> list[ReviewLogEntry]:
        """Rating events for one question, most recent first."""
        with self.session_scope() as session:
            rows = session.scalars(
                select(ReviewLogRecord)
                .where(
                    ReviewLogRecord.user_id == user_id,
                    ReviewLogRecord.question_id == question_id,
                )
                .order_by(ReviewLogRecord.reviewed_at.desc(), ReviewLogRecord.id.desc())
                .limit(limit)
            )
            return [
                ReviewLogEntry(
                    rating=Rating(row.rating),
                    state=CardState(row.state),
                    reviewed_at=_from_db(row.reviewed_at),
                    elapsed_days=row.elapsed_days,
                    scheduled_days=row.scheduled_days,
                    stability=row.stability,
                    difficulty=row.difficulty,
                    review_duration_ms=row.review_duration_ms,
                )
                for row in rows
            ]

    # =========================================================================
    # Stats & Analytics
    # =========================================================================

    def get_stats(self, user_id: str, now: datetime) -> dict:
        """
        Aggregate learning statistics for a learner.

        Returns:
            Dictionary with counts per state, due count, review totals
            and recent retention (share of non-Again ratings, last 100)
        """
        now_db = _to_db(ensure_utc(now))
        with self.session_scope() as session:
            by_state = {state.value: 0 for state in CardState if state != CardState.NEW}
            for state, count in session.execute(
                select(MemoryStateRecord.state, func.count())
                .where(MemoryStateRecord.user_id == user_id)
                .group_by(MemoryStateRecord.state)
            ):
                by_state[state] = count

            due = session.scalar(
                select(func.count())
                .select_from(MemoryStateRecord)
                .where(
                    MemoryStateRecord.user_id == user_id,
                    MemoryStateRecord.next_review_at <= now_db,
                )
            )
            lapses = session.scalar(
                select(func.coalesce(func.sum(MemoryStateRecord.lapses), 0)).where(
                    MemoryStateRecord.user_id == user_id
                )
            )
            total_reviews = session.scalar(
                select(func.count()).select_from(ReviewLogRecord).where(ReviewLogRecord.user_id == user_id)
            )
            recent = list(
                session.scalars(
                    select(ReviewLogRecord.rating)
                    .where(ReviewLogRecord.user_id == user_id)
                    .order_by(ReviewLogRecord.reviewed_at.desc(), ReviewLogRecord.id.desc())
                    .limit(100)
                )
            )

        retention = (
            sum(1 for rating in recent if rating != Rating.AGAIN) * 100.0 / len(recent) if recent else 0.0
        )
        return {
            "total_tracked": sum(by_state.values()),
            "by_state": by_state,
            "due_now": due or 0,
            "total_lapses": lapses or 0,
            "total_reviews": total_reviews or 0,
            "retention_rate_percent": round(retention, 1),
        }

    def close(self) -> None:
        """Dispose of pooled connections."""
        self.engine.dispose()


# =============================================================================
# Helpers
# =============================================================================


def _prepare_url(url: str) -> str:
    """Expand ~ in SQLite file URLs and make sure the parent directory exists."""
    prefix = "sqlite:///"
    if not url.startswith(prefix) or url in (prefix, "sqlite:///:memory:"):
        return url
    path = Path(url[len(prefix) :]).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"{prefix}{path}"


def _check_id(value: str, name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Malformed {name}: {value!r}")


def _to_db(value: datetime | None) -> datetime | None:
    # Stored as naive UTC so every backend round-trips the same value
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def _from_db(value: datetime | None) -> datetime | None:
    return None if value is None else ensure_utc(value)
