"""
drillqueue delivery layer.

Everything needed to run a study session, independent of the terminal UI.

Components:
- QuestionBank: JSON loading and scope resolution
- MemoryModel: FSRS rating -> next memory state
- SessionQueueManager: learning / review / new queues plus deferred heap
- StudySessionController: session assembly and rating submission
- SqlMemoryStore: SQLAlchemy persistence with review log
"""

from .errors import (
    DrillQueueError,
    NotFoundError,
    PersistenceError,
    StateInvariantError,
    ValidationError,
)
from .memory_model import CardState, MemoryModel, MemoryState, Rating, SchedulerParameters
from .memory_store import MemoryStore, ReviewLogEntry, SqlMemoryStore
from .question_bank import CandidatePoolResolver, Question, QuestionBank, StudyScope
from .queue_manager import CardType, QueueCounts, SessionItem, SessionQueueManager
from .session_controller import (
    RatingOutcome,
    SessionConfig,
    SessionStart,
    StudySessionController,
)

__all__ = [
    # Errors
    "DrillQueueError",
    "ValidationError",
    "NotFoundError",
    "PersistenceError",
    "StateInvariantError",
    # Questions
    "Question",
    "QuestionBank",
    "StudyScope",
    "CandidatePoolResolver",
    # Scheduling
    "MemoryModel",
    "MemoryState",
    "CardState",
    "Rating",
    "SchedulerParameters",
    # Persistence
    "MemoryStore",
    "SqlMemoryStore",
    "ReviewLogEntry",
    # Session
    "SessionQueueManager",
    "SessionItem",
    "CardType",
    "QueueCounts",
    "StudySessionController",
    "SessionConfig",
    "SessionStart",
    "RatingOutcome",
]
