"""
Question Bank: Candidate Pool Resolver.

Loads practice questions from JSON files and resolves a study scope
(topic, subject or space) to the list of candidate questions.

JSON layout (either form):
- a list of question objects
- {"questions": [...]}

The catalog hierarchy is space -> subject -> topic; each question carries
the ids it belongs to.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from .errors import NotFoundError, ValidationError

# Kinds that can be self-rated in a drill session
DEFAULT_KINDS: tuple[str, ...] = (
    "single_select_mcq",
    "multi_select_mcq",
    "fill_in_the_blank",
)

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Question:
    """
    A practice question owned by the catalog.

    The scheduler only looks at id and kind; everything else is payload
    for whoever renders the card.
    """

    id: str
    kind: str
    prompt: str = ""
    topic_id: str | None = None
    subject_id: str | None = None
    space_id: str | None = None

    options: tuple[str, ...] = ()
    answers: tuple[str, ...] = ()
    explanation: str | None = None
    hints: tuple[str, ...] = ()
    extra: dict = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_dict(cls, data: dict) -> Question:
        """
        Create a Question from a JSON object.

        Raises:
            ValidationError: If id or kind is missing
        """
        qid = data.get("id") or data.get("_id")
        kind = data.get("kind")
        if not qid or not kind:
            raise ValidationError(f"Question needs 'id' and 'kind': {data!r}")

        known = {
            "id", "_id", "kind", "prompt", "question", "topic_id", "subject_id",
            "space_id", "options", "answers", "blank_answers", "explanation", "hints",
        }
        answers = data.get("answers") or data.get("blank_answers") or []
        return cls(
            id=str(qid),
            kind=str(kind),
            prompt=data.get("prompt") or data.get("question") or "",
            topic_id=_opt_str(data.get("topic_id")),
            subject_id=_opt_str(data.get("subject_id")),
            space_id=_opt_str(data.get("space_id")),
            options=tuple(_option_text(o) for o in data.get("options") or []),
            answers=tuple(str(a) for a in answers),
            explanation=data.get("explanation"),
            hints=tuple(str(h) for h in data.get("hints") or []),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass(frozen=True)
class StudyScope:
    """Exactly one of topic_id, subject_id or space_id."""

    topic_id: str | None = None
    subject_id: str | None = None
    space_id: str | None = None

    def __post_init__(self) -> None:
        given = [v for v in (self.topic_id, self.subject_id, self.space_id) if v is not None]
        if len(given) != 1:
            raise ValidationError("Scope needs exactly one of topic_id, subject_id or space_id")
        if not str(given[0]).strip():
            raise ValidationError("Scope id must not be empty")

    @property
    def level(self) -> str:
        if self.topic_id is not None:
            return "topic"
        if self.subject_id is not None:
            return "subject"
        return "space"

    @property
    def value(self) -> str:
        return str(self.topic_id or self.subject_id or self.space_id)

    def __str__(self) -> str:
        return f"{self.level}:{self.value}"


class CandidatePoolResolver(Protocol):
    """Source of candidate questions for a study scope."""

    def resolve(self, scope: StudyScope, kinds: Iterable[str] | None = None) -> list[Question]:
        ...


# =============================================================================
# Question Bank
# =============================================================================


class QuestionBank:
    """
    In-memory question catalog loaded from JSON.

    Features:
    - Auto-discovery of *.json files in a directory (or a single file)
    - Indexes by topic, subject and space
    - Kind filtering for drillable question types
    """

    DEFAULT_PATH = Path("questions")

    def __init__(self, path: Path | None = None):
        """
        Initialize the question bank.

        Args:
            path: JSON file or directory of JSON files (default: questions/)
        """
        self.path = Path(path) if path else self.DEFAULT_PATH

        self._questions: dict[str, Question] = {}  # id -> Question (insertion ordered)
        self._by_topic: dict[str, list[str]] = {}
        self._by_subject: dict[str, list[str]] = {}
        self._by_space: dict[str, list[str]] = {}

        self._files_loaded: list[Path] = []

    @classmethod
    def from_questions(cls, questions: Iterable[Question]) -> QuestionBank:
        """Build a bank from already-constructed questions."""
        bank = cls()
        for question in questions:
            bank.add(question)
        return bank

    @property
    def total_questions(self) -> int:
        return len(self._questions)

    def __len__(self) -> int:
        return len(self._questions)

    def __iter__(self) -> Iterator[Question]:
        return iter(self._questions.values())

    # =========================================================================
    # Loading
    # =========================================================================

    def load(self) -> int:
        """
        Load every JSON file under the configured path.

        Returns:
            Number of questions loaded
        """
        if not self.path.exists():
            logger.warning(f"Question path not found: {self.path}")
            return 0

        files = [self.path] if self.path.is_file() else sorted(self.path.glob("*.json"))
        for json_file in files:
            self._load_file(json_file)

        logger.info(f"Loaded {len(self._questions)} questions from {len(self._files_loaded)} files")
        return len(self._questions)

    def _load_file(self, json_file: Path) -> None:
        try:
            data = json.loads(json_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping {json_file.name}: {e}")
            return

        records: Any = data.get("questions", []) if isinstance(data, dict) else data
        if not isinstance(records, list):
            logger.warning(f"Skipping {json_file.name}: expected a list of questions")
            return

        for record in records:
            if not isinstance(record, dict):
                logger.warning(f"{json_file.name}: skipping non-object entry {record!r}")
                continue
            try:
                self.add(Question.from_dict(record))
            except ValidationError as e:
                logger.warning(f"{json_file.name}: {e}")

        self._files_loaded.append(json_file)

    def add(self, question: Question) -> None:
        """Add or replace a question and index it."""
        if question.id in self._questions:
            self._unindex(self._questions[question.id])
        self._questions[question.id] = question
        for index, key in (
            (self._by_topic, question.topic_id),
            (self._by_subject, question.subject_id),
            (self._by_space, question.space_id),
        ):
            if key is not None:
                index.setdefault(key, []).append(question.id)

    def _unindex(self, question: Question) -> None:
        for index, key in (
            (self._by_topic, question.topic_id),
            (self._by_subject, question.subject_id),
            (self._by_space, question.space_id),
        ):
            if key is not None and question.id in index.get(key, []):
                index[key].remove(question.id)

    # =========================================================================
    # Access
    # =========================================================================

    def get(self, question_id: str) -> Question:
        """
        Look up a question by id.

        Raises:
            NotFoundError: If the question is not in the bank
        """
        try:
            return self._questions[question_id]
        except KeyError:
            raise NotFoundError(f"Question not found: {question_id}") from None

    def resolve(self, scope: StudyScope, kinds: Iterable[str] | None = None) -> list[Question]:
        """
        Candidate questions for a scope, in catalog order.

        Args:
            scope: Topic, subject or space to study
            kinds: Allowed question kinds (default: DEFAULT_KINDS)

        Returns:
            Matching questions; empty if the scope id is unknown
        """
        allowed = set(kinds) if kinds is not None else set(DEFAULT_KINDS)
        index = {
            "topic": self._by_topic,
            "subject": self._by_subject,
            "space": self._by_space,
        }[scope.level]

        ids = index.get(scope.value, [])
        candidates = [self._questions[qid] for qid in ids if self._questions[qid].kind in allowed]

        logger.debug(f"Resolved {scope} to {len(candidates)} candidates ({len(ids)} before kind filter)")
        return candidates

    def get_stats(self) -> dict:
        """Counts by kind and scope."""
        by_kind: dict[str, int] = {}
        for question in self._questions.values():
            by_kind[question.kind] = by_kind.get(question.kind, 0) + 1

        return {
            "total": len(self._questions),
            "by_kind": by_kind,
            "topics": len(self._by_topic),
            "subjects": len(self._by_subject),
            "spaces": len(self._by_space),
            "files": len(self._files_loaded),
        }


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _option_text(option: Any) -> str:
    if isinstance(option, dict):
        return str(option.get("text", ""))
    return str(option)
