"""
Unit tests for the study session controller.

Uses the in-memory store and a frozen clock from conftest.

Run: pytest tests/unit/test_session_controller.py -v
"""
from dataclasses import replace
from datetime import timedelta

import pytest

from drillqueue.delivery.errors import NotFoundError, PersistenceError, ValidationError
from drillqueue.delivery.memory_model import CardState, MemoryModel, MemoryState, Rating, SchedulerParameters
from drillqueue.delivery.question_bank import QuestionBank, StudyScope
from drillqueue.delivery.queue_manager import CardType
from drillqueue.delivery.session_controller import SessionConfig, StudySessionController

TOPIC = StudyScope(topic_id="t1")


@pytest.fixture
def build(memory_store, clock):
    """Controller factory over a list of questions."""

    def _build(questions, config=None, model=None):
        return StudySessionController(
            user_id="u1",
            resolver=QuestionBank.from_questions(questions),
            store=memory_store,
            model=model or MemoryModel(SchedulerParameters(learning_steps=(3.0, 10.0))),
            config=config or SessionConfig(),
            clock=clock,
        )

    return _build


@pytest.fixture
def scenario(make_question, memory_store, learning_state, review_state):
    """Q1 new, Q2 learning due now, Q3 review due now."""
    memory_store.put("Q2", learning_state())
    memory_store.put("Q3", review_state(lapses=2))
    return [make_question("Q1"), make_question("Q2"), make_question("Q3")]


class TestStartSession:
    def test_learning_card_served_first(self, build, scenario):
        controller = build(scenario)

        start = controller.start_session(TOPIC)

        assert start.first_card.id == "Q2"
        assert start.first_card.card_type == CardType.LEARNING
        assert (start.total_new, start.total_review, start.total_learning) == (1, 1, 1)
        assert not start.finished

    def test_empty_scope_finishes_immediately(self, build):
        controller = build([])

        start = controller.start_session(TOPIC)

        assert start.finished
        assert start.first_card is None
        assert start.total_new == 0
        assert start.total_review == 0
        assert controller.answered_count == 0
        assert controller.is_finished

    def test_cards_outside_lookahead_excluded(self, build, make_question, memory_store, learning_state, review_state, now):
        memory_store.put("soon", learning_state(due=now + timedelta(minutes=15)))
        memory_store.put("later", learning_state(due=now + timedelta(minutes=30)))
        memory_store.put("next-week", review_state(due=now + timedelta(days=7)))
        controller = build([make_question(q) for q in ("soon", "later", "next-week")])

        plan = controller.plan_session(TOPIC)

        assert [i.id for i in plan.learning] == ["soon"]
        assert plan.review == []
        assert plan.excluded == 2

    def test_limit_takes_learning_then_most_overdue_reviews(
        self, build, make_question, memory_store, learning_state, review_state, now
    ):
        memory_store.put("L1", learning_state())
        memory_store.put("R-recent", review_state(due=now - timedelta(hours=1)))
        memory_store.put("R-old", review_state(due=now - timedelta(days=3)))
        memory_store.put("R-mid", review_state(due=now - timedelta(days=1)))
        questions = [make_question(q) for q in ("N1", "R-recent", "R-old", "R-mid", "L1", "N2")]
        controller = build(questions)

        start = controller.start_session(TOPIC, limit=3)

        assert (start.total_learning, start.total_review, start.total_new) == (1, 2, 0)
        assert [i.id for i in controller.queue.review_queue] == ["R-old", "R-mid"]

    def test_limit_from_config(self, build, make_question):
        controller = build([make_question(f"N{i}") for i in range(5)], config=SessionConfig(session_limit=2))

        assert controller.start_session(TOPIC).total_new == 2

    def test_partial_record_is_studied_as_new(self, build, make_question, memory_store):
        memory_store.put("Q1", MemoryState(state=CardState.REVIEW, lapses=1))
        controller = build([make_question("Q1")])

        start = controller.start_session(TOPIC)

        assert start.total_new == 1
        assert start.first_card.id == "Q1"
        assert start.first_card.card_type == CardType.NEW

        outcome = controller.submit_rating("Q1", Rating.GOOD)
        assert outcome.memory_state.state == CardState.LEARNING
        assert outcome.memory_state.lapses == 1

    def test_new_cards_keep_catalog_order(self, build, make_question):
        controller = build([make_question(q) for q in ("c", "a", "b")])

        plan = controller.plan_session(TOPIC)

        assert [i.id for i in plan.new] == ["c", "a", "b"]

    def test_bad_limit_rejected(self, build, make_question):
        with pytest.raises(ValidationError):
            build([make_question("N1")]).start_session(TOPIC, limit=0)

    def test_non_drillable_kinds_skipped(self, build, make_question):
        controller = build([make_question("N1"), make_question("essay", kind="descriptive")])

        start = controller.start_session(TOPIC)

        assert start.total_new == 1

    def test_blank_user_rejected(self, memory_store):
        with pytest.raises(ValidationError):
            StudySessionController("  ", QuestionBank(), memory_store)


class TestSubmitRating:
    def test_again_on_learning_card_defers_and_resurfaces(self, build, scenario, now):
        controller = build(scenario)
        controller.start_session(TOPIC)

        outcome = controller.submit_rating("Q2", "Again")

        assert outcome.memory_state.next_review_at == now + timedelta(minutes=3)
        assert controller.queue.deferred_count == 1
        assert outcome.next_card.id == "Q3"
        assert outcome.counts.learning == 1

        outcome = controller.submit_rating("Q3", Rating.GOOD)
        assert outcome.next_card.id == "Q1"

        outcome = controller.submit_rating("Q1", Rating.GOOD)
        assert outcome.next_card.id == "Q2"
        assert outcome.next_card.is_retry
        assert outcome.answered_count == 3

    def test_review_again_is_a_lapse(self, build, scenario, memory_store):
        controller = build(scenario)
        controller.start_session(TOPIC)
        controller.submit_rating("Q2", Rating.GOOD)

        outcome = controller.submit_rating("Q3", "again")

        assert outcome.memory_state.state == CardState.RELEARNING
        assert outcome.memory_state.lapses == 3
        assert memory_store.states[("u1", "Q3")].lapses == 3

    def test_review_good_leaves_session(self, build, scenario, memory_store):
        controller = build(scenario)
        controller.start_session(TOPIC)
        controller.submit_rating("Q2", Rating.GOOD)

        outcome = controller.submit_rating("Q3", Rating.GOOD)

        assert outcome.memory_state.state == CardState.REVIEW
        assert "Q3" not in controller.queue
        assert outcome.counts.review == 0

    def test_review_log_written_with_prior_state(self, build, scenario, memory_store):
        controller = build(scenario)
        controller.start_session(TOPIC)

        controller.submit_rating("Q2", "Hard", review_duration_ms=4200)

        user_id, question_id, entry = memory_store.reviews[-1]
        assert (user_id, question_id) == ("u1", "Q2")
        assert entry.rating == Rating.HARD
        assert entry.state == CardState.LEARNING
        assert entry.review_duration_ms == 4200

    def test_persistence_failure_leaves_session_untouched(self, build, scenario, memory_store):
        controller = build(scenario)
        controller.start_session(TOPIC)
        counts = controller.counts
        memory_store.fail_writes = True

        with pytest.raises(PersistenceError):
            controller.submit_rating("Q2", Rating.AGAIN)

        assert controller.current_card.id == "Q2"
        assert controller.counts == counts
        assert controller.answered_count == 0
        assert controller.queue.deferred_count == 0
        assert memory_store.states[("u1", "Q2")].step == 0

        memory_store.fail_writes = False
        outcome = controller.submit_rating("Q2", Rating.AGAIN)

        assert outcome.answered_count == 1
        assert memory_store.write_attempts == 2

    def test_wrong_card_rejected(self, build, scenario, memory_store):
        controller = build(scenario)
        controller.start_session(TOPIC)

        with pytest.raises(ValidationError):
            controller.submit_rating("Q1", Rating.GOOD)
        assert memory_store.write_attempts == 0

    def test_bad_rating_rejected_before_write(self, build, scenario, memory_store):
        controller = build(scenario)
        controller.start_session(TOPIC)

        with pytest.raises(ValidationError):
            controller.submit_rating("Q2", "perfect")
        assert memory_store.write_attempts == 0
        assert controller.current_card.id == "Q2"

    def test_rating_after_finish_raises(self, build):
        controller = build([])
        controller.start_session(TOPIC)

        with pytest.raises(NotFoundError):
            controller.submit_rating("Q1", Rating.GOOD)

    def test_past_due_result_is_dropped(self, build, make_question, now):
        class PastDueModel(MemoryModel):
            def advance(self, state, rating, at):
                result = super().advance(state, rating, at)
                return replace(result, next_review_at=at - timedelta(minutes=1))

        controller = build([make_question("N1"), make_question("N2")], model=PastDueModel())
        controller.start_session(TOPIC)

        outcome = controller.submit_rating("N1", Rating.AGAIN)

        assert "N1" not in controller.queue
        assert controller.queue.deferred_count == 0
        assert outcome.next_card.id == "N2"

    def test_totals_fixed_for_whole_session(self, build, scenario):
        controller = build(scenario)
        start = controller.start_session(TOPIC)
        totals = controller.totals

        card = start.first_card
        for _ in range(20):
            if card is None:
                break
            card = controller.submit_rating(card.id, Rating.GOOD).next_card
            assert controller.totals == totals

        assert controller.is_finished
        assert controller.totals.total == 3

    def test_progress(self, build, make_question):
        controller = build([make_question(q) for q in ("N1", "N2", "N3")], model=MemoryModel())
        controller.start_session(TOPIC)

        assert controller.progress == 0.0
        controller.submit_rating("N1", Rating.GOOD)

        # N1 is deferred again, so it still counts as remaining
        assert controller.progress == pytest.approx(1 / 4)
