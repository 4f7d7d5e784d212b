"""
Unit tests for the FSRS memory model.

Run: pytest tests/unit/test_memory_model.py -v
"""
from dataclasses import replace
from datetime import timedelta

import pytest

from drillqueue.delivery.errors import ValidationError
from drillqueue.delivery.memory_model import (
    DEFAULT_WEIGHTS,
    CardState,
    MemoryModel,
    MemoryState,
    Rating,
    SchedulerParameters,
    format_interval,
)


@pytest.fixture
def model():
    """Model without fuzz so intervals are exact."""
    return MemoryModel(SchedulerParameters(enable_fuzz=False))


class TestRatingParse:
    """Rating coercion from names and numbers."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("Again", Rating.AGAIN),
            ("hard", Rating.HARD),
            (" GOOD ", Rating.GOOD),
            ("easy", Rating.EASY),
            (3, Rating.GOOD),
            ("4", Rating.EASY),
            (Rating.HARD, Rating.HARD),
        ],
    )
    def test_accepts_names_and_numbers(self, value, expected):
        assert Rating.parse(value) is expected

    @pytest.mark.parametrize("value", ["meh", "", 0, 5, True, None, 2.5])
    def test_rejects_unknown(self, value):
        with pytest.raises(ValidationError):
            Rating.parse(value)

    def test_label(self):
        assert Rating.AGAIN.label == "Again"


class TestFirstReview:
    """New card transitions."""

    def test_again_enters_learning_at_first_step(self, model, now):
        state = model.advance(None, "Again", now)

        assert state.state == CardState.LEARNING
        assert state.step == 0
        assert state.next_review_at == now + timedelta(minutes=1)
        assert state.stability == pytest.approx(DEFAULT_WEIGHTS[0])
        assert state.difficulty == pytest.approx(DEFAULT_WEIGHTS[4])
        assert state.repetitions == 1
        assert state.lapses == 0

    def test_hard_uses_midpoint_of_first_two_steps(self, model, now):
        state = model.advance(None, Rating.HARD, now)

        assert state.step == 0
        assert state.next_review_at == now + timedelta(minutes=5.5)

    def test_good_skips_to_second_step(self, model, now):
        state = model.advance(MemoryState(), Rating.GOOD, now)

        assert state.state == CardState.LEARNING
        assert state.step == 1
        assert state.next_review_at == now + timedelta(minutes=10)

    def test_easy_stays_in_learning_on_last_step(self, model, now):
        state = model.advance(None, Rating.EASY, now)

        assert state.state == CardState.LEARNING
        assert state.step == 1

    def test_initial_difficulty_falls_with_rating(self, model, now):
        d = [model.advance(None, r, now).difficulty for r in Rating]
        assert d == sorted(d, reverse=True)
        assert all(1.0 <= x <= 10.0 for x in d)

    def test_zero_stability_is_treated_as_new(self, model, now, review_state):
        stale = replace(review_state(), stability=0.0)
        state = model.advance(stale, Rating.GOOD, now)

        assert state.state == CardState.LEARNING


class TestLearningSteps:
    """Learning / relearning step schedule."""

    def test_again_resets_to_first_step(self, model, now, learning_state):
        state = model.advance(learning_state(step=1), Rating.AGAIN, now)

        assert state.state == CardState.LEARNING
        assert state.step == 0
        assert state.next_review_at == now + timedelta(minutes=1)

    def test_good_advances_one_step(self, model, now, learning_state):
        state = model.advance(learning_state(step=0), Rating.GOOD, now)

        assert state.step == 1
        assert state.next_review_at == now + timedelta(minutes=10)

    def test_good_on_last_step_graduates(self, model, now, learning_state):
        state = model.advance(learning_state(step=1), Rating.GOOD, now)

        assert state.state == CardState.REVIEW
        assert state.scheduled_days >= 1
        assert state.next_review_at == now + timedelta(days=state.scheduled_days)

    def test_easy_graduates_with_easy_interval_floor(self, model, now, learning_state):
        state = model.advance(learning_state(step=0), Rating.EASY, now)

        assert state.state == CardState.REVIEW
        assert state.scheduled_days >= 4

    def test_relearning_good_graduates_back_to_review(self, model, now, learning_state):
        relearning = replace(learning_state(), state=CardState.RELEARNING, lapses=1)
        state = model.advance(relearning, Rating.GOOD, now)

        assert state.state == CardState.REVIEW
        assert state.lapses == 1

    def test_input_state_is_not_modified(self, model, now, learning_state):
        before = learning_state()
        snapshot = replace(before)
        model.advance(before, Rating.GOOD, now)

        assert before == snapshot


class TestReview:
    """Review state transitions."""

    def test_again_is_a_lapse(self, model, now, review_state):
        state = model.advance(review_state(lapses=2), Rating.AGAIN, now)

        assert state.state == CardState.RELEARNING
        assert state.lapses == 3
        assert state.step == 0
        assert state.next_review_at == now + timedelta(minutes=10)

    def test_good_grows_stability(self, model, now, review_state):
        prior = review_state()
        state = model.advance(prior, Rating.GOOD, now)

        assert state.state == CardState.REVIEW
        assert state.stability > prior.stability
        assert state.elapsed_days == pytest.approx(5.0 + 1 / 24)
        assert state.next_review_at == now + timedelta(days=state.scheduled_days)

    def test_stability_orders_by_rating(self, model, now, review_state):
        prior = review_state()
        hard, good, easy = (model.advance(prior, r, now).stability for r in (Rating.HARD, Rating.GOOD, Rating.EASY))

        assert hard < good < easy

    @pytest.mark.parametrize("rating", [Rating.HARD, Rating.GOOD, Rating.EASY])
    def test_same_day_review_keeps_stability(self, model, now, review_state, rating):
        """A review pulled in early by the lookahead window must not lose stability."""
        prior = replace(review_state(stability=2.0), last_reviewed_at=now - timedelta(hours=23, minutes=45))

        state = model.advance(prior, rating, now)

        assert state.state == CardState.REVIEW
        assert state.stability >= prior.stability

    def test_lapse_never_lowers_difficulty(self, model, now, review_state):
        prior = review_state(difficulty=10.0)

        state = model.advance(prior, Rating.AGAIN, now)

        assert state.difficulty == pytest.approx(10.0)

    def test_again_lowers_stability(self, model, now, review_state):
        prior = review_state()
        state = model.advance(prior, Rating.AGAIN, now)

        assert state.stability < prior.stability

    def test_fuzz_is_deterministic(self, now, review_state):
        fuzzy = MemoryModel()
        prior = review_state(stability=30.0)

        assert fuzzy.advance(prior, Rating.GOOD, now) == fuzzy.advance(prior, Rating.GOOD, now)

    def test_preview_covers_every_rating(self, model, now, review_state):
        outcomes = model.preview(review_state(), now)

        assert set(outcomes) == set(Rating)
        assert outcomes[Rating.AGAIN].state == CardState.RELEARNING


class TestFormulas:
    """Retrievability and interval maths."""

    def test_retrievability_is_ninety_percent_after_stability_days(self, model, review_state):
        state = review_state(stability=7.0)
        at = state.last_reviewed_at + timedelta(days=7)

        assert model.retrievability(state, at) == pytest.approx(0.9)

    def test_retrievability_of_new_card_is_zero(self, model, now):
        assert model.retrievability(None, now) == 0.0

    def test_interval_equals_stability_at_ninety_percent(self, model):
        assert model.next_interval(10.0) == 10

    def test_interval_is_clamped(self):
        model = MemoryModel(SchedulerParameters(maximum_interval=30))

        assert model.next_interval(1000.0) == 30
        assert model.next_interval(0.1) == 1

    def test_higher_retention_shortens_interval(self):
        strict = MemoryModel(SchedulerParameters(request_retention=0.97))

        assert strict.next_interval(10.0) < 10


class TestSchedulerParameters:
    """Preset validation."""

    def test_defaults(self):
        params = SchedulerParameters()

        assert params.learning_steps == (1.0, 10.0)
        assert params.relearning_steps == (10.0,)
        assert len(params.w) == 19

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"request_retention": 0.5},
            {"request_retention": 1.0},
            {"w": (1.0, 2.0)},
            {"learning_steps": ()},
            {"learning_steps": (0,)},
            {"relearning_steps": (1440,)},
        ],
    )
    def test_build_rejects_bad_values(self, kwargs):
        with pytest.raises(ValidationError):
            SchedulerParameters.build(**kwargs)


class TestMemoryState:
    """Serialization of memory records."""

    def test_from_empty_dict_is_new(self):
        assert MemoryState.from_dict({}) == MemoryState()
        assert MemoryState.from_dict(None).is_new

    def test_dict_round_trip(self, review_state):
        state = review_state()

        assert MemoryState.from_dict(state.to_dict()) == state

    def test_iso_strings_are_parsed(self):
        state = MemoryState.from_dict({"state": "Review", "next_review_at": "2026-03-02T09:00:00Z"})

        assert state.state == CardState.REVIEW
        assert state.next_review_at.tzinfo is not None

    def test_unknown_state_rejected(self):
        with pytest.raises(ValidationError):
            MemoryState.from_dict({"state": "suspended"})


class TestFormatInterval:
    @pytest.mark.parametrize(
        "delta,label",
        [
            (timedelta(seconds=30), "<1m"),
            (timedelta(minutes=5), "<5m"),
            (timedelta(hours=3), "3h"),
            (timedelta(days=4, hours=2), "4d"),
        ],
    )
    def test_labels(self, delta, label):
        assert format_interval(delta) == label
