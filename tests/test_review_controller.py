from __future__ import annotations

import random
from datetime import UTC, datetime

import allure
import pytest

from ralph_loop.loop.models import ControllerState
from ralph_loop.loop.review_controller import (
    MAX_INTERVAL,
    MIN_INTERVAL,
    ReviewController,
)

pytestmark = [
    allure.epic("Review Cadence"),
    allure.feature("Review Controller"),
]

NOW = datetime(2026, 3, 1, tzinfo=UTC)


def _controller(**state_fields) -> ReviewController:
    return ReviewController(ControllerState(**state_fields))


def test_first_observation_holds_interval() -> None:
    controller = _controller(current_interval=10)

    adjustment = controller.record_review(10, 40, now=NOW)

    assert adjustment.trend == "initial"
    assert adjustment.current == 10
    assert controller.state.prev_issue_score == 40


def test_improving_score_widens_interval() -> None:
    controller = _controller(current_interval=10, prev_issue_score=40)

    adjustment = controller.record_review(10, 20, now=NOW)

    assert adjustment.trend == "improving"
    assert controller.state.current_interval == 13


def test_regressing_score_tightens_interval() -> None:
    controller = _controller(current_interval=20, prev_issue_score=10)

    adjustment = controller.record_review(20, 30, now=NOW)

    assert adjustment.trend == "regressing"
    assert controller.state.current_interval == 14


def test_stable_clean_score_drifts_outward() -> None:
    controller = _controller(current_interval=10, prev_issue_score=5)

    assert controller.record_review(10, 5, now=NOW).trend == "stable_clean"
    assert controller.state.current_interval == 11


def test_stable_noisy_score_holds() -> None:
    controller = _controller(current_interval=10, prev_issue_score=12)

    assert controller.record_review(10, 12, now=NOW).trend == "stable"
    assert controller.state.current_interval == 10


def test_interval_stays_within_bounds_for_any_score_sequence() -> None:
    rng = random.Random(7)
    controller = _controller()

    for iteration in range(1, 500):
        controller.record_review(iteration, rng.randint(0, 60), now=NOW)
        assert MIN_INTERVAL <= controller.state.current_interval <= MAX_INTERVAL


def test_oscillating_scores_tighten_cadence() -> None:
    controller = _controller(current_interval=30, prev_issue_score=20)

    for index in range(10):
        controller.record_review(index, 10 if index % 2 == 0 else 20, now=NOW)

    assert controller.state.current_interval < 30


def test_convergence_jumps_to_max_interval() -> None:
    controller = _controller(current_interval=8)

    controller.record_review(1, 2, now=NOW)
    controller.record_review(2, 1, now=NOW)
    adjustment = controller.record_review(3, 0, now=NOW)

    assert adjustment.trend == "converged"
    assert controller.state.current_interval == MAX_INTERVAL


def test_history_is_capped() -> None:
    controller = ReviewController(ControllerState(), history_limit=5)

    for iteration in range(12):
        controller.record_review(iteration, iteration + 10, now=NOW)

    assert [sample.issue_score for sample in controller.state.issues_history] == [
        17,
        18,
        19,
        20,
        21,
    ]


def test_due_on_interval_and_probe_ceiling() -> None:
    controller = _controller(current_interval=50, last_review_iteration=10, last_probe_iteration=10)

    assert controller.is_due(20).due is False
    decision = controller.is_due(35)
    assert decision.due is True
    assert decision.reason == "probe_ceiling"

    interval_controller = _controller(current_interval=6, last_review_iteration=4)
    assert interval_controller.is_due(9).due is False
    assert interval_controller.is_due(10).reason == "interval"


def test_no_review_is_ever_more_than_probe_ceiling_apart() -> None:
    controller = _controller(current_interval=MAX_INTERVAL)
    reviews = [0]

    for iteration in range(1, 200):
        if controller.is_due(iteration).due:
            controller.record_review(iteration, 0, now=NOW)
            reviews.append(iteration)

    gaps = [later - earlier for earlier, later in zip(reviews, reviews[1:], strict=False)]
    assert max(gaps) <= 25


def test_regression_forces_review_next_cycle() -> None:
    controller = _controller(current_interval=40, last_review_iteration=30, last_probe_iteration=30)

    assert controller.check_regression(33, 16) is True

    assert controller.state.current_interval == MIN_INTERVAL
    assert controller.is_due(33).due is False
    assert controller.is_due(34).due is True


def test_score_at_threshold_is_not_a_regression() -> None:
    controller = _controller(current_interval=40)

    assert controller.check_regression(3, 15) is False
    assert controller.state.current_interval == 40


def test_persisted_interval_is_clamped_on_load() -> None:
    assert _controller(current_interval=2).state.current_interval == MIN_INTERVAL
    assert _controller(current_interval=400).state.current_interval == MAX_INTERVAL


def test_invalid_bounds_are_rejected() -> None:
    with pytest.raises(ValueError, match="bounds"):
        ReviewController(ControllerState(), min_interval=10, max_interval=5)
