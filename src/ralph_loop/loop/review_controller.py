"""Adaptive review cadence driven by the issue probe trend.

The interval between review passes behaves like a congestion window:
an improving issue score backs the reviews off (``*1.3``), a regressing
score pulls them in (``*0.7``), and a flat score either drifts outward
slowly (``*1.1`` while the score is small) or holds. Because ``1.3 * 0.7``
is below one, an oscillating score tightens the cadence over time.

Two overrides bound the detection latency of the adaptive state:

- the probe ceiling makes a review due every ``max_probe_interval`` cycles
  however clean the local scan looks;
- the regression guard collapses the interval to its minimum and makes a
  review due on the next cycle when a mid-cycle probe spikes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from ralph_loop.loop.models import ControllerState, IssueSample

logger = logging.getLogger(__name__)

MIN_INTERVAL = 5
MAX_INTERVAL = 50
MAX_PROBE_INTERVAL = 25
REGRESSION_THRESHOLD = 15
ISSUES_HISTORY_LIMIT = 100
CONVERGENCE_WINDOW = 3
CONVERGENCE_MAX_SCORE = 2
CLEAN_SCORE_LIMIT = 10

IMPROVING_FACTOR = 1.3
REGRESSING_FACTOR = 0.7
STABLE_CLEAN_FACTOR = 1.1


@dataclass(slots=True)
class ReviewDecision:
    due: bool
    reason: str


@dataclass(slots=True)
class IntervalAdjustment:
    previous: int
    current: int
    trend: str


class ReviewController:
    """Decide when a review pass is due and adapt the interval after each one."""

    def __init__(  # noqa: PLR0913
        self,
        state: ControllerState,
        *,
        min_interval: int = MIN_INTERVAL,
        max_interval: int = MAX_INTERVAL,
        max_probe_interval: int = MAX_PROBE_INTERVAL,
        regression_threshold: int = REGRESSION_THRESHOLD,
        history_limit: int = ISSUES_HISTORY_LIMIT,
    ) -> None:
        if min_interval < 1 or max_interval < min_interval:
            raise ValueError("Review interval bounds must satisfy 1 <= min <= max.")
        self.state = state
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.max_probe_interval = max_probe_interval
        self.regression_threshold = regression_threshold
        self.history_limit = history_limit
        self.state.current_interval = self._clamp(self.state.current_interval)

    def is_due(self, iteration: int) -> ReviewDecision:
        state = self.state
        if iteration - state.last_probe_iteration >= self.max_probe_interval:
            return ReviewDecision(due=True, reason="probe_ceiling")
        if iteration - state.last_review_iteration >= state.current_interval:
            return ReviewDecision(due=True, reason="interval")
        return ReviewDecision(due=False, reason="not_due")

    def record_review(
        self,
        iteration: int,
        issue_score: int,
        *,
        now: datetime,
    ) -> IntervalAdjustment:
        """Feed one review's probe score back into the interval."""

        state = self.state
        previous_interval = state.current_interval
        trend, factor = self._trend(state.prev_issue_score, issue_score)
        state.current_interval = self._clamp(round(previous_interval * factor))

        state.issues_history.append(IssueSample(timestamp=now, issue_score=issue_score))
        if len(state.issues_history) > self.history_limit:
            del state.issues_history[: len(state.issues_history) - self.history_limit]

        if self._converged():
            state.current_interval = self.max_interval
            trend = "converged"

        state.prev_issue_score = issue_score
        state.last_review_iteration = iteration
        state.last_probe_iteration = iteration
        logger.info(
            "Review interval %d -> %d (issue score %d, %s)",
            previous_interval,
            state.current_interval,
            issue_score,
            trend,
        )
        return IntervalAdjustment(
            previous=previous_interval,
            current=state.current_interval,
            trend=trend,
        )

    def check_regression(self, iteration: int, issue_score: int) -> bool:
        """Force a review on the next cycle when a mid-cycle probe spikes."""

        state = self.state
        if issue_score <= self.regression_threshold or state.current_interval <= self.min_interval:
            return False
        logger.warning(
            "Issue score %d exceeds regression threshold %d, review interval %d -> %d",
            issue_score,
            self.regression_threshold,
            state.current_interval,
            self.min_interval,
        )
        state.current_interval = self.min_interval
        state.last_review_iteration = iteration + 1 - self.min_interval
        return True

    def _trend(self, previous: int | None, current: int) -> tuple[str, float]:
        if previous is None:
            return "initial", 1.0
        if current < previous:
            return "improving", IMPROVING_FACTOR
        if current > previous:
            return "regressing", REGRESSING_FACTOR
        if current < CLEAN_SCORE_LIMIT:
            return "stable_clean", STABLE_CLEAN_FACTOR
        return "stable", 1.0

    def _converged(self) -> bool:
        recent = self.state.issues_history[-CONVERGENCE_WINDOW:]
        return len(recent) == CONVERGENCE_WINDOW and all(
            sample.issue_score <= CONVERGENCE_MAX_SCORE for sample in recent
        )

    def _clamp(self, interval: int) -> int:
        return max(self.min_interval, min(self.max_interval, interval))
