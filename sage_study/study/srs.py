"""FSRS-style memory model and interval scheduling for card reviews."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Tuple

from sage_study.study.models import (
    IntervalPreviews,
    Phase,
    Rating,
    SchedulingState,
    ScheduleUpdate,
    ensure_utc,
)


MIN_STABILITY = 0.1
MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0
MAX_INTERVAL_DAYS = 36500
MINUTES_PER_DAY = 1440.0

# FSRS v4 default weights: initial stabilities (0-3), difficulty (4-7),
# recall stability (8-10), forget stability (11-14), hard penalty and easy bonus (15-16).
DEFAULT_WEIGHTS: Tuple[float, ...] = (
    0.4, 0.6, 2.4, 5.8,
    4.93, 0.94, 0.86, 0.01,
    1.49, 0.14, 0.94,
    2.18, 0.05, 0.34, 1.26,
    0.29, 2.61,
)


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Tunable scheduling policy; steps are minutes, intervals are days."""

    request_retention: float = 0.9
    maximum_interval: int = MAX_INTERVAL_DAYS
    learning_steps: Tuple[float, ...] = (1.0, 10.0)
    relearning_steps: Tuple[float, ...] = (10.0,)
    graduating_interval: int = 1
    easy_interval: int = 4
    weights: Tuple[float, ...] = DEFAULT_WEIGHTS

    def __post_init__(self) -> None:
        if not 0.0 < self.request_retention < 1.0:
            raise ValueError("request_retention must be between 0 and 1.")
        if not 1 <= self.maximum_interval <= MAX_INTERVAL_DAYS:
            raise ValueError(f"maximum_interval must be between 1 and {MAX_INTERVAL_DAYS}.")
        for name in ("learning_steps", "relearning_steps"):
            steps = getattr(self, name)
            if not steps or any(step <= 0 for step in steps):
                raise ValueError(f"{name} must contain at least one positive step.")
        if self.graduating_interval < 1 or self.easy_interval < 1:
            raise ValueError("graduating_interval and easy_interval must be at least one day.")
        if len(self.weights) != len(DEFAULT_WEIGHTS):
            raise ValueError(f"weights must contain {len(DEFAULT_WEIGHTS)} values.")


def retrievability(stability: float, elapsed_days: float) -> float:
    """Probability of recall after ``elapsed_days`` for a memory of given stability."""
    if stability <= 0:
        return 0.0
    return (1.0 + max(0.0, elapsed_days) / (9.0 * stability)) ** -1


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


class Scheduler:
    """Pure FSRS-style scheduler.

    ``compute_update`` derives the committed state from the same table of
    outcomes that backs ``preview``, so what the learner is shown for a rating
    is exactly what that rating commits.
    """

    def __init__(self, config: SchedulerConfig | None = None) -> None:
        self._config = config or SchedulerConfig()

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    def is_due(self, state: SchedulingState, now: datetime) -> bool:
        return ensure_utc(state.due) <= ensure_utc(now)

    def preview(self, state: SchedulingState, now: datetime) -> IntervalPreviews:
        """Return the interval each rating would schedule, without committing."""
        outcomes = self.schedule(state, now)
        return IntervalPreviews(*(outcomes[rating].scheduled_days for rating in Rating))

    def compute_update(
        self,
        state: SchedulingState,
        rating: Rating,
        now: datetime,
    ) -> ScheduleUpdate:
        """Apply ``rating`` to ``state`` at ``now``."""
        outcomes = self.schedule(state, now)
        previews = IntervalPreviews(*(outcomes[key].scheduled_days for key in Rating))
        return ScheduleUpdate(next_state=outcomes[Rating(rating)], previews=previews)

    def schedule(self, state: SchedulingState, now: datetime) -> Dict[Rating, SchedulingState]:
        """Compute the next state for every rating from the pre-update ``state``."""
        now = ensure_utc(now)
        elapsed = 0.0
        if state.last_review is not None:
            delta = now - ensure_utc(state.last_review)
            elapsed = max(0.0, delta.total_seconds() / 86400.0)

        if state.phase is Phase.NEW:
            candidates = self._schedule_new()
        elif state.phase is Phase.LEARNING:
            candidates = self._schedule_learning(state, elapsed, self._config.learning_steps, graduating=True)
        elif state.phase is Phase.RELEARNING:
            candidates = self._schedule_learning(state, elapsed, self._config.relearning_steps, graduating=False)
        elif state.phase is Phase.REVIEW:
            candidates = self._schedule_review(state, elapsed)
        else:  # pragma: no cover - exhaustive over Phase
            raise AssertionError(f"Unhandled phase {state.phase!r}")

        outcomes: Dict[Rating, SchedulingState] = {}
        floor = 0.0
        for rating in Rating:
            fields, days = candidates[rating]
            # Previews must be non-decreasing from again to easy and respect the cap.
            days = min(max(days, floor), float(self._config.maximum_interval))
            floor = days
            outcomes[rating] = SchedulingState(
                stability=self._clamp_stability(fields["stability"]),
                difficulty=_clamp(fields["difficulty"], MIN_DIFFICULTY, MAX_DIFFICULTY),
                elapsed_days=elapsed,
                scheduled_days=days,
                reps=state.reps + 1,
                lapses=state.lapses + (1 if fields.get("lapse") else 0),
                phase=fields["phase"],
                due=now + timedelta(days=days),
                last_review=now,
                step=fields.get("step", 0),
            )
        return outcomes

    def _schedule_new(self) -> Dict[Rating, Tuple[dict, float]]:
        w = self._config.weights
        steps = self._config.learning_steps
        results: Dict[Rating, Tuple[dict, float]] = {}
        for rating in Rating:
            stability = w[rating - 1]
            fields = {
                "stability": stability,
                "difficulty": self._initial_difficulty(rating),
            }
            if rating is Rating.AGAIN:
                fields.update(phase=Phase.LEARNING, step=0)
                days = steps[0] / MINUTES_PER_DAY
            elif rating is Rating.HARD:
                fields.update(phase=Phase.LEARNING, step=0)
                days = self._hard_delay(steps, 0) / MINUTES_PER_DAY
            elif rating is Rating.GOOD:
                fields.update(phase=Phase.REVIEW)
                days = max(float(self._config.graduating_interval), self._interval_for(stability))
            else:
                fields.update(phase=Phase.REVIEW)
                days = max(float(self._config.easy_interval), self._interval_for(stability))
            results[rating] = (fields, days)
        return results

    def _schedule_learning(
        self,
        state: SchedulingState,
        elapsed: float,
        steps: Tuple[float, ...],
        graduating: bool,
    ) -> Dict[Rating, Tuple[dict, float]]:
        stability = self._clamp_stability(state.stability)
        difficulty = _clamp(state.difficulty, MIN_DIFFICULTY, MAX_DIFFICULTY)
        recall = retrievability(stability, elapsed)
        step = min(state.step, len(steps) - 1)
        results: Dict[Rating, Tuple[dict, float]] = {}

        for rating in Rating:
            fields = {"difficulty": self._next_difficulty(difficulty, rating)}
            if rating is Rating.AGAIN:
                fields.update(
                    stability=self._forget_stability(stability, difficulty, recall),
                    phase=state.phase,
                    step=0,
                )
                days = steps[0] / MINUTES_PER_DAY
            elif rating is Rating.HARD:
                fields.update(
                    stability=self._recall_stability(stability, difficulty, recall, rating),
                    phase=state.phase,
                    step=step,
                )
                days = self._hard_delay(steps, step) / MINUTES_PER_DAY
            elif rating is Rating.GOOD and step + 1 < len(steps):
                fields.update(stability=stability, phase=state.phase, step=step + 1)
                days = steps[step + 1] / MINUTES_PER_DAY
            else:
                new_stability = self._recall_stability(stability, difficulty, recall, rating)
                fields.update(stability=new_stability, phase=Phase.REVIEW, step=0)
                minimum = 1
                if graduating:
                    minimum = (
                        self._config.easy_interval
                        if rating is Rating.EASY
                        else self._config.graduating_interval
                    )
                days = max(float(minimum), self._interval_for(new_stability))
            results[rating] = (fields, days)
        return results

    def _schedule_review(self, state: SchedulingState, elapsed: float) -> Dict[Rating, Tuple[dict, float]]:
        stability = self._clamp_stability(state.stability)
        difficulty = _clamp(state.difficulty, MIN_DIFFICULTY, MAX_DIFFICULTY)
        recall = retrievability(stability, elapsed)

        results: Dict[Rating, Tuple[dict, float]] = {
            Rating.AGAIN: (
                {
                    "stability": self._forget_stability(stability, difficulty, recall),
                    "difficulty": self._next_difficulty(difficulty, Rating.AGAIN),
                    "phase": Phase.RELEARNING,
                    "step": 0,
                    "lapse": True,
                },
                self._config.relearning_steps[0] / MINUTES_PER_DAY,
            )
        }

        previous_days = 0.0
        for rating in (Rating.HARD, Rating.GOOD, Rating.EASY):
            new_stability = self._recall_stability(stability, difficulty, recall, rating)
            days = self._interval_for(new_stability)
            if rating is not Rating.HARD:
                days = max(days, previous_days + 1)
            previous_days = days
            results[rating] = (
                {
                    "stability": new_stability,
                    "difficulty": self._next_difficulty(difficulty, rating),
                    "phase": Phase.REVIEW,
                },
                days,
            )
        return results

    def _interval_for(self, stability: float) -> float:
        retention = self._config.request_retention
        raw = 9.0 * stability * (1.0 / retention - 1.0)
        return float(_clamp(round(raw), 1, self._config.maximum_interval))

    @staticmethod
    def _hard_delay(steps: Tuple[float, ...], index: int) -> float:
        if index == 0:
            if len(steps) > 1:
                return (steps[0] + steps[1]) / 2.0
            return steps[0] * 1.5
        return steps[index]

    def _clamp_stability(self, stability: float) -> float:
        return _clamp(stability, MIN_STABILITY, float(self._config.maximum_interval))

    def _initial_difficulty(self, rating: Rating) -> float:
        w = self._config.weights
        return _clamp(w[4] - (rating - 3) * w[5], MIN_DIFFICULTY, MAX_DIFFICULTY)

    def _next_difficulty(self, difficulty: float, rating: Rating) -> float:
        w = self._config.weights
        updated = difficulty - w[6] * (rating - 3)
        # Mean reversion towards the difficulty of a first "good" answer.
        reverted = w[7] * self._initial_difficulty(Rating.GOOD) + (1.0 - w[7]) * updated
        return _clamp(reverted, MIN_DIFFICULTY, MAX_DIFFICULTY)

    def _recall_stability(self, stability: float, difficulty: float, recall: float, rating: Rating) -> float:
        w = self._config.weights
        hard_penalty = w[15] if rating is Rating.HARD else 1.0
        easy_bonus = w[16] if rating is Rating.EASY else 1.0
        growth = (
            math.exp(w[8])
            * (11.0 - difficulty)
            * stability ** -w[9]
            * (math.exp((1.0 - recall) * w[10]) - 1.0)
            * hard_penalty
            * easy_bonus
        )
        return self._clamp_stability(stability * (1.0 + growth))

    def _forget_stability(self, stability: float, difficulty: float, recall: float) -> float:
        w = self._config.weights
        forgotten = (
            w[11]
            * difficulty ** -w[12]
            * ((stability + 1.0) ** w[13] - 1.0)
            * math.exp((1.0 - recall) * w[14])
        )
        return self._clamp_stability(min(forgotten, stability))
