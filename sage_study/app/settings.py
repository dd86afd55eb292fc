"""Configuration helpers for the Sage Study runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sage_study.study.srs import MAX_INTERVAL_DAYS, SchedulerConfig


DEFAULT_LEARNING_STEPS = "1,10"
DEFAULT_RELEARNING_STEPS = "10"


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer.") from exc


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number.") from exc


def _steps_env(name: str, default: str) -> Tuple[float, ...]:
    raw = os.getenv(name, default)
    try:
        steps = tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a comma separated list of minutes.") from exc
    if not steps or any(step <= 0 for step in steps):
        raise RuntimeError(f"{name} must contain at least one positive step.")
    return steps


@dataclass(frozen=True)
class AppSettings:
    """Strongly typed application settings loaded from environment variables."""

    app_name: str
    app_env: str
    log_level: str
    remote_scheduler_url: Optional[str]
    remote_scheduler_token: Optional[str]
    remote_scheduler_timeout: float
    sync_max_attempts: int
    learner_timezone: str
    request_retention: float
    maximum_interval: int
    learning_steps: Tuple[float, ...]
    relearning_steps: Tuple[float, ...]
    graduating_interval: int
    easy_interval: int
    new_cards_per_day: int
    reviews_per_day: int
    session_card_limit: int
    mastery_stability_days: float

    @classmethod
    def from_env(cls) -> AppSettings:
        """Construct settings directly from environment variables."""
        app_name = os.getenv("APP_NAME", "Sage Study")
        app_env = os.getenv("APP_ENV", "development")
        log_level = os.getenv("LOG_LEVEL", "INFO")
        remote_scheduler_url = os.getenv("REMOTE_SCHEDULER_URL") or None
        remote_scheduler_token = os.getenv("REMOTE_SCHEDULER_TOKEN") or None

        remote_scheduler_timeout = _float_env("REMOTE_SCHEDULER_TIMEOUT", 30.0)
        if remote_scheduler_timeout <= 0:
            raise RuntimeError("REMOTE_SCHEDULER_TIMEOUT must be positive.")

        sync_max_attempts = _int_env("SYNC_MAX_ATTEMPTS", 3)
        if sync_max_attempts < 1:
            raise RuntimeError("SYNC_MAX_ATTEMPTS must be a positive integer.")

        learner_timezone = os.getenv("LEARNER_TIMEZONE", "UTC")
        try:
            ZoneInfo(learner_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise RuntimeError(f"LEARNER_TIMEZONE {learner_timezone!r} is not a known time zone.") from exc

        request_retention = _float_env("REQUEST_RETENTION", 0.9)
        if not 0.7 <= request_retention <= 0.97:
            raise RuntimeError("REQUEST_RETENTION must be between 0.7 and 0.97.")

        maximum_interval = _int_env("MAXIMUM_INTERVAL", MAX_INTERVAL_DAYS)
        if maximum_interval < 1 or maximum_interval > MAX_INTERVAL_DAYS:
            raise RuntimeError(f"MAXIMUM_INTERVAL must be between 1 and {MAX_INTERVAL_DAYS}.")

        graduating_interval = _int_env("GRADUATING_INTERVAL", 1)
        easy_interval = _int_env("EASY_INTERVAL", 4)
        if graduating_interval < 1 or easy_interval < 1:
            raise RuntimeError("GRADUATING_INTERVAL and EASY_INTERVAL must be at least one day.")

        new_cards_per_day = _int_env("NEW_CARDS_PER_DAY", 20)
        reviews_per_day = _int_env("REVIEWS_PER_DAY", 0)
        if new_cards_per_day < 0 or reviews_per_day < 0:
            raise RuntimeError("NEW_CARDS_PER_DAY and REVIEWS_PER_DAY must not be negative.")

        session_card_limit = _int_env("SESSION_CARD_LIMIT", 20)
        if session_card_limit < 1:
            raise RuntimeError("SESSION_CARD_LIMIT must be a positive integer.")

        mastery_stability_days = _float_env("MASTERY_STABILITY_DAYS", 21.0)
        if mastery_stability_days <= 0:
            raise RuntimeError("MASTERY_STABILITY_DAYS must be positive.")

        return cls(
            app_name=app_name,
            app_env=app_env,
            log_level=log_level,
            remote_scheduler_url=remote_scheduler_url,
            remote_scheduler_token=remote_scheduler_token,
            remote_scheduler_timeout=remote_scheduler_timeout,
            sync_max_attempts=sync_max_attempts,
            learner_timezone=learner_timezone,
            request_retention=request_retention,
            maximum_interval=maximum_interval,
            learning_steps=_steps_env("LEARNING_STEPS", DEFAULT_LEARNING_STEPS),
            relearning_steps=_steps_env("RELEARNING_STEPS", DEFAULT_RELEARNING_STEPS),
            graduating_interval=graduating_interval,
            easy_interval=easy_interval,
            new_cards_per_day=new_cards_per_day,
            reviews_per_day=reviews_per_day,
            session_card_limit=session_card_limit,
            mastery_stability_days=mastery_stability_days,
        )

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            request_retention=self.request_retention,
            maximum_interval=self.maximum_interval,
            learning_steps=self.learning_steps,
            relearning_steps=self.relearning_steps,
            graduating_interval=self.graduating_interval,
            easy_interval=self.easy_interval,
        )
