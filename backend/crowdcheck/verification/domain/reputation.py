"""Reputation deltas for resolved reports."""

from __future__ import annotations

import math

from crowdcheck.verification.domain.config import ReputationConfig


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def reputation_delta(
    *,
    correct: bool,
    current_reputation: int,
    notification_age_minutes: float | None = None,
    config: ReputationConfig | None = None,
    multiplier: float = 1.0,
) -> int:
    """Return the signed reputation change for one report outcome.

    Rewards shrink as reputation grows (never below half). Correct reports made
    within the early window earn up to double. Wrong reports from established
    identities cost more than wrong reports from newcomers. ``multiplier`` scales
    the unrounded value so the result is rounded exactly once.
    """

    cfg = config or ReputationConfig()
    base = cfg.correct_delta if correct else cfg.incorrect_delta
    diminishing = max(cfg.diminishing_floor, 1 - current_reputation / cfg.diminishing_scale)

    time_bonus = 1.0
    age = notification_age_minutes
    if correct and age is not None and age < cfg.early_window_minutes:
        time_bonus = max(0.0, 1 + (cfg.early_window_minutes - max(age, 0.0)) / cfg.early_window_minutes)

    penalty = 1.0
    if not correct and current_reputation > cfg.established_reputation:
        penalty = cfg.established_penalty_multiplier

    return round_half_up(base * diminishing * time_bonus * penalty * multiplier)
