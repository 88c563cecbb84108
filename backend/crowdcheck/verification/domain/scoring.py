"""Reputation-weighted threshold scoring for candidates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from crowdcheck.verification.domain.config import ThresholdConfig


@dataclass(frozen=True, slots=True)
class ThresholdResult:
    score: float
    required: float
    is_official: bool
    report_score: float
    reputation_score: float
    bonus_multiplier: float
    valid_reporters: int
    reports_needed: int
    reputation_needed: int
    is_close: bool

    @property
    def progress(self) -> int:
        return round(self.score * 100)


class ThresholdScorer:
    """Pure scorer: the same reputations always yield the same result.

    Only reporters at or above ``min_reputation_per_user`` count. The
    high-reputation bonus keys off the strongest reporter so adding a reporter
    can never lower the score.
    """

    def __init__(self, config: ThresholdConfig | None = None) -> None:
        self.config = config or ThresholdConfig()

    def score(self, reputations: Sequence[int], *, required: float | None = None) -> ThresholdResult:
        cfg = self.config
        required = cfg.threshold_required if required is None else required
        valid = [rep for rep in reputations if rep >= cfg.min_reputation_per_user]

        report_score = min(len(valid) / cfg.base_report_count, 1.0) if cfg.base_report_count > 0 else 1.0
        valid_sum = sum(valid)
        strongest = max(valid, default=0)

        multiplier = 1.0
        if valid and strongest >= cfg.high_reputation_threshold:
            scale = min(strongest / cfg.high_reputation_threshold, cfg.bonus_scale_cap)
            multiplier = 1.0 + cfg.high_reputation_bonus * scale

        if cfg.base_reputation_required > 0:
            reputation_score = min(valid_sum / cfg.base_reputation_required * multiplier, cfg.reputation_progress_cap)
        else:
            reputation_score = 1.0 if valid else 0.0

        combined = cfg.report_weight * report_score + cfg.reputation_weight * reputation_score
        score = max(0.0, min(combined, 1.0))
        is_official = score >= required
        return ThresholdResult(
            score=score,
            required=required,
            is_official=is_official,
            report_score=report_score,
            reputation_score=reputation_score,
            bonus_multiplier=multiplier,
            valid_reporters=len(valid),
            reports_needed=max(0, cfg.base_report_count - len(valid)),
            reputation_needed=max(0, cfg.base_reputation_required - valid_sum),
            is_close=not is_official and score >= required * cfg.close_ratio,
        )
