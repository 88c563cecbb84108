"""Immutable tunables for the verification engine and their YAML loader."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from crowdcheck.verification.domain.models import Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitTier:
    per_minute: int
    per_hour: int
    per_day: int


@dataclass(frozen=True, slots=True)
class CooldownConfig:
    any_report_seconds: int = 60
    same_kind_seconds: int = 180
    same_location_seconds: int = 300
    same_location_radius_meters: float = 500.0
    lookback_seconds: int = 300


@dataclass(frozen=True, slots=True)
class ThresholdConfig:
    base_report_count: int = 3
    base_reputation_required: int = 100
    report_weight: float = 0.4
    reputation_weight: float = 0.6
    min_reputation_per_user: int = 10
    high_reputation_bonus: float = 0.25
    high_reputation_threshold: int = 100
    bonus_scale_cap: float = 2.0
    reputation_progress_cap: float = 1.5
    threshold_required: float = 1.0
    close_ratio: float = 0.75


@dataclass(frozen=True, slots=True)
class AggregationConfig:
    radius_km: float = 0.5
    window_minutes: int = 30
    lifetime_hours: int = 24


@dataclass(frozen=True, slots=True)
class ReputationConfig:
    correct_delta: int = 10
    incorrect_delta: int = -5
    diminishing_floor: float = 0.5
    diminishing_scale: float = 1000.0
    early_window_minutes: float = 10.0
    established_reputation: int = 50
    established_penalty_multiplier: float = 1.5
    starting_reputation: int = 34
    auto_bonus_multiplier: float = 1.0
    moderator_bonus_multiplier: float = 1.5


@dataclass(frozen=True, slots=True)
class SuspicionConfig:
    violation_penalty: int = 5
    rejection_penalty: int = 10
    flag_penalty: int = 25
    max_score: int = 100
    suspicious_score: int = 80
    suspicious_violations: int = 10
    history_retention_days: int = 30


@dataclass(frozen=True, slots=True)
class TrustScoreConfig:
    base_divisor: float = 100.0
    base_min: float = 0.5
    base_max: float = 2.0
    accuracy_bonus: float = 0.3
    high_reputation_threshold: int = 100
    high_reputation_bonus: float = 0.25
    fake_penalty: float = 0.1
    final_min: float = 0.5
    final_max: float = 2.5
    window_days: int = 30


@dataclass(frozen=True, slots=True)
class SegmentConfig:
    max_stop_distance_meters: float = 1000.0
    on_segment_tolerance_meters: float = 200.0


@dataclass(frozen=True, slots=True)
class VerificationConfig:
    user_tier: RateLimitTier = field(default_factory=lambda: RateLimitTier(per_minute=2, per_hour=10, per_day=50))
    admin_tier: RateLimitTier = field(default_factory=lambda: RateLimitTier(per_minute=10, per_hour=100, per_day=1000))
    cooldown: CooldownConfig = field(default_factory=CooldownConfig)
    threshold: ThresholdConfig = field(default_factory=ThresholdConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    reputation: ReputationConfig = field(default_factory=ReputationConfig)
    suspicion: SuspicionConfig = field(default_factory=SuspicionConfig)
    trust: TrustScoreConfig = field(default_factory=TrustScoreConfig)
    segment: SegmentConfig = field(default_factory=SegmentConfig)

    def tier_for(self, role: Role) -> RateLimitTier:
        if role is Role.ADMIN:
            return self.admin_tier
        return self.user_tier


def _coerce(current: object, value: object) -> object:
    # int() would silently truncate 10.5 to 10 and accept true as 1
    if isinstance(value, bool):
        raise TypeError("boolean for a numeric setting")
    if isinstance(current, int) and isinstance(value, float) and not value.is_integer():
        raise ValueError("not an integer")
    return type(current)(value)


def _section(cls, raw: object):
    default = cls()
    if not isinstance(raw, dict):
        return default
    known = {f.name: f for f in fields(cls)}
    overrides: dict[str, Any] = {}
    for key, value in raw.items():
        name = str(key)
        if name not in known:
            logger.warning("verification config: unknown key %s.%s ignored", cls.__name__, name)
            continue
        current = getattr(default, name)
        try:
            overrides[name] = _coerce(current, value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid value for {cls.__name__}.{name}: {value!r}") from exc
    return replace(default, **overrides)


def _tier(raw: object, default: RateLimitTier) -> RateLimitTier:
    if not isinstance(raw, dict):
        return default
    try:
        return RateLimitTier(
            per_minute=_coerce(default.per_minute, raw.get("per_minute", default.per_minute)),
            per_hour=_coerce(default.per_hour, raw.get("per_hour", default.per_hour)),
            per_day=_coerce(default.per_day, raw.get("per_day", default.per_day)),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid rate limit tier: {raw!r}") from exc


def parse_verification_config(data: Mapping[str, object]) -> VerificationConfig:
    defaults = VerificationConfig()
    tiers = data.get("rate_limits") if isinstance(data.get("rate_limits"), dict) else {}
    config = VerificationConfig(
        user_tier=_tier(tiers.get("user"), defaults.user_tier),
        admin_tier=_tier(tiers.get("admin"), defaults.admin_tier),
        cooldown=_section(CooldownConfig, data.get("cooldown")),
        threshold=_section(ThresholdConfig, data.get("threshold")),
        aggregation=_section(AggregationConfig, data.get("aggregation")),
        reputation=_section(ReputationConfig, data.get("reputation")),
        suspicion=_section(SuspicionConfig, data.get("suspicion")),
        trust=_section(TrustScoreConfig, data.get("trust")),
        segment=_section(SegmentConfig, data.get("segment")),
    )
    weights = config.threshold.report_weight + config.threshold.reputation_weight
    if abs(weights - 1.0) > 1e-6:
        raise ValueError("threshold report_weight and reputation_weight must sum to 1")
    return config


def load_verification_config(path: str | Path | None) -> VerificationConfig:
    """Load engine tunables from YAML, falling back to defaults when absent."""

    if path is None:
        return VerificationConfig()
    file_path = Path(path)
    if not file_path.exists():
        logger.warning("verification config %s not found; using defaults", file_path)
        return VerificationConfig()
    with open(file_path, "r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, dict):
        raise ValueError("verification config must be a mapping")
    return parse_verification_config(loaded)
