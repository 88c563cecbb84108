"""Per-identity report history with suspicion bookkeeping."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Protocol

from crowdcheck.verification.domain.config import SuspicionConfig
from crowdcheck.verification.domain.models import ReportHistory, ReportHistoryEntry


class ReportHistoryRepository(Protocol):
    """Storage contract; every mutation must be atomic per identity."""

    async def get(self, user_id: str) -> ReportHistory | None:
        ...

    async def append(self, user_id: str, entry: ReportHistoryEntry, *, retain_since: datetime) -> ReportHistory:
        ...

    async def record_violation(self, user_id: str, *, penalty: int, max_score: int) -> ReportHistory:
        ...

    async def add_suspicion(self, user_id: str, amount: int, *, max_score: int) -> int:
        ...

    async def flag(self, user_id: str, amount: int, *, max_score: int, notes: str | None) -> int:
        ...


def is_suspicious(history: ReportHistory | None, config: SuspicionConfig) -> bool:
    if history is None:
        return False
    return (
        history.suspicious_activity_score >= config.suspicious_score
        or history.rate_limit_violations >= config.suspicious_violations
    )


def _snapshot(history: ReportHistory) -> ReportHistory:
    return replace(history, reports=list(history.reports))


class InMemoryReportHistoryRepository(ReportHistoryRepository):
    def __init__(self) -> None:
        self.histories: dict[str, ReportHistory] = {}

    def _ensure(self, user_id: str) -> ReportHistory:
        history = self.histories.get(user_id)
        if history is None:
            history = ReportHistory(user_id=user_id)
            self.histories[user_id] = history
        return history

    async def get(self, user_id: str) -> ReportHistory | None:
        history = self.histories.get(user_id)
        return _snapshot(history) if history else None

    async def append(self, user_id: str, entry: ReportHistoryEntry, *, retain_since: datetime) -> ReportHistory:
        history = self._ensure(user_id)
        history.reports = [item for item in history.reports if item.created_at >= retain_since]
        history.reports.append(entry)
        history.last_report_at = entry.created_at
        return _snapshot(history)

    async def record_violation(self, user_id: str, *, penalty: int, max_score: int) -> ReportHistory:
        history = self._ensure(user_id)
        history.rate_limit_violations += 1
        history.suspicious_activity_score = min(max_score, history.suspicious_activity_score + penalty)
        return _snapshot(history)

    async def add_suspicion(self, user_id: str, amount: int, *, max_score: int) -> int:
        history = self._ensure(user_id)
        history.suspicious_activity_score = min(max_score, history.suspicious_activity_score + amount)
        return history.suspicious_activity_score

    async def flag(self, user_id: str, amount: int, *, max_score: int, notes: str | None) -> int:
        history = self._ensure(user_id)
        history.suspicious_activity_score = min(max_score, history.suspicious_activity_score + amount)
        history.flagged_by_moderator = True
        history.moderator_notes = notes
        return history.suspicious_activity_score
