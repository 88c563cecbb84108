"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"crowdcheck_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"crowdcheck_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

REPORTS_SUBMITTED = Counter(
	"crowdcheck_reports_total",
	"Incident reports processed by outcome",
	["result"],
)

CANDIDATES_PUBLISHED = Counter(
	"crowdcheck_candidates_published_total",
	"Pending incidents promoted to published incidents",
	["path"],
)

PUBLISH_RACES_LOST = Counter(
	"crowdcheck_publish_races_lost_total",
	"Publish attempts that lost the compare-and-set to a concurrent winner",
)

REWARDS = Counter(
	"crowdcheck_reputation_rewards_total",
	"Reputation adjustments applied to reporters",
	["reason", "result"],
)

MODERATOR_DECISIONS = Counter(
	"crowdcheck_moderator_decisions_total",
	"Moderator decisions on pending incidents",
	["decision"],
)

MODERATOR_QUEUE_DEPTH = Gauge(
	"crowdcheck_moderator_queue_depth",
	"Live moderator queue items observed at the last listing",
)

NOTIFICATIONS_TARGETED = Counter(
	"crowdcheck_notifications_targeted_total",
	"Notification targets emitted per priority",
	["priority"],
)

BACKGROUND_RUNS = Counter(
	"crowdcheck_jobs_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"crowdcheck_jobs_duration_seconds",
	"Background job duration",
	["name"],
	buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 30.0, 60.0),
)


def observe_request(route: str, method: str, status: int, duration_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(duration_seconds)


def inc_report(result: str) -> None:
	REPORTS_SUBMITTED.labels(result=result).inc()


def inc_published(path: str) -> None:
	CANDIDATES_PUBLISHED.labels(path=path).inc()


def inc_publish_race_lost() -> None:
	PUBLISH_RACES_LOST.inc()


def inc_reward(reason: str, result: str) -> None:
	REWARDS.labels(reason=reason, result=result).inc()


def inc_moderator_decision(decision: str) -> None:
	MODERATOR_DECISIONS.labels(decision=decision).inc()


def set_queue_depth(depth: int) -> None:
	MODERATOR_QUEUE_DEPTH.set(depth)


def inc_notification_target(priority: str) -> None:
	NOTIFICATIONS_TARGETED.labels(priority=priority).inc()


def record_job_run(name: str, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)
