"""Central registry for Prometheus metrics used by the trust subsystem."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNTER = Counter(
	"trust_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"trust_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

RATE_LIMIT_DECISIONS = Counter(
	"trust_rate_limit_decisions_total",
	"Rate limit decisions by action type and outcome",
	["action", "outcome"],
)

RATE_LIMIT_DEGRADED = Counter(
	"trust_rate_limit_degraded_total",
	"Rate limit decisions taken without the counter store",
	["action", "policy"],
)

RATE_WINDOW_GC_REMOVED = Counter(
	"trust_rate_window_gc_removed_total",
	"Expired rate limit windows deleted by the cleanup sweep",
)

REVIEW_TRANSITIONS = Counter(
	"trust_review_transitions_total",
	"Review status transitions",
	["from_status", "to_status"],
)

REVIEW_CONFLICTS = Counter(
	"trust_review_conflicts_total",
	"Review submissions rejected as duplicates",
)

AGGREGATE_RECOMPUTE_SECONDS = Histogram(
	"trust_aggregate_recompute_seconds",
	"Latency of client aggregate recomputation",
	buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

ASSESSMENTS_INGESTED = Counter(
	"trust_assessments_ingested_total",
	"AI assessments appended to the history",
	["analysis_type"],
)

CONFIG_CACHE_LOOKUPS = Counter(
	"trust_config_cache_lookups_total",
	"Limit configuration cache lookups",
	["result"],
)


def observe_decision(action: str, allowed: bool) -> None:
	RATE_LIMIT_DECISIONS.labels(action=action, outcome="allowed" if allowed else "denied").inc()


def observe_transition(from_status: str, to_status: str) -> None:
	if from_status == to_status:
		return
	REVIEW_TRANSITIONS.labels(from_status=from_status, to_status=to_status).inc()


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)
