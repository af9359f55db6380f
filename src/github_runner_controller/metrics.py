"""Prometheus metrics for monitoring and alerting."""

from prometheus_client import Counter, Gauge, Histogram

RUNNER_COUNT = Gauge(
    "github_runner_count",
    "Number of GitHub runners by state",
    ["repository", "kind", "state"]
)
RUNNER_OPERATIONS = Counter(
    "github_runner_operations_total",
    "Total runner container operations",
    ["operation", "result", "kind"]
)
SCALING_DECISIONS = Counter(
    "github_runner_scaling_decisions_total",
    "Total scaling decisions made",
    ["repository", "direction", "reason", "outcome"]
)
CREDENTIAL_REFRESHES = Counter(
    "github_runner_credential_refreshes_total",
    "Credential refresh attempts",
    ["result"]
)
HEALTH_TRANSITIONS = Counter(
    "github_runner_health_transitions_total",
    "Runner state transitions observed by the health supervisor",
    ["from_state", "to_state"]
)
QUARANTINED_RUNNERS = Gauge(
    "github_runner_quarantined",
    "Runners quarantined after failed recovery",
    ["repository"]
)
ROUTING_OUTCOMES = Counter(
    "github_runner_routing_outcomes_total",
    "Job routing outcomes",
    ["repository", "outcome"]
)
JOB_QUEUE_DEPTH = Gauge(
    "github_job_queue_depth",
    "Jobs waiting in the router queue",
    ["repository"]
)
RUNNER_LIFECYCLE_DURATION = Histogram(
    "github_runner_lifecycle_duration_seconds",
    "Runner lifecycle phase duration in seconds",
    ["phase", "kind"]
)
