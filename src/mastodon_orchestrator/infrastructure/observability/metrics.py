"""Prometheus metrics configuration."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    REGISTRY,
    write_to_textfile,
)


APP_INFO = Info("mastodon_orchestrator", "Mastodon deployment orchestrator info")
APP_INFO.info({
    "version": "1.0.0",
    "service": "mastodon-deployment-orchestrator",
})

# Plan metrics
PLAN_RUNS_TOTAL = Counter(
    "mastodon_orchestrator_plan_runs_total",
    "Total number of plan runs",
    ["environment", "outcome"],  # outcome: complete/aborted
)

# Stage metrics
STAGE_RUNS_TOTAL = Counter(
    "mastodon_orchestrator_stage_runs_total",
    "Total number of stage runs by final outcome",
    ["stage", "outcome"],  # outcome: complete/aborted/failed
)

STAGE_DURATION = Histogram(
    "mastodon_orchestrator_stage_duration_seconds",
    "Time from first attempt to stage completion or abort",
    ["stage"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800],
)

STAGE_RETRIES = Counter(
    "mastodon_orchestrator_stage_retries_total",
    "Total number of stage retries",
    ["stage", "error_kind"],
)

# Resource metrics
RESOURCE_OPERATIONS_TOTAL = Counter(
    "mastodon_orchestrator_resource_operations_total",
    "Resource operations submitted to the cluster",
    ["kind", "action"],  # action: created/updated/recreated/unchanged/deleted
)

READINESS_POLLS_TOTAL = Counter(
    "mastodon_orchestrator_readiness_polls_total",
    "Readiness probe evaluations",
    ["probe", "result"],  # result: ready/pending/failed
)


def export_metrics(path: str) -> None:
    """Write the registry to a node-exporter textfile."""
    write_to_textfile(path, REGISTRY)
