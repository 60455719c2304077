from __future__ import annotations

from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

registry = CollectorRegistry(auto_describe=True)

JSON_PARSE_FAILURES = Counter(
    "taletree_json_parse_failures_total",
    "Number of times parsing JSON from model output failed, labeled by the extraction tier.",
    ["tier"],
    registry=registry,
)

GEMINI_CALL_DURATION = Histogram(
    "taletree_gemini_call_duration_seconds",
    "Latency for Gemini API calls per operation.",
    ["operation"],
    registry=registry,
)

GEMINI_CALLS_TOTAL = Counter(
    "taletree_gemini_calls_total",
    "Total Gemini API calls partitioned by operation and status.",
    ["operation", "status"],
    registry=registry,
)

NODES_PROCESSED_TOTAL = Counter(
    "taletree_nodes_processed_total",
    "Placeholder nodes handled by the expansion scheduler, by outcome.",
    ["outcome"],
    registry=registry,
)

PACING_OVERRIDES_TOTAL = Counter(
    "taletree_pacing_overrides_total",
    "Chapters whose ending flag was overridden by the pacing policy.",
    ["kind"],
    registry=registry,
)

MODERATION_VERDICTS_TOTAL = Counter(
    "taletree_moderation_verdicts_total",
    "Moderation gate verdicts.",
    ["verdict"],
    registry=registry,
)

MEDIA_RESULTS_TOTAL = Counter(
    "taletree_media_results_total",
    "Media fan-out results by media kind and outcome.",
    ["kind", "outcome"],
    registry=registry,
)

EXPANSION_DURATION = Histogram(
    "taletree_expansion_duration_seconds",
    "Wall time of a full story expansion run.",
    ["status"],
    registry=registry,
    buckets=(5, 15, 30, 60, 120, 300, 600, 1200, 2400),
)


def increment_json_parse_failure(tier: str) -> None:
    JSON_PARSE_FAILURES.labels(tier=tier).inc()


@contextmanager
def track_gemini_call(operation: str):
    timer = GEMINI_CALL_DURATION.labels(operation=operation).time()
    timer.__enter__()
    try:
        yield
        GEMINI_CALLS_TOTAL.labels(operation=operation, status="success").inc()
    except Exception:
        GEMINI_CALLS_TOTAL.labels(operation=operation, status="error").inc()
        raise
    finally:
        timer.__exit__(None, None, None)


def record_node_outcome(outcome: str) -> None:
    NODES_PROCESSED_TOTAL.labels(outcome=outcome).inc()


def record_pacing_override(kind: str) -> None:
    PACING_OVERRIDES_TOTAL.labels(kind=kind).inc()


def record_moderation_verdict(verdict: str) -> None:
    MODERATION_VERDICTS_TOTAL.labels(verdict=verdict).inc()


def record_media_result(kind: str, outcome: str) -> None:
    MEDIA_RESULTS_TOTAL.labels(kind=kind, outcome=outcome).inc()


def observe_expansion(status: str, seconds: float) -> None:
    EXPANSION_DURATION.labels(status=status).observe(seconds)


def get_metrics_payload() -> bytes:
    return generate_latest(registry)
