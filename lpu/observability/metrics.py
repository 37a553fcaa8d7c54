# lpu/observability/metrics.py
from fastapi import APIRouter
from starlette.responses import Response

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter(tags=["observability"])

apply_runs_counter = Counter(
    "lpu_apply_rules_runs_total",
    "Apply-rules runs per final status",
    ["status"],  # completed|partial|cancelled|failed
)

items_counter = Counter(
    "lpu_apply_rules_items_total",
    "Price list items per outcome",
    ["status"],  # applied|unchanged|skipped|failed|not_processed
)

rule_matches_counter = Counter(
    "lpu_rule_matches_total",
    "Number of (item, rule) matches",
)

rule_warnings_counter = Counter(
    "lpu_rule_warnings_total",
    "Rules excluded or flagged at load time",
    ["code"],
)

run_latency_hist = Histogram(
    "lpu_apply_rules_seconds",
    "Duration of one apply-rules run",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)


@router.get("/metrics", include_in_schema=True)
def metrics() -> Response:
    # Prometheus expects text/plain; version=0.0.4
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
