from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_CREATED_TOTAL = Counter('jobs_created_total', 'Total jobs created', ['type'])
JOBS_DELETED_TOTAL = Counter('jobs_deleted_total', 'Total jobs deleted', ['type'])

RULE_FIRES_TOTAL = Counter('rule_fires_total', 'Rules that fired and emitted a dispatch signal', ['kind'])
RULES_ACTIVE = Gauge('rules_active', 'Number of enabled rules')

INVOCATIONS_TOTAL = Counter(
    "invocations_total",
    "Finalized invocations",
    ["status", "error_kind"] # error_kind is "" for completed runs
)
INVOCATION_DURATION = Histogram(
    'invocation_duration_seconds',
    'Time spent inside the executor',
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 60.0, 300.0]
)

SIGNALS_PENDING = Gauge(
    "dispatch_signals_pending",
    "Dispatch signals waiting to be processed"
)
SIGNALS_REQUEUED_TOTAL = Counter(
    "dispatch_signals_requeued_total",
    "Claimed signals put back to pending after the claim timed out"
)

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
