from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOB_SUBMISSIONS = Counter(
    "job_submissions_total",
    "Job submissions by outcome",
    ["job_type", "result"]  # result=accepted|duplicate|error
)

JOB_COMPLETE_TOTAL = Counter(
    "job_complete_total",
    "Queue deliveries handled by the consumer",
    ["result"]  # success|failure|skipped
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Processor call duration",
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

JOBS_INFLIGHT = Gauge(
    "jobs_inflight",
    "Number of jobs currently being processed by this instance"
)

QUEUE_DEPTH = Gauge(
    "job_queue_depth",
    "Queue entries by state as reported by the queue engine",
    ["state"]  # pending|active
)

QUEUE_ENTRY_FAILURES = Counter(
    "queue_entry_failures_total",
    "Failed queue deliveries",
    ["type"]  # retryable|final
)

REAPER_EXPIRED_ENTRIES = Counter(
    "reaper_expired_entries_total",
    "Queue entries whose lease expired before completion"
)

RECOVERY_OUTCOMES = Counter(
    "job_recovery_total",
    "Stuck job recovery outcomes",
    ["outcome"]  # requeued|failed|skipped|error
)

CLEANUP_REMOVED = Counter(
    "job_cleanup_removed_total",
    "Completed jobs removed by retention cleanup"
)

QUEUE_HEALTHY = Gauge(
    "job_queue_healthy",
    "1 when the last health check reported a healthy queue"
)

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
