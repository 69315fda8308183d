from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

# Keep metrics module-level singletons
jobs_submitted_total = Counter("jobs_submitted_total", "Total jobs submitted via API")
error_count = Counter("error_count", "Total errors encountered by the control plane")
request_latency_seconds = Histogram("request_latency_seconds", "HTTP request latency seconds")

# Queue metrics
batches_enqueued_total = Counter("batches_enqueued_total", "Batches enqueued into the batch queue")
batches_dead_lettered_total = Counter("batches_dead_lettered_total", "Batches moved to the dead-letter queue")
enqueue_latency_seconds = Histogram("enqueue_latency_seconds", "Time to enqueue a batch")
queue_poll_errors_total = Counter("queue_poll_errors_total", "Queue errors raised while polling")

# Worker / execution metrics
batches_processed_total = Counter("batches_processed_total", "Batches executed and completed by workers")
batches_failed_total = Counter("batches_failed_total", "Batch executions that raised")
execution_latency_seconds = Histogram("execution_latency_seconds", "Batch execution latency seconds")
active_workers = Gauge("active_workers", "Number of batch executions in flight")

# Cache metrics
cache_hits_total = Counter("cache_hits_total", "Cache lookups served from storage")
cache_misses_total = Counter("cache_misses_total", "Cache lookups that fell through to compute")
cache_write_errors_total = Counter("cache_write_errors_total", "Cache writes that failed")


def metrics_response():
    # Return prometheus metrics as a Response
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
