import os
import time
import logging
from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, start_http_server
from threading import Thread, Event
import redis as redis_lib

logger = logging.getLogger(__name__)

# Ensure Prometheus multiprocess directory exists if needed
mp_dir = os.getenv("PROMETHEUS_MULTIPROC_DIR")
if mp_dir:
    try:
        os.makedirs(mp_dir, exist_ok=True)
    except OSError as e:
        logger.warning(f"Failed to create Prometheus multiprocess directory {mp_dir}: {e}")


# ----------
# Core metrics
# ----------

# Inbound requests
JUDGE_REQUESTS_RECEIVED_TOTAL = Counter(
    "judge_requests_received_total",
    "Total judge requests received",
)

JUDGE_REQUEST_DECODE_FAILURES_TOTAL = Counter(
    "judge_request_decode_failures_total",
    "Requests rejected before a submission could be decoded",
    labelnames=("reason",),
)

# Pipeline runs
JUDGE_RUNS_STARTED_TOTAL = Counter(
    "judge_runs_started_total",
    "Total judging pipelines started",
)

JUDGE_RUNS_COMPLETED_TOTAL = Counter(
    "judge_runs_completed_total",
    "Total judging pipelines that ended in a completed status",
)

JUDGE_RUNS_FAILED_TOTAL = Counter(
    "judge_runs_failed_total",
    "Total judging pipelines that ended in an error status",
    labelnames=("reason",),
)

JUDGE_RUN_DURATION_SECONDS = Histogram(
    "judge_run_duration_seconds",
    "Time spent judging a submission end to end",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

JUDGE_STATUS_WRITE_FAILURES_TOTAL = Counter(
    "judge_status_write_failures_total",
    "Status transitions that could not be persisted",
    labelnames=("status",),
)

# Celery queue backlog
CELERY_QUEUE_LENGTH = Gauge(
    "celery_queue_length",
    "Length of Celery broker queue in Redis",
    labelnames=("queue_name",),
)


def start_worker_metrics_server(port: Optional[int] = None) -> None:
    """Start a Prometheus metrics HTTP server for the worker process.

    When PROMETHEUS_MULTIPROC_DIR is set, the exposed registry is backed by
    prometheus_client.multiprocess.MultiProcessCollector so counters from
    prefork children are aggregated.
    """
    from oj_runner.core.config import settings

    p = int(port or settings.WORKER_METRICS_PORT)
    try:
        mp_dir = os.getenv("PROMETHEUS_MULTIPROC_DIR")
        if mp_dir:
            os.makedirs(mp_dir, exist_ok=True)
            for fname in os.listdir(mp_dir):
                if fname.endswith(".db"):
                    try:
                        os.remove(os.path.join(mp_dir, fname))
                    except OSError as e:
                        logger.debug("mp_dir_cleanup_failed", extra={"file": fname, "error": str(e)})

            from prometheus_client import CollectorRegistry, multiprocess

            registry = CollectorRegistry()
            multiprocess.MultiProcessCollector(registry)
            start_http_server(p, addr="0.0.0.0", registry=registry)
            logger.info(f"Multiprocess metrics server started on 0.0.0.0:{p}")
        else:
            start_http_server(p, addr="0.0.0.0")
            logger.info(f"Metrics server started on 0.0.0.0:{p}")
    except OSError as e:
        # Port already in use; ignore to prevent crash in forked workers
        logger.error(f"Failed to start worker metrics server on port {p}: {str(e)}")


def start_celery_queue_length_collector(
    redis_url: Optional[str],
    queue_names: Optional[list[str]] = None,
    interval_seconds: int = 10,
):
    """Periodically collect Redis LLEN for Celery queues and export as a gauge.

    Returns a stop_event that can be set() to stop the collector.
    """
    queue_names = queue_names or ["celery"]
    stop_event: Event = Event()

    def _run():
        client = None
        while not stop_event.is_set():
            try:
                if client is None and redis_url:
                    client = redis_lib.from_url(redis_url, socket_timeout=5)
                for q in queue_names:
                    llen = client.llen(q) if client is not None else 0
                    CELERY_QUEUE_LENGTH.labels(queue_name=q).set(float(llen))
            except redis_lib.RedisError as e:
                client = None
                logger.debug("queue_length_loop_error", extra={"error": str(e)})
            finally:
                stop_event.wait(interval_seconds)

    t = Thread(target=_run, daemon=True)
    t.start()
    return stop_event


class DurationTimer:
    """Simple context manager to measure durations with perf_counter."""

    def __init__(self):
        self._start = 0.0
        self.seconds = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.seconds = max(0.0, time.perf_counter() - self._start)
        return False


def init_fastapi_instrumentation(app) -> None:
    """Attach per-route HTTP metrics to the FastAPI app.

    Imported lazily so worker processes don't need the FastAPI instrumentator.
    """
    from prometheus_fastapi_instrumentator import Instrumentator
    from prometheus_client import CollectorRegistry, multiprocess, REGISTRY

    if os.getenv("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        instrumentator = Instrumentator(registry=registry)
    else:
        instrumentator = Instrumentator(registry=REGISTRY)

    # /metrics is served by the app itself so the judge counters share one registry
    instrumentator.instrument(app)
