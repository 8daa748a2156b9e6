import datetime
import logging
import time
from uuid import uuid4

import redis as _redis
from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from oj_runner.api import runs, submissions
from oj_runner.core.config import settings
from oj_runner.core.logging_config import log_context, setup_logging
from oj_runner.core.metrics import init_fastapi_instrumentation
from oj_runner.db.session import engine, init_db

# Configure logging (JSON)
setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="OJ Runner",
    description="Compiles, runs and judges submitted programs",
    version="1.0.0"
)

# Per-route HTTP metrics
try:
    init_fastapi_instrumentation(app)
except Exception as _e:
    logger.exception("Prometheus metrics init failed", extra={"error": str(_e)})


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info("Database initialized")


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_logger = logging.getLogger("request")
    start = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    http_extra = {
        "method": request.method,
        "path": request.url.path,
        "client": request.client.host if request.client else "-",
    }

    # Judging logs emitted while serving this request carry its id
    with log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = int((time.perf_counter() - start) * 1000)
            request_logger.exception(
                "request_failed",
                extra={**http_extra, "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        duration_ms = int((time.perf_counter() - start) * 1000)
        request_logger.info(
            "request_completed",
            extra={**http_extra, "status_code": response.status_code, "duration_ms": duration_ms},
        )
    response.headers["X-Request-ID"] = request_id
    return response


# Include API routes
app.include_router(runs.router, prefix="/api", tags=["runs"])
app.include_router(submissions.router, prefix="/api", tags=["submissions"])


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check():
    """Liveness + Readiness: verify the database and the Celery broker.

    Returns JSON with overall status and component statuses. If any component
    check fails, status is "unhealthy".
    """
    statuses: dict[str, str] = {}
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        statuses["database"] = "ok"
    except SQLAlchemyError as e:
        statuses["database"] = f"error: {e}"

    try:
        broker = _redis.from_url(settings.CELERY_BROKER_URL, socket_timeout=2)
        broker.ping()
        statuses["broker"] = "ok"
    except (_redis.RedisError, ValueError) as e:
        statuses["broker"] = f"error: {e}"

    healthy = all(v == "ok" for v in statuses.values())
    log = logger.info if healthy else logger.error
    log("health_check_passed" if healthy else "health_check_failed", extra={"components": statuses})

    return {
        "status": "healthy" if healthy else "unhealthy",
        "components": statuses,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }
