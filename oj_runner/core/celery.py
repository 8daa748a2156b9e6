import logging
from typing import Any

from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure

from oj_runner.core.config import settings
from oj_runner.core.logging_config import log_context, setup_logging
from oj_runner.core.metrics import start_worker_metrics_server, start_celery_queue_length_collector

# Ensure structured JSON logging for the worker process
setup_logging()

celery_app = Celery(
    "worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Hard stop well past the invocation deadline; the dispatcher enforces its own
    task_time_limit=int(settings.INVOCATION_TIMEOUT_SECONDS) + 30,
    task_reject_on_worker_lost=False,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    task_routes={
        "judge_submission": {"queue": "celery"},
    },
)


@celery_app.on_after_configure.connect
def setup_observability(sender, **kwargs):
    logger = logging.getLogger(__name__)
    if not settings.WORKER_OBSERVABILITY:
        logger.info("Worker observability disabled")
        return

    logger.info("Setting up observability for Celery worker")
    start_worker_metrics_server()
    start_celery_queue_length_collector(
        settings.CELERY_BROKER_URL,
        queue_names=["celery"],
        interval_seconds=10,
    )
    logger.info("Worker metrics server and queue length collector started")


# ---- Celery task lifecycle structured logs ----

def _task_extra(task_id, task) -> dict[str, Any]:
    return {"task_name": getattr(task, "name", None), "task_id": task_id}


@task_prerun.connect
def _on_task_start(task_id=None, task=None, **extra_kwargs):
    logging.getLogger("celery.task").info("task_started", extra=_task_extra(task_id, task))


@task_postrun.connect
def _on_task_success(task_id=None, task=None, retval=None, state=None, **extra_kwargs):
    extra = _task_extra(task_id, task)
    if isinstance(retval, dict):
        extra["status_code"] = retval.get("status_code")
    logging.getLogger("celery.task").info(f"task_finished: {state}", extra=extra)


@task_failure.connect
def _on_task_failure(task_id=None, exception=None, sender=None, **extra_kwargs):
    logging.getLogger("celery.task").error(
        f"task_failed: {str(exception)}",
        extra=_task_extra(task_id, sender),
    )


@celery_app.task(bind=True, name="judge_submission", max_retries=0)
def judge_submission_task(self, body: str) -> dict[str, Any]:
    """Judge one submission delivered as a raw request body.

    Failures are already recorded on the submission by the dispatcher, so the
    task reports them in its return value instead of raising.
    """
    from oj_runner.api.runs import get_dispatcher

    with log_context(task_id=self.request.id, task_name=self.name):
        result = get_dispatcher().dispatch(body)
    return {"status_code": result.status_code, **result.body}
