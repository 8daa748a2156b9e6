"""Structured JSON logging for the API and the worker.

Judging code binds its context once per invocation with ``log_context`` and
every record logged underneath carries it, whichever module emits it:

    with log_context(submission_id=s.id, problem_id=s.problem_id):
        ...
"""
import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

from pythonjsonlogger import jsonlogger

# Always present in the JSON output, even when nothing bound them
CONTEXT_FIELDS = ("submission_id", "problem_id", "stage", "task_id", "request_id")

_context: ContextVar[dict[str, Any]] = ContextVar("oj_runner_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields to every record logged in this context, nesting over outer bindings."""
    token = _context.set({**_context.get(), **fields})
    try:
        yield
    finally:
        _context.reset(token)


def current_context() -> dict[str, Any]:
    return dict(_context.get())


class ContextFilter(logging.Filter):
    """Copy the bound context onto each record; explicit ``extra`` wins."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        bound = _context.get()
        for key in CONTEXT_FIELDS:
            if not hasattr(record, key):
                setattr(record, key, bound.get(key))
        for key, value in bound.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        record.service = self.service_name
        return True


def setup_logging() -> None:
    """Configure root logger to output structured JSON logs to stdout.

    Safe to call from both the API and the worker entrypoints; repeated calls
    replace the handler rather than stacking another one.
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    service_name = os.getenv("SERVICE_NAME", "oj-runner")

    handler = logging.StreamHandler()
    fields = ["asctime", "levelname", "name", "message", "service", *CONTEXT_FIELDS]
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            " ".join(f"%({name})s" for name in fields),
            rename_fields={"levelname": "level", "asctime": "time"},
        )
    )
    handler.addFilter(ContextFilter(service_name))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
    logging.captureWarnings(True)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "celery"):
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.propagate = True
