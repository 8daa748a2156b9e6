import logging
import time
from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union

from oj_runner.core.config import settings
from oj_runner.core.errors import PersistenceError
from oj_runner.core.metrics import JUDGE_STATUS_WRITE_FAILURES_TOTAL
from oj_runner.db.store import RecordStore
from oj_runner.models.submission import SubmissionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunningUpdate:
    status: ClassVar[str] = SubmissionStatus.RUNNING.value
    # Unconditional so an external caller may re-run the whole pipeline
    expected_prior: ClassVar[Optional[str]] = None

    def attributes(self) -> dict[str, Any]:
        return {"status": self.status}


@dataclass(frozen=True)
class CompletedUpdate:
    result: str
    status: ClassVar[str] = SubmissionStatus.COMPLETED.value
    expected_prior: ClassVar[Optional[str]] = SubmissionStatus.RUNNING.value

    def attributes(self) -> dict[str, Any]:
        return {"status": self.status, "result": self.result}


@dataclass(frozen=True)
class ErrorUpdate:
    error: str
    status: ClassVar[str] = SubmissionStatus.ERROR.value
    expected_prior: ClassVar[Optional[str]] = SubmissionStatus.RUNNING.value

    def attributes(self) -> dict[str, Any]:
        # The submission record has a single text slot for result and error
        return {"status": self.status, "result": self.error}


StatusUpdate = Union[RunningUpdate, CompletedUpdate, ErrorUpdate]


class StatusTracker:
    """Persists Submission lifecycle transitions.

    Terminal transitions only apply to a submission that is still ``running``;
    a late or concurrent second terminal write is rejected with
    StaleTransitionError instead of silently overwriting the first.
    """

    def __init__(self, store: RecordStore, table: Optional[str] = None):
        self.store = store
        self.table = table or settings.SUBMISSIONS_TABLE

    def apply(self, submission_id: str, update: StatusUpdate) -> None:
        attributes = update.attributes()
        attributes["updated_at"] = int(time.time())
        expected = {"status": update.expected_prior} if update.expected_prior else None
        try:
            self.store.update_record(self.table, submission_id, attributes, expected=expected)
        except PersistenceError:
            JUDGE_STATUS_WRITE_FAILURES_TOTAL.labels(status=update.status).inc()
            raise
        logger.info(
            f"Submission status set to {update.status}",
            extra={"submission_id": submission_id, "stage": update.status},
        )

    def mark_running(self, submission_id: str) -> None:
        self.apply(submission_id, RunningUpdate())

    def mark_completed(self, submission_id: str, result: str) -> None:
        self.apply(submission_id, CompletedUpdate(result=result))

    def mark_error(self, submission_id: str, error: str) -> None:
        self.apply(submission_id, ErrorUpdate(error=error))
