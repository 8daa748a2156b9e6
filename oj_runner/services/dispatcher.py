import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from sqlalchemy.engine import Engine

from oj_runner.core.config import settings
from oj_runner.core.errors import DecodeError, JudgeError, PersistenceError, ValidationError
from oj_runner.core.logging_config import log_context
from oj_runner.core.metrics import (
    JUDGE_REQUESTS_RECEIVED_TOTAL,
    JUDGE_REQUEST_DECODE_FAILURES_TOTAL,
    JUDGE_RUNS_STARTED_TOTAL,
    JUDGE_RUNS_COMPLETED_TOTAL,
    JUDGE_RUNS_FAILED_TOTAL,
    JUDGE_RUN_DURATION_SECONDS,
    DurationTimer,
)
from oj_runner.core.sandbox import Deadline, ProcessSandboxRunner
from oj_runner.core.workspace import scratch_workspace
from oj_runner.db.store import RecordStore
from oj_runner.schemas import ParseFailure, SubmissionPayload, parse_request
from oj_runner.services.compiler import Compiler
from oj_runner.services.judge import Verdict, judge
from oj_runner.services.problems import ProblemFetcher
from oj_runner.services.status import StatusTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    status_code: int
    body: dict[str, Any]

    @classmethod
    def success(cls, result: str) -> "DispatchResult":
        return cls(status_code=200, body={"result": result})

    @classmethod
    def failure(cls, error: str) -> "DispatchResult":
        return cls(status_code=500, body={"error": error})

    @property
    def ok(self) -> bool:
        return self.status_code == 200


class Dispatcher:
    """Runs one submission through decode, compile, run and judge.

    ``dispatch`` never raises. Every failure after a submission has been
    decoded ends in exactly one best-effort ``error`` status write; a request
    that cannot be decoded gets no status write at all because there is no
    submission id to write to.
    """

    def __init__(
        self,
        tracker: StatusTracker,
        problems: ProblemFetcher,
        compiler: Compiler,
        runner,
        invocation_timeout: Optional[float] = None,
        workspace_root: Optional[str] = None,
        supported_languages: Optional[set[str]] = None,
    ):
        self.tracker = tracker
        self.problems = problems
        self.compiler = compiler
        self.runner = runner
        self.invocation_timeout = invocation_timeout or settings.INVOCATION_TIMEOUT_SECONDS
        self.workspace_root = workspace_root
        self.supported_languages = (
            supported_languages if supported_languages is not None else settings.supported_languages
        )

    def dispatch(self, body: Union[str, bytes, None]) -> DispatchResult:
        JUDGE_REQUESTS_RECEIVED_TOTAL.inc()
        try:
            parsed = parse_request(body)
        except Exception as e:
            # No submission id yet, so there is nothing to mark as failed
            logger.exception(f"Unexpected error decoding request: {e}", extra={"stage": "decode"})
            parsed = ParseFailure(error=DecodeError(f"Internal error: {e}"))
        if isinstance(parsed, ParseFailure):
            JUDGE_REQUEST_DECODE_FAILURES_TOTAL.labels(reason=parsed.error.reason).inc()
            logger.warning(f"Rejected request: {parsed.message}", extra={"stage": "decode"})
            return DispatchResult.failure(parsed.message)

        submission = parsed.submission
        with log_context(submission_id=submission.id, problem_id=submission.problem_id):
            return self._dispatch_submission(submission, parsed.topic)

    def _dispatch_submission(self, submission: SubmissionPayload, topic: str) -> DispatchResult:
        logger.info(f"Judging submission {submission.id} (topic={topic or '-'})", extra={"stage": "start"})

        JUDGE_RUNS_STARTED_TOTAL.inc()
        error: Optional[str] = None
        reason = "internal"
        with DurationTimer() as timer:
            try:
                verdict = self._run_pipeline(submission)
            except JudgeError as e:
                error, reason = str(e), e.reason
                logger.info(f"Judging failed ({reason}): {error}", extra={"stage": "failed"})
            except Exception as e:
                error = f"Internal error: {str(e) or type(e).__name__}"
                logger.exception(
                    f"Unexpected error judging submission {submission.id}: {e}",
                    extra={"stage": "failed"},
                )
            if error is not None:
                self._record_failure(submission.id, error)
        JUDGE_RUN_DURATION_SECONDS.observe(timer.seconds)

        if error is not None:
            JUDGE_RUNS_FAILED_TOTAL.labels(reason=reason).inc()
            return DispatchResult.failure(error)

        JUDGE_RUNS_COMPLETED_TOTAL.inc()
        logger.info(
            f"Submission {submission.id} accepted in {timer.seconds:.3f}s",
            extra={"stage": "completed", "duration_ms": int(timer.seconds * 1000)},
        )
        return DispatchResult.success(verdict.result)

    def _check_submission(self, submission: SubmissionPayload) -> None:
        if submission.code is None:
            raise ValidationError("Submission code is missing")
        language = submission.language or ""
        # An empty tag means the publisher routed by topic and left it unset
        if language and language.lower() not in self.supported_languages:
            supported = ", ".join(sorted(self.supported_languages))
            raise ValidationError(f"Unsupported language: {language}. Supported languages: {supported}")

    def _run_pipeline(self, submission: SubmissionPayload) -> Verdict:
        deadline = Deadline(self.invocation_timeout)

        self.tracker.mark_running(submission.id)
        self._check_submission(submission)

        with log_context(stage="fetch_problem"):
            logger.debug("Fetching problem")
            reference_input, expected_output = self.problems.fetch(submission.problem_id)

        with scratch_workspace(root=self.workspace_root) as workspace:
            with log_context(stage="compile", workspace=str(workspace.path)):
                logger.debug("Compiling")
                artifact = self.compiler.compile(submission.code, workspace)

            with log_context(stage="run"):
                logger.debug("Running")
                actual_output = self.runner.run(artifact, workspace, reference_input, deadline=deadline)

            with log_context(stage="judge"):
                logger.debug("Judging output")
                verdict = judge(actual_output, expected_output)

            self.tracker.mark_completed(submission.id, verdict.result)
        return verdict

    def _record_failure(self, submission_id: str, error: str) -> None:
        try:
            self.tracker.mark_error(submission_id, error)
        except PersistenceError as e:
            # Never mask the original failure with the secondary one
            logger.error(f"Failed to record error status for {submission_id}: {e}", extra={"stage": "mark_error"})


def build_sandbox_runner(backend: Optional[str] = None):
    backend = (backend or settings.SANDBOX_BACKEND).lower()
    if backend == "docker":
        from oj_runner.core.docker import DockerSandboxRunner

        return DockerSandboxRunner()
    if backend == "process":
        return ProcessSandboxRunner()
    raise ValueError(f"Unknown SANDBOX_BACKEND: {backend}")


def build_dispatcher(engine: Optional[Engine] = None) -> Dispatcher:
    if engine is None:
        from oj_runner.db.session import engine
    store = RecordStore(engine)
    return Dispatcher(
        tracker=StatusTracker(store),
        problems=ProblemFetcher(store),
        compiler=Compiler(),
        runner=build_sandbox_runner(),
    )
