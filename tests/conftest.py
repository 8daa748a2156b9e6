import base64
import json
import os
import sys
import tempfile

# Settings are read at import time; configure them before the package loads
_DB_DIR = tempfile.mkdtemp(prefix="oj-runner-tests-")
os.environ["PROBLEMS_TABLE"] = "problems"
os.environ["SUBMISSIONS_TABLE"] = "submissions"
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["WORKER_OBSERVABILITY"] = "false"
# Nothing listens here; broker checks fail fast instead of resolving a real host
os.environ["CELERY_BROKER_URL"] = "redis://127.0.0.1:1/0"
os.environ["CELERY_RESULT_BACKEND"] = "redis://127.0.0.1:1/0"
os.environ["SANDBOX_BACKEND"] = "process"
os.environ["PYTHON_EXECUTABLE"] = sys.executable

import pytest
from sqlalchemy import delete

from oj_runner.core.sandbox import ProcessSandboxRunner
from oj_runner.db.base import Base
from oj_runner.db.session import SessionLocal, engine as _engine
from oj_runner.db.store import RecordStore
from oj_runner.models import Problem, Submission
from oj_runner.services.compiler import Compiler
from oj_runner.services.dispatcher import Dispatcher
from oj_runner.services.problems import ProblemFetcher
from oj_runner.services.status import StatusTracker


class RecordingTracker(StatusTracker):
    """StatusTracker that remembers every status it successfully wrote."""

    def __init__(self, store, table=None):
        super().__init__(store, table)
        self.statuses: list[str] = []
        self.attempts: list[str] = []

    def apply(self, submission_id, update):
        self.attempts.append(update.status)
        super().apply(submission_id, update)
        self.statuses.append(update.status)


def encode_body(submission: dict, topic: str = "submissions") -> str:
    binary = base64.b64encode(json.dumps(submission).encode("utf-8")).decode("ascii")
    return json.dumps({"cache": "", "topic": topic, "binary": binary})


def submission_doc(submission_id: str, problem_id: str, code: str, language: str = "python") -> dict:
    return {
        "id": submission_id,
        "user_id": "user-1",
        "problem_id": problem_id,
        "language": language,
        "code": code,
        "status": "pending",
        "result": "",
        "created_at": 1700000000,
        "updated_at": 1700000000,
    }


@pytest.fixture
def engine():
    Base.metadata.create_all(bind=_engine)
    yield _engine
    with _engine.begin() as conn:
        conn.execute(delete(Submission.__table__))
        conn.execute(delete(Problem.__table__))


@pytest.fixture
def store(engine):
    return RecordStore(engine)


@pytest.fixture
def add_problem(engine):
    def _add(problem_id: str, input=None, output=None, **fields):
        with SessionLocal() as db:
            db.add(Problem(id=problem_id, input=input, output=output, **fields))
            db.commit()
    return _add


@pytest.fixture
def add_submission(engine):
    def _add(submission_id: str, problem_id: str, code: str = "", status: str = "pending", **fields):
        with SessionLocal() as db:
            db.add(
                Submission(
                    id=submission_id,
                    problem_id=problem_id,
                    code=code,
                    status=status,
                    **fields,
                )
            )
            db.commit()
    return _add


@pytest.fixture
def tracker(store):
    return RecordingTracker(store)


@pytest.fixture
def runner():
    return ProcessSandboxRunner(python_executable=sys.executable, timeout_seconds=5)


@pytest.fixture
def workspace_root(tmp_path):
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def dispatcher(store, tracker, runner, workspace_root):
    return Dispatcher(
        tracker=tracker,
        problems=ProblemFetcher(store),
        compiler=Compiler(),
        runner=runner,
        invocation_timeout=30,
        workspace_root=str(workspace_root),
        supported_languages={"python"},
    )
