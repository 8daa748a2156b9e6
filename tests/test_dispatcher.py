import json
import sys

import pytest

from oj_runner.core.errors import PersistenceError
from oj_runner.core.sandbox import ProcessSandboxRunner
from oj_runner.services.compiler import COMPILATION_FAILED_MARKER, Compiler
from oj_runner.services.dispatcher import Dispatcher, DispatchResult, build_sandbox_runner
from oj_runner.services.problems import ProblemFetcher

from conftest import encode_body, submission_doc

DOUBLE = "print(int(input()) * 2)\n"


def _submission(store, submission_id):
    return store.get_record("submissions", submission_id)


def test_accepted_submission(dispatcher, tracker, store, add_problem, add_submission):
    add_problem("double", input="3", output="6")
    add_submission("s1", "double", code=DOUBLE)

    result = dispatcher.dispatch(encode_body(submission_doc("s1", "double", DOUBLE)))

    assert result == DispatchResult(200, {"result": "6"})
    assert result.ok
    assert tracker.statuses == ["running", "completed"]
    record = _submission(store, "s1")
    assert record["status"] == "completed"
    assert record["result"] == "6"


def test_wrong_answer(dispatcher, tracker, store, add_problem, add_submission):
    add_problem("hello", input="", output="hi")
    add_submission("s2", "hello", code="print('bye')")

    result = dispatcher.dispatch(encode_body(submission_doc("s2", "hello", "print('bye')")))

    assert result.status_code == 500
    error = result.body["error"]
    assert "hi" in error and "bye" in error
    assert error.startswith("Output mismatch!")
    assert tracker.statuses == ["running", "error"]
    assert _submission(store, "s2")["result"] == error


def test_compile_error(dispatcher, tracker, store, add_problem, add_submission):
    add_problem("double", input="3", output="6")
    add_submission("s3", "double")

    result = dispatcher.dispatch(encode_body(submission_doc("s3", "double", "def (:\n")))

    assert result.status_code == 500
    assert result.body["error"].startswith(COMPILATION_FAILED_MARKER)
    assert "SyntaxError" in result.body["error"]
    assert tracker.statuses == ["running", "error"]
    assert _submission(store, "s3")["status"] == "error"


def test_runtime_error(dispatcher, tracker, add_problem, add_submission):
    add_problem("double", input="x", output="6")
    add_submission("s4", "double")

    result = dispatcher.dispatch(encode_body(submission_doc("s4", "double", DOUBLE)))

    assert result.status_code == 500
    assert result.body["error"].startswith("Runtime error")
    assert "ValueError" in result.body["error"]
    assert tracker.statuses == ["running", "error"]


def test_timeout(store, tracker, add_problem, add_submission, workspace_root):
    dispatcher = Dispatcher(
        tracker=tracker,
        problems=ProblemFetcher(store),
        compiler=Compiler(),
        runner=ProcessSandboxRunner(python_executable=sys.executable, timeout_seconds=0.5),
        workspace_root=str(workspace_root),
    )
    add_problem("loop", input="", output="")
    add_submission("s5", "loop")

    result = dispatcher.dispatch(encode_body(submission_doc("s5", "loop", "while True:\n    pass\n")))

    assert result.status_code == 500
    assert "timed out" in result.body["error"]
    assert tracker.statuses == ["running", "error"]


def test_malformed_base64_writes_no_status(dispatcher, tracker):
    result = dispatcher.dispatch(json.dumps({"cache": "", "topic": "t", "binary": "***"}))
    assert result.status_code == 500
    assert result.body["error"].startswith("Invalid base64")
    assert tracker.attempts == []


@pytest.mark.parametrize("body", [None, "", "not json", json.dumps({"topic": "t"})])
def test_undecodable_requests_write_no_status(dispatcher, tracker, body):
    result = dispatcher.dispatch(body)
    assert result.status_code == 500
    assert set(result.body) == {"error"}
    assert tracker.attempts == []


def test_unknown_problem(dispatcher, tracker, store, add_submission):
    add_submission("s6", "missing")
    result = dispatcher.dispatch(encode_body(submission_doc("s6", "missing", DOUBLE)))
    assert "Problem not found" in result.body["error"]
    assert tracker.statuses == ["running", "error"]


def test_problem_without_reference_output(dispatcher, tracker, add_problem, add_submission):
    add_problem("partial", input="3")
    add_submission("s7", "partial")
    result = dispatcher.dispatch(encode_body(submission_doc("s7", "partial", DOUBLE)))
    assert result.body == {"error": "Problem is missing input/output"}
    assert tracker.statuses == ["running", "error"]


def test_unsupported_language(dispatcher, tracker, add_problem, add_submission):
    add_problem("double", input="3", output="6")
    add_submission("s8", "double")
    result = dispatcher.dispatch(encode_body(submission_doc("s8", "double", DOUBLE, language="cobol")))
    assert result.body["error"].startswith("Unsupported language: cobol")
    assert tracker.statuses == ["running", "error"]


def test_empty_language_is_accepted(dispatcher, add_problem, add_submission):
    add_problem("double", input="3", output="6")
    add_submission("s9", "double")
    result = dispatcher.dispatch(encode_body(submission_doc("s9", "double", DOUBLE, language="")))
    assert result.body == {"result": "6"}


def test_same_code_judged_against_two_problems(dispatcher, add_problem, add_submission):
    add_problem("double-3", input="3", output="6")
    add_problem("double-4", input="4", output="9")
    add_submission("a", "double-3")
    add_submission("b", "double-4")

    first = dispatcher.dispatch(encode_body(submission_doc("a", "double-3", DOUBLE)))
    second = dispatcher.dispatch(encode_body(submission_doc("b", "double-4", DOUBLE)))

    assert first.body == {"result": "6"}
    assert second.status_code == 500
    assert "Expected:\n9\nGot:\n8" in second.body["error"]


@pytest.mark.parametrize(
    "code, expected_output",
    [(DOUBLE, "6"), ("print('bye')", "6"), ("def (:", "6"), ("import sys\nsys.exit(1)", "6")],
)
def test_workspace_is_always_removed(dispatcher, workspace_root, add_problem, add_submission, code, expected_output):
    add_problem("double", input="3", output=expected_output)
    add_submission("s10", "double")
    dispatcher.dispatch(encode_body(submission_doc("s10", "double", code)))
    assert list(workspace_root.iterdir()) == []


def test_unknown_submission_id_reports_persistence_error(dispatcher, tracker, add_problem):
    add_problem("double", input="3", output="6")
    result = dispatcher.dispatch(encode_body(submission_doc("ghost", "double", DOUBLE)))
    assert result.status_code == 500
    assert "Record not found" in result.body["error"]
    assert tracker.statuses == []


def test_failed_error_write_does_not_mask_original(dispatcher, tracker, add_problem, add_submission, monkeypatch):
    add_problem("hello", input="", output="hi")
    add_submission("s11", "hello")

    def fail(submission_id, error):
        raise PersistenceError("database is down")

    monkeypatch.setattr(tracker, "mark_error", fail)
    result = dispatcher.dispatch(encode_body(submission_doc("s11", "hello", "print('bye')")))

    assert result.body["error"].startswith("Output mismatch!")


def test_unexpected_exception_becomes_internal_error(dispatcher, tracker, add_problem, add_submission, monkeypatch):
    add_problem("double", input="3", output="6")
    add_submission("s12", "double")

    def explode(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(dispatcher.compiler, "compile", explode)
    result = dispatcher.dispatch(encode_body(submission_doc("s12", "double", DOUBLE)))

    assert result.body == {"error": "Internal error: kaboom"}
    assert tracker.statuses == ["running", "error"]


def test_build_sandbox_runner_rejects_unknown_backend():
    assert isinstance(build_sandbox_runner("process"), ProcessSandboxRunner)
    with pytest.raises(ValueError):
        build_sandbox_runner("vm")


def test_deeply_nested_body_is_rejected_without_raising(dispatcher, tracker):
    result = dispatcher.dispatch("[" * 200000 + "]" * 200000)
    assert result.status_code == 500
    assert result.body["error"].startswith("Invalid payload")
    assert tracker.attempts == []


@pytest.mark.parametrize("code", ["missing", None])
def test_submission_without_code_is_marked_error(dispatcher, tracker, store, add_problem, add_submission, code):
    add_problem("double", input="3", output="6")
    add_submission("s13", "double")
    doc = submission_doc("s13", "double", "")
    if code == "missing":
        del doc["code"]
    else:
        doc["code"] = None

    result = dispatcher.dispatch(encode_body(doc))

    assert result.body == {"error": "Submission code is missing"}
    assert tracker.statuses == ["running", "error"]
    assert _submission(store, "s13")["status"] == "error"


def test_pathological_source_reports_compilation_failure(dispatcher, tracker, add_problem, add_submission):
    add_problem("double", input="3", output="6")
    add_submission("s14", "double")
    code = "x = " + "-" * 500000 + "1"

    result = dispatcher.dispatch(encode_body(submission_doc("s14", "double", code)))

    assert result.body["error"].startswith(COMPILATION_FAILED_MARKER + "\n")
    assert tracker.statuses == ["running", "error"]


def test_failed_completed_write_falls_back_to_error(dispatcher, tracker, store, workspace_root, add_problem, add_submission, monkeypatch):
    add_problem("double", input="3", output="6")
    add_submission("s15", "double")
    real_update = store.update_record

    def update_record(table, key, attributes, expected=None):
        if attributes.get("status") == "completed":
            raise PersistenceError("write rejected")
        return real_update(table, key, attributes, expected=expected)

    monkeypatch.setattr(store, "update_record", update_record)
    result = dispatcher.dispatch(encode_body(submission_doc("s15", "double", DOUBLE)))

    assert result.status_code == 500
    assert result.body == {"error": "write rejected"}
    assert tracker.attempts == ["running", "completed", "error"]
    assert tracker.statuses == ["running", "error"]
    assert _submission(store, "s15")["status"] == "error"
    assert list(workspace_root.iterdir()) == []
