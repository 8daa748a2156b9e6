import pytest

from oj_runner.core.errors import MissingFieldError, NotFoundError
from oj_runner.services.problems import ProblemFetcher


def test_fetch_returns_reference_pair(store, add_problem):
    add_problem("p1", input="3\n", output="6\n", title="Double")
    assert ProblemFetcher(store).fetch("p1") == ("3\n", "6\n")


def test_fetch_unknown_problem(store):
    with pytest.raises(NotFoundError) as exc:
        ProblemFetcher(store).fetch("nope")
    assert "Problem not found" in str(exc.value)


@pytest.mark.parametrize("fields", [{"input": "1"}, {"output": "1"}, {}])
def test_fetch_problem_missing_reference_data(store, add_problem, fields):
    add_problem("p2", **fields)
    with pytest.raises(MissingFieldError) as exc:
        ProblemFetcher(store).fetch("p2")
    assert str(exc.value) == "Problem is missing input/output"


def test_empty_strings_are_valid_reference_data(store, add_problem):
    add_problem("p3", input="", output="")
    assert ProblemFetcher(store).fetch("p3") == ("", "")
