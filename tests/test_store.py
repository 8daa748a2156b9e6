import pytest
from sqlalchemy import create_engine

from oj_runner.core.errors import PersistenceError
from oj_runner.db.store import RecordStore


def test_get_record_returns_all_attributes(store, add_problem):
    add_problem("p1", input="1", output="2", title="One")
    record = store.get_record("problems", "p1")
    assert record["id"] == "p1"
    assert record["title"] == "One"
    assert record["input"] == "1"


def test_get_missing_record(store):
    assert store.get_record("problems", "missing") is None


def test_update_leaves_unnamed_attributes_untouched(store, add_submission):
    add_submission("s1", "p1", code="print(2)", language="python")
    store.update_record("submissions", "s1", {"status": "running"})
    record = store.get_record("submissions", "s1")
    assert record["status"] == "running"
    assert record["code"] == "print(2)"
    assert record["language"] == "python"


def test_unknown_table(store):
    with pytest.raises(PersistenceError):
        store.get_record("nope", "x")


def test_database_errors_become_persistence_errors(tmp_path):
    # A fresh database without the tables
    broken = RecordStore(create_engine(f"sqlite:///{tmp_path / 'empty.db'}"))
    with pytest.raises(PersistenceError):
        broken.get_record("problems", "p1")
    with pytest.raises(PersistenceError):
        broken.update_record("submissions", "s1", {"status": "running"})
