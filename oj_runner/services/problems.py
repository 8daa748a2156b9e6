import logging
from typing import Optional

from oj_runner.core.config import settings
from oj_runner.core.errors import MissingFieldError, NotFoundError
from oj_runner.db.store import RecordStore

logger = logging.getLogger(__name__)


class ProblemFetcher:
    """Read-only lookup of a Problem's reference input and expected output."""

    def __init__(self, store: RecordStore, table: Optional[str] = None):
        self.store = store
        self.table = table or settings.PROBLEMS_TABLE

    def fetch(self, problem_id: str) -> tuple[str, str]:
        record = self.store.get_record(self.table, problem_id)
        if record is None:
            logger.warning("Problem not found", extra={"problem_id": problem_id})
            raise NotFoundError(f"Problem not found: {problem_id}")

        reference_input = record.get("input")
        expected_output = record.get("output")
        if reference_input is None or expected_output is None:
            logger.warning(
                f"Problem {problem_id} is missing attributes - input: {reference_input is None}, "
                f"output: {expected_output is None}",
                extra={"problem_id": problem_id},
            )
            raise MissingFieldError("Problem is missing input/output")

        return reference_input, expected_output
