from oj_runner.models.problem import Problem
from oj_runner.models.submission import Submission, SubmissionStatus

__all__ = ["Problem", "Submission", "SubmissionStatus"]
