"""Typed failures raised by the judging pipeline.

Every component raises one of these; the dispatcher catches them at a single
boundary and turns them into the terminal error text. ``reason`` is a short,
low-cardinality tag used for metrics labels and log search.
"""


class JudgeError(Exception):
    reason = "judge_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(JudgeError):
    reason = "validation"


class DecodeError(JudgeError):
    reason = "decode"


class NotFoundError(JudgeError):
    reason = "not_found"


class MissingFieldError(JudgeError):
    reason = "missing_field"


class CompilationError(JudgeError):
    reason = "compilation"

    def __init__(self, message: str, diagnostics=None):
        super().__init__(message)
        self.diagnostics = list(diagnostics or [])


class ExecutionError(JudgeError):
    reason = "execution"


class OutputLimitExceededError(ExecutionError):
    """The child wrote more to stdout than the runner is willing to buffer."""

    reason = "output_limit"

    def __init__(self, message: str, limit_bytes: int = 0):
        super().__init__(message)
        self.limit_bytes = limit_bytes


class ExecutionTimeoutError(JudgeError):
    """The child outlived its deadline and was killed. Not an ExecutionError."""

    reason = "timeout"

    def __init__(self, message: str, timeout_seconds: float = 0.0):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class OutputMismatchError(JudgeError):
    reason = "output_mismatch"

    def __init__(self, message: str, expected: str, actual: str):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class PersistenceError(JudgeError):
    reason = "persistence"


class StaleTransitionError(PersistenceError):
    """A conditional status write found the record in an unexpected state."""

    reason = "stale_transition"


class ConfigurationError(RuntimeError):
    """Raised at startup when required settings are absent."""
