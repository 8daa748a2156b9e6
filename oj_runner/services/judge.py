from dataclasses import dataclass
from typing import Optional

from oj_runner.core.errors import OutputMismatchError

# Trimmed from both ends: ASCII control characters and space, nothing else.
# Unicode whitespace such as NBSP is significant output.
TRIM_CHARS = "".join(map(chr, range(0x21)))


@dataclass(frozen=True)
class Verdict:
    actual: str
    expected: str
    matched: bool
    diagnostic: Optional[str] = None

    @property
    def result(self) -> str:
        return self.actual


def _first_difference(expected: str, actual: str) -> str:
    expected_lines = expected.splitlines()
    actual_lines = actual.splitlines()
    for lineno, (want, got) in enumerate(zip(expected_lines, actual_lines), 1):
        if want != got:
            return f"First difference at line {lineno}: expected {want!r}, got {got!r}"
    lineno = min(len(expected_lines), len(actual_lines)) + 1
    if len(expected_lines) > len(actual_lines):
        return f"Output ended early: missing line {lineno} {expected_lines[lineno - 1]!r}"
    if len(actual_lines) > len(expected_lines):
        return f"Unexpected extra output at line {lineno}: {actual_lines[lineno - 1]!r}"
    return "Outputs differ only in line endings"


def render_mismatch(expected: str, actual: str) -> str:
    return (
        f"Output mismatch!\nExpected:\n{expected}\nGot:\n{actual}\n"
        f"{_first_difference(expected, actual)}"
    )


def compare(actual_output: str, expected_output: str) -> Verdict:
    """Trim both sides and compare them exactly. Never raises."""
    actual = actual_output.strip(TRIM_CHARS)
    expected = expected_output.strip(TRIM_CHARS)
    if actual == expected:
        return Verdict(actual=actual, expected=expected, matched=True)
    return Verdict(
        actual=actual,
        expected=expected,
        matched=False,
        diagnostic=render_mismatch(expected, actual),
    )


def judge(actual_output: str, expected_output: str) -> Verdict:
    verdict = compare(actual_output, expected_output)
    if not verdict.matched:
        raise OutputMismatchError(verdict.diagnostic, expected=verdict.expected, actual=verdict.actual)
    return verdict
