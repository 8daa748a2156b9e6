import importlib.util
import logging
import marshal
import threading
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

from oj_runner.core.errors import CompilationError
from oj_runner.core.workspace import Workspace

logger = logging.getLogger(__name__)

SOURCE_FILENAME = "solution.py"
ARTIFACT_FILENAME = "solution.pyc"
COMPILATION_FAILED_MARKER = "Compilation failed:"

# Hash-based pyc that the interpreter never re-validates against the source
_PYC_FLAGS_UNCHECKED_HASH = 0b01

# warnings.catch_warnings swaps interpreter-global state
_compile_lock = threading.Lock()

# Nesting or size limits in the parser surface as RecursionError or MemoryError
_COMPILE_FAILURES = (SyntaxError, ValueError, RecursionError, MemoryError)
_SOURCE_LINE_CHARS = 200


@dataclass(frozen=True)
class CompiledArtifact:
    path: Path
    source_path: Path
    warnings: list[str] = field(default_factory=list)


def _format_warning(w: warnings.WarningMessage) -> str:
    return f"{Path(w.filename).name}:{w.lineno}: {w.category.__name__}: {w.message}"


def _format_error(e: BaseException) -> str:
    if isinstance(e, SyntaxError):
        location = f"{Path(e.filename or SOURCE_FILENAME).name}:{e.lineno or 0}:{e.offset or 0}"
        line = f"{location}: {type(e).__name__}: {e.msg}"
        if e.text:
            text = e.text.rstrip()
            if len(text) > _SOURCE_LINE_CHARS:
                text = text[:_SOURCE_LINE_CHARS] + "..."
            line += f"\n    {text}"
        return line
    if isinstance(e, UnicodeEncodeError):
        return f"{SOURCE_FILENAME}: source is not valid UTF-8 text ({e.reason} at position {e.start})"
    if isinstance(e, (RecursionError, MemoryError)):
        return f"{SOURCE_FILENAME}: {type(e).__name__}: {str(e) or 'source is too deeply nested or too large to compile'}"
    return f"{SOURCE_FILENAME}: {type(e).__name__}: {e}"


def _pyc_bytes(code, source_bytes: bytes) -> bytes:
    data = bytearray(importlib.util.MAGIC_NUMBER)
    data.extend(_PYC_FLAGS_UNCHECKED_HASH.to_bytes(4, "little"))
    data.extend(importlib.util.source_hash(source_bytes))
    data.extend(marshal.dumps(code))
    return bytes(data)


class Compiler:
    """Compile a single-file Python submission to bytecode, in-process."""

    def compile(self, source_text: str, workspace: Workspace) -> CompiledArtifact:
        source_path = workspace.file(SOURCE_FILENAME)
        artifact_path = workspace.file(ARTIFACT_FILENAME)
        try:
            source_bytes = source_text.encode("utf-8")
        except UnicodeEncodeError as e:
            self._fail(workspace, [_format_error(e)])
        source_path.write_bytes(source_bytes)

        diagnostics: list[str] = []
        with _compile_lock, warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                code = compile(source_bytes, SOURCE_FILENAME, "exec", dont_inherit=True)
                failure = None
            except _COMPILE_FAILURES as e:
                code = None
                failure = e
        diagnostics.extend(_format_warning(w) for w in caught)

        if failure is not None:
            self._fail(workspace, diagnostics + [_format_error(failure)])

        artifact_path.write_bytes(_pyc_bytes(code, source_bytes))
        logger.debug(
            "Compilation succeeded",
            extra={"workspace": str(workspace.path), "stage": "compile"},
        )
        return CompiledArtifact(path=artifact_path, source_path=source_path, warnings=diagnostics)

    def _fail(self, workspace: Workspace, diagnostics: list[str]) -> NoReturn:
        logger.info(
            f"Compilation failed with {len(diagnostics)} diagnostic(s)",
            extra={"workspace": str(workspace.path), "stage": "compile"},
        )
        message = COMPILATION_FAILED_MARKER + "\n" + "\n".join(diagnostics)
        raise CompilationError(message, diagnostics=diagnostics)
