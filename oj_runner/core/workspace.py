import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from oj_runner.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Workspace:
    """A private scratch directory owned by exactly one pipeline run."""

    path: Path

    def file(self, name: str) -> Path:
        return self.path / name


def acquire(root: Optional[str] = None, prefix: Optional[str] = None) -> Workspace:
    # mkdtemp picks a fresh random name and creates it with mode 0700
    path = tempfile.mkdtemp(
        prefix=prefix if prefix is not None else settings.WORKSPACE_PREFIX,
        dir=root if root is not None else settings.WORKSPACE_ROOT,
    )
    logger.debug("workspace_acquired", extra={"workspace": path})
    return Workspace(path=Path(path))


def release(workspace: Workspace) -> None:
    """Delete the workspace, deepest entries first.

    Individual deletion failures are logged and skipped; this never raises.
    """
    root = str(workspace.path)

    def _log_walk_error(err: OSError) -> None:
        logger.warning(
            f"Failed to scan {err.filename}: {err}",
            extra={"workspace": root},
        )

    for dirpath, dirnames, filenames in os.walk(root, topdown=False, onerror=_log_walk_error):
        for name in filenames:
            _remove(os.path.join(dirpath, name), os.unlink, root)
        for name in dirnames:
            target = os.path.join(dirpath, name)
            # os.walk does not descend into symlinked directories; unlink the link itself
            remover = os.unlink if os.path.islink(target) else os.rmdir
            _remove(target, remover, root)
    _remove(root, os.rmdir, root)

    if os.path.exists(root):
        logger.warning("workspace_not_fully_removed", extra={"workspace": root})
    else:
        logger.debug("workspace_released", extra={"workspace": root})


def _remove(target: str, remover, root: str) -> None:
    try:
        remover(target)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to delete {target}: {e}", extra={"workspace": root})


@contextmanager
def scratch_workspace(root: Optional[str] = None, prefix: Optional[str] = None) -> Iterator[Workspace]:
    workspace = acquire(root=root, prefix=prefix)
    try:
        yield workspace
    finally:
        release(workspace)
