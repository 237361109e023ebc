"""scratch.py — compute-node scratch directory lifecycle.

The scratch directory lives on node-local storage that the submission host
cannot see, so it is created by a scheduled job (:func:`make_scratch_dir`)
which reports the path back through a one-shot handoff file. The
orchestrator reads that file once and deletes it (:func:`read_handoff`); the
final pipeline job removes the directory (:func:`remove_scratch_dir`).
"""
from __future__ import annotations

__all__ = [
    "HANDOFF_PREFIX",
    "SCRATCH_PREFIX",
    "ScratchAllocationError",
    "make_scratch_dir",
    "new_handoff_file",
    "read_handoff",
    "remove_scratch_dir",
]

import logging
import os
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "t1w_preproc_tmp."
HANDOFF_PREFIX = "t1w_preproc_scratch."


class ScratchAllocationError(RuntimeError):
    """Raised when no scratch directory could be obtained for a pipeline run."""


def new_handoff_file(directory: str | Path) -> Path:
    """Create a fresh, empty handoff file in *directory* and return its path.

    *directory* must be on a filesystem shared between the submission host
    and the compute nodes.
    """
    fd, name = tempfile.mkstemp(prefix=HANDOFF_PREFIX, suffix=".txt", dir=directory)
    os.close(fd)
    return Path(name)


def make_scratch_dir(root: str | Path, handoff_file: str | Path) -> Path:
    """Create a unique scratch directory under *root* and publish its path.

    The path is written to a sibling temporary file which is then renamed
    over *handoff_file*, so the reader sees either the old empty file or the
    complete path.

    Raises
    ------
    ScratchAllocationError
        If the directory cannot be created or the handoff cannot be written.
        The handoff file is left untouched (empty) in that case.
    """
    handoff_file = Path(handoff_file)
    try:
        scratch_dir = Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=root))
    except OSError as exc:
        logger.error("tmp dir under %s was not created: %s", root, exc)
        raise ScratchAllocationError(f"Could not create scratch directory under {root}: {exc}") from exc

    partial = handoff_file.with_name(handoff_file.name + ".partial")
    try:
        partial.write_text(f"{scratch_dir}\n")
        os.replace(partial, handoff_file)
    except OSError as exc:
        logger.error("could not write handoff file %s: %s", handoff_file, exc)
        partial.unlink(missing_ok=True)
        shutil.rmtree(scratch_dir, ignore_errors=True)
        raise ScratchAllocationError(f"Could not write handoff file {handoff_file}: {exc}") from exc

    logger.info("created scratch directory %s", scratch_dir)
    return scratch_dir


def read_handoff(handoff_file: str | Path) -> Path:
    """Read the scratch path from *handoff_file*, then delete the file.

    The file is removed whether or not it held a path, so a later run can
    never pick up a stale directory.

    Raises
    ------
    ScratchAllocationError
        If the file is missing or empty.
    """
    handoff_file = Path(handoff_file)
    try:
        content = handoff_file.read_text().strip()
    except FileNotFoundError:
        raise ScratchAllocationError(
            f"Scratch handoff file {handoff_file} does not exist"
        ) from None
    finally:
        handoff_file.unlink(missing_ok=True)

    if not content:
        raise ScratchAllocationError(
            f"Scratch handoff file {handoff_file} is empty; the allocator job did not create a directory"
        )
    return Path(content)


def remove_scratch_dir(scratch_dir: str | Path) -> bool:
    """Remove *scratch_dir* and everything in it.

    Best effort: failures are logged and reported through the return value,
    never raised.

    Returns
    -------
    bool
        ``True`` when the directory was removed.
    """
    scratch_dir = Path(scratch_dir)
    logger.info("Cleaning up scratch directory: %s", scratch_dir)
    # Only directories created by make_scratch_dir are ever removed
    if not scratch_dir.name.startswith(SCRATCH_PREFIX):
        logger.warning("refusing to remove %s: not a scratch directory", scratch_dir)
        return False
    if not scratch_dir.is_dir():
        logger.warning("scratch directory %s does not exist; nothing to remove", scratch_dir)
        return False
    try:
        shutil.rmtree(scratch_dir)
    except OSError as exc:
        logger.warning("could not remove scratch directory %s: %s", scratch_dir, exc)
        return False
    return True
