from __future__ import annotations

__all__ = ["SubmissionError", "build_bsub_command", "cancel_job", "parse_job_id", "submit_job"]

import logging
import os
import re
import shlex
import subprocess
from typing import TYPE_CHECKING

from t1w_preproc_lsf.jobs import Job, JobId
from t1w_preproc_lsf.resources import bsub_resource_args

if TYPE_CHECKING:
    from t1w_preproc_lsf.audit import AuditLogger

logger = logging.getLogger(__name__)

# bsub stdout: "Job <12345> is submitted to queue <normal>."
_SUBMITTED_RE = re.compile(
    r"^Job <(?P<job_id>\d+)> is submitted to (?:default )?queue <(?P<queue>[^>]+)>"
)


class SubmissionError(RuntimeError):
    """Raised when LSF rejects a job or answers in an unexpected format."""


def build_bsub_command(job: Job) -> list[str]:
    """Return the full ``bsub`` argument list for *job*."""
    cmd = ["bsub", "-cwd", ".", "-J", job.name, "-o", str(job.log_file)]
    cmd.extend(bsub_resource_args(job.resources))
    if job.dependency is not None:
        cmd.extend(["-w", job.dependency.expression()])
    cmd.extend(job.command)
    return cmd


def parse_job_id(output: str) -> JobId:
    """Extract the job id from bsub's submission confirmation.

    Raises
    ------
    SubmissionError
        If no line of *output* matches ``Job <ID> is submitted to queue <Q>``.
    """
    for line in output.splitlines():
        match = _SUBMITTED_RE.match(line.strip())
        if match:
            return JobId(match.group("job_id"))
    raise SubmissionError(
        f"Unexpected bsub output: {output.strip()!r}. "
        "Expected format: 'Job <ID> is submitted to queue <QUEUE>.'"
    )


def _format_command(job: Job, cmd: list[str]) -> str:
    env = " ".join(f"{k}={shlex.quote(v)}" for k, v in sorted(job.env.items()))
    return f"{env} {shlex.join(cmd)}" if env else shlex.join(cmd)


def submit_job(
    job: Job,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
    run_id: str = "",
) -> JobId | None:
    """Submit a single job to LSF via bsub.

    The job's environment is merged over the current process environment;
    LSF copies the submission environment into the job, which is how the
    container runtime variables reach the container.

    Parameters
    ----------
    job:
        Fully declared job, including its dependency on the previous stage.
    dry_run:
        When *True*, prints the command that would be run and returns *None*
        without calling bsub.
    audit:
        Optional audit logger for ``submitted`` / ``dry_run`` / ``error``
        events.
    run_id:
        Pipeline run identifier recorded in audit entries.

    Returns
    -------
    JobId or None
        The LSF job ID on success, or *None* for dry runs.

    Raises
    ------
    SubmissionError
        If bsub exits with a non-zero status (the message carries bsub's
        rejection text) or its stdout does not contain a job id.
    """
    cmd = build_bsub_command(job)
    printable = _format_command(job, cmd)

    if dry_run:
        logger.info("[DRY RUN] Would submit %s: %s", job.stage, printable)
        print(f"[DRY RUN] Would submit: {printable}")
        if audit is not None:
            audit.log("dry_run", run_id=run_id, stage=job.stage, detail=printable)
        return None

    logger.info("Submitting %s: %s", job.stage, printable)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            env={**os.environ, **job.env},
        )
    except subprocess.CalledProcessError as e:
        message = (e.stderr or e.stdout or "").strip() or str(e)
        if audit is not None:
            audit.log("error", run_id=run_id, stage=job.stage, detail=message)
        raise SubmissionError(f"bsub rejected {job.name}: {message}") from e
    except FileNotFoundError as e:
        if audit is not None:
            audit.log("error", run_id=run_id, stage=job.stage, detail=str(e))
        raise SubmissionError(f"bsub is not available: {e}") from e

    try:
        job_id = parse_job_id(result.stdout)
    except SubmissionError as e:
        if audit is not None:
            audit.log("error", run_id=run_id, stage=job.stage, detail=str(e))
        raise
    logger.info("Submitted %s as job %s", job.stage, job_id)
    if audit is not None:
        audit.log("submitted", run_id=run_id, stage=job.stage, job_id=job_id, detail=printable)
    return job_id


def cancel_job(job_id: str) -> bool:
    """Ask LSF to kill *job_id*; best effort, returns ``True`` on success."""
    try:
        subprocess.run(["bkill", str(job_id)], capture_output=True, text=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        logger.warning("bkill %s failed: %s", job_id, exc)
        return False
    logger.info("Cancelled job %s", job_id)
    return True
