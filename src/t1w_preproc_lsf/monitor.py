"""monitor.py — LSF job state polling via bjobs.

Provides helpers to query ``bjobs`` for submitted jobs, to block on a single
job until it reaches a terminal state, and to refresh the submission state
table.

Typical usage::

    from t1w_preproc_lsf.monitor import wait_for_job

    status = wait_for_job("12345", timeout=600, poll_interval=10)
"""
from __future__ import annotations

__all__ = [
    "JobWaitTimeout",
    "TERMINAL_STATUSES",
    "poll_jobs",
    "update_state_from_bjobs",
    "wait_for_job",
]

import logging
import subprocess
import time
from typing import TYPE_CHECKING

import pandas as pd

if TYPE_CHECKING:
    from t1w_preproc_lsf.audit import AuditLogger

logger = logging.getLogger(__name__)

# Mapping from bjobs STAT strings to pipeline status strings.
_BJOBS_TO_STATUS: dict[str, str] = {
    "PEND": "pending",
    "PSUSP": "pending",
    "WAIT": "pending",
    "PROV": "running",
    "RUN": "running",
    "USUSP": "running",
    "SSUSP": "running",
    "DONE": "complete",
    "EXIT": "failed",
    "ZOMBI": "failed",
}

TERMINAL_STATUSES = frozenset({"complete", "failed"})


class JobWaitTimeout(TimeoutError):
    """Raised when a job does not reach a terminal state in time."""


def poll_jobs(job_ids: list[str]) -> dict[str, str]:
    """Query bjobs and return a mapping of job_id → pipeline status.

    ``-a`` is passed so recently finished jobs are still reported. Unknown
    LSF states (``UNKWN``) are ignored, as are lines for jobs bjobs no longer
    knows about.

    Parameters
    ----------
    job_ids:
        List of LSF job ID strings to query.

    Returns
    -------
    dict[str, str]
        Mapping ``{job_id: status}`` where *status* is one of
        ``pending``, ``running``, ``complete``, or ``failed``.
    """
    if not job_ids:
        return {}

    try:
        result = subprocess.run(
            [
                "bjobs",
                "-a",
                "-noheader",
                "-o", "jobid stat delimiter='|'",
                *[str(j) for j in job_ids],
            ],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        logger.warning("bjobs call failed: %s", exc)
        return {}

    statuses: dict[str, str] = {}
    for line in result.stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split("|")
        if len(parts) < 2:
            continue
        job_id, stat = parts[0].strip(), parts[1].strip()
        status = _BJOBS_TO_STATUS.get(stat)
        if status is not None:
            statuses[job_id] = status

    return statuses


def wait_for_job(
    job_id: str,
    timeout: float | None = None,
    poll_interval: float = 10.0,
) -> str:
    """Block until *job_id* is ``complete`` or ``failed`` and return that status.

    Parameters
    ----------
    job_id:
        LSF job ID to wait on.
    timeout:
        Maximum number of seconds to wait; ``None`` waits indefinitely.
    poll_interval:
        Seconds between bjobs queries.

    Raises
    ------
    JobWaitTimeout
        If *timeout* elapses first.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    last_status = None
    while True:
        status = poll_jobs([job_id]).get(str(job_id))
        if status != last_status and status is not None:
            logger.info("job %s is %s", job_id, status)
            last_status = status
        if status in TERMINAL_STATUSES:
            return status
        if deadline is not None and time.monotonic() >= deadline:
            raise JobWaitTimeout(
                f"Job {job_id} did not finish within {timeout:g}s "
                f"(last status: {last_status or 'unknown'})"
            )
        time.sleep(poll_interval)


def update_state_from_bjobs(
    state: pd.DataFrame,
    audit: AuditLogger | None = None,
) -> pd.DataFrame:
    """Refresh in-flight rows by polling bjobs.

    Finds all rows with ``status`` of ``pending`` or ``running``, calls
    :func:`poll_jobs`, and updates any rows whose status has changed.

    Parameters
    ----------
    state:
        Submission state DataFrame with columns including ``job_id``,
        ``stage``, ``run_id`` and ``status``.
    audit:
        Optional :class:`~t1w_preproc_lsf.audit.AuditLogger` to record
        ``status_change`` events.

    Returns
    -------
    pd.DataFrame
        Updated state DataFrame (a copy — the original is not mutated).
    """
    if state.empty:
        return state

    in_flight_mask = state["status"].isin({"pending", "running"})
    if not in_flight_mask.any():
        return state

    job_ids = (
        state.loc[in_flight_mask, "job_id"]
        .dropna()
        .astype(str)
        .tolist()
    )
    if not job_ids:
        return state

    polled = poll_jobs(job_ids)
    if not polled:
        return state

    state = state.copy()
    for idx in state.index[in_flight_mask]:
        job_id = str(state.at[idx, "job_id"])
        new_status = polled.get(job_id)
        if new_status is None:
            continue
        old_status = state.at[idx, "status"]
        if new_status == old_status:
            continue
        logger.info(
            "job %s (%s/%s): %s → %s",
            job_id,
            state.at[idx, "run_id"],
            state.at[idx, "stage"],
            old_status,
            new_status,
        )
        state.at[idx, "status"] = new_status
        if audit is not None:
            audit.log(
                "status_change",
                run_id=state.at[idx, "run_id"],
                stage=state.at[idx, "stage"],
                job_id=job_id,
                old_status=old_status,
                new_status=new_status,
            )

    return state
