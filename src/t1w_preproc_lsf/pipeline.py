"""pipeline.py — the five-job LSF chain for one preprocessing run.

::

    scratch ──wait──▶ prepare ──done──▶ hdbet ──done──▶ postprocess ──ended──▶ cleanup

The scratch allocator is the only job the orchestrator waits on: its
compute-node path must be known before the container jobs can bind it.
Everything after it is declared immediately, each job depending on the id
of the one before, and LSF enforces the ordering.
"""
from __future__ import annotations

__all__ = [
    "ChainSubmissionError",
    "LEVELS",
    "PipelineRequest",
    "PipelineResult",
    "build_allocator_job",
    "build_stage_job",
    "run_pipeline",
]

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from t1w_preproc_lsf.config import ClusterProfile, PipelineConfig
from t1w_preproc_lsf.jobs import Condition, Dependency, Job, JobId
from t1w_preproc_lsf.monitor import JobWaitTimeout, wait_for_job
from t1w_preproc_lsf.resources import container_env, request_for_stage
from t1w_preproc_lsf.scratch import (
    HANDOFF_PREFIX,
    ScratchAllocationError,
    new_handoff_file,
    read_handoff,
)
from t1w_preproc_lsf.submit import SubmissionError, cancel_job, submit_job

if TYPE_CHECKING:
    from t1w_preproc_lsf.audit import AuditLogger

logger = logging.getLogger(__name__)

LEVELS = ("participant", "session")

# Stages after the allocator and the predecessor state each one waits for.
# Cleanup must run even when postprocessing fails.
_CHAIN: tuple[tuple[str, Condition], ...] = (
    ("prepare", "done"),
    ("hdbet", "done"),
    ("postprocess", "done"),
    ("cleanup", "ended"),
)

# Mount points inside the container
_INPUT = "/input"
_OUTPUT = "/output"
_LIST = "/lists/list.txt"
_WORKDIR = "/workdir"

_DRY_RUN_SCRATCH = Path("<scratch_dir>")


@dataclass
class PipelineRequest:
    """One validated invocation of the pipeline."""

    input_dataset: Path
    output_dataset: Path
    input_list: Path
    level: Literal["participant", "session"] = "participant"
    threads: int = 4
    queue: str | None = None
    reset_origin: bool = True
    trim_neck: bool = True

    def __post_init__(self) -> None:
        self.input_dataset = Path(self.input_dataset)
        self.output_dataset = Path(self.output_dataset)
        self.input_list = Path(self.input_list)
        if self.level not in LEVELS:
            raise ValueError(f"level must be one of {LEVELS}, got {self.level!r}")
        if self.threads < 1:
            raise ValueError(f"threads must be >= 1, got {self.threads}")


@dataclass
class PipelineResult:
    """Jobs declared for one run, keyed by stage in submission order."""

    run_id: str
    scratch_dir: Path | None = None
    jobs: list[Job] = field(default_factory=list)
    job_ids: dict[str, JobId | None] = field(default_factory=dict)


class ChainSubmissionError(SubmissionError):
    """bsub rejected a stage after the scratch directory was allocated.

    *result* holds the jobs LSF had accepted by then, including the cleanup
    job declared in place of the rest of the chain.
    """

    def __init__(self, message: str, result: PipelineResult) -> None:
        super().__init__(message)
        self.result = result


def _job_name(stage: str, run_id: str) -> str:
    return f"t1w_preproc_{stage}_{run_id}"


def _log_file(log_dir: Path, stage: str, run_id: str) -> Path:
    # %J expands to the LSF job id, so every job gets its own log
    return log_dir / f"t1w_preproc_{stage}_{run_id}_%J.txt"


def _self_command(profile: ClusterProfile, *args: str) -> list[str]:
    return [profile.python, "-m", "t1w_preproc_lsf", *args]


def _binds(request: PipelineRequest, profile: ClusterProfile, scratch_dir: Path) -> list[str]:
    return [
        f"{profile.container_tmpdir}:/tmp",
        f"{request.input_dataset}:{_INPUT}:ro",
        f"{request.output_dataset}:{_OUTPUT}",
        f"{request.input_list}:{_LIST}:ro",
        f"{scratch_dir}:{_WORKDIR}",
    ]


def _container_args(stage: str, request: PipelineRequest) -> list[str]:
    if stage == "prepare":
        return [
            "prepare_input",
            "--input-dataset", _INPUT,
            "--output-directory", _WORKDIR,
            f"--{request.level}-list", _LIST,
        ]
    if stage == "hdbet":
        return ["hdbet", "--hd-bet-input-dir", _WORKDIR]
    if stage == "postprocess":
        args = [
            "postprocessing",
            "--input-dataset", _INPUT,
            "--hd-bet-input-dir", _WORKDIR,
            "--output-dataset", _OUTPUT,
        ]
        if request.reset_origin:
            args.append("--reset-origin")
        if request.trim_neck:
            args.append("--trim-neck")
        return args
    raise ValueError(f"Stage {stage!r} does not run the container")


def build_allocator_job(
    request: PipelineRequest,
    profile: ClusterProfile,
    log_dir: Path,
    handoff_file: Path,
    run_id: str,
) -> Job:
    """Declare the scratch allocator job (no dependency)."""
    return Job(
        name=_job_name("scratch", run_id),
        stage="scratch",
        command=_self_command(
            profile, "make-scratch", "--root", str(profile.scratch_root), str(handoff_file)
        ),
        resources=request_for_stage("scratch", profile, request.threads, request.queue),
        log_file=_log_file(log_dir, "scratch", run_id),
    )


def build_stage_job(
    stage: str,
    request: PipelineRequest,
    profile: ClusterProfile,
    scratch_dir: Path,
    dependency: Dependency,
    log_dir: Path,
    run_id: str,
) -> Job:
    """Declare one of the jobs that follow the allocator.

    Container stages bind the datasets, the subject list and the scratch
    directory; the cleanup stage runs this package's ``clean-scratch``
    command directly.
    """
    resources = request_for_stage(stage, profile, request.threads, request.queue)
    if stage == "cleanup":
        return Job(
            name=_job_name(stage, run_id),
            stage=stage,
            command=_self_command(profile, "clean-scratch", str(scratch_dir)),
            resources=resources,
            log_file=_log_file(log_dir, stage, run_id),
            dependency=dependency,
        )

    binds = _binds(request, profile, scratch_dir)
    command = [profile.container_runtime, "run", "--containall"]
    if resources.gpu is not None:
        command.append("--nv")
    command.extend(["-B", ",".join(binds), str(profile.container_image)])
    command.extend(_container_args(stage, request))
    return Job(
        name=_job_name(stage, run_id),
        stage=stage,
        command=command,
        resources=resources,
        log_file=_log_file(log_dir, stage, run_id),
        dependency=dependency,
        env=container_env(profile, request.threads),
        binds=binds,
    )


def _allocate_scratch(
    job: Job,
    handoff_file: Path,
    profile: ClusterProfile,
    run_id: str,
    audit: AuditLogger | None,
) -> tuple[JobId, Path]:
    """Submit the allocator, wait for it, and return its id and scratch path."""
    try:
        job_id = submit_job(job, audit=audit, run_id=run_id)
    except Exception:
        handoff_file.unlink(missing_ok=True)
        raise
    if job_id is None:
        raise RuntimeError("allocator submission returned no job id")

    try:
        status = wait_for_job(
            job_id,
            timeout=profile.allocation_timeout,
            poll_interval=profile.poll_interval,
        )
    except JobWaitTimeout as exc:
        # A late allocator would create a directory nobody cleans up
        cancel_job(job_id)
        handoff_file.unlink(missing_ok=True)
        if audit is not None:
            audit.log("scratch_failed", run_id=run_id, stage="scratch", job_id=job_id, detail=str(exc))
        raise ScratchAllocationError(
            f"Scratch allocator job {job_id} did not finish: {exc}"
        ) from exc

    if status != "complete":
        logger.warning("scratch allocator job %s finished with status %s", job_id, status)

    try:
        scratch_dir = read_handoff(handoff_file)
    except ScratchAllocationError as exc:
        if audit is not None:
            audit.log("scratch_failed", run_id=run_id, stage="scratch", job_id=job_id, detail=str(exc))
        raise ScratchAllocationError(
            f"{exc} (allocator job {job_id}, see {job.log_file})"
        ) from exc

    if audit is not None:
        audit.log(
            "scratch_allocated", run_id=run_id, stage="scratch", job_id=job_id, detail=str(scratch_dir)
        )
    return job_id, scratch_dir


def _submit_cleanup_after_rejection(
    request: PipelineRequest,
    profile: ClusterProfile,
    scratch_dir: Path,
    last_accepted: JobId,
    log_dir: Path,
    run_id: str,
    result: PipelineResult,
    audit: AuditLogger | None,
) -> None:
    """Declare the cleanup job after the last accepted one so the scratch
    directory is still removed once the partial chain has ended."""
    job = build_stage_job(
        "cleanup",
        request,
        profile,
        scratch_dir,
        Dependency(last_accepted, "ended"),
        log_dir,
        run_id,
    )
    result.jobs.append(job)
    try:
        result.job_ids["cleanup"] = submit_job(job, audit=audit, run_id=run_id)
    except SubmissionError as exc:
        logger.error(
            "cleanup job was rejected too; scratch directory %s will not be removed: %s",
            scratch_dir,
            exc,
        )


def run_pipeline(
    request: PipelineRequest,
    config: PipelineConfig,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
) -> PipelineResult:
    """Submit the scratch → prepare → hdbet → postprocess → cleanup chain.

    Parameters
    ----------
    request:
        Datasets, subject list, level and options for this run.
    config:
        Pipeline configuration; its active profile supplies queues, GPU
        settings, scratch root and container image.
    dry_run:
        When *True*, prints every job declaration without submitting or
        waiting. Placeholders stand in for the scratch path and job ids.
    audit:
        Optional audit logger.

    Returns
    -------
    PipelineResult
        The declared jobs and the job ID of each stage (*None* in dry runs).

    Raises
    ------
    ScratchAllocationError
        If the allocator job does not report a scratch directory (empty or
        missing handoff file, or the wait timed out). Nothing after the
        allocator is submitted.
    SubmissionError
        If bsub rejects the allocator job.
    ChainSubmissionError
        If bsub rejects a later stage. The stages after it are not
        submitted, but a cleanup job waiting on the last accepted job is,
        so the scratch directory is still removed. The partial result is
        attached to the error.
    """
    profile = config.get_profile()
    run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_dir = config.log_dir(request.output_dataset)
    result = PipelineResult(run_id=run_id)

    if not request.input_list.is_file():
        # Subject selection belongs to the container; an unusable list only
        # means it will find nothing to process.
        logger.warning("input list %s does not exist or is not a file", request.input_list)

    if dry_run:
        handoff_file = log_dir / f"{HANDOFF_PREFIX}XXXXXXXX.txt"
    else:
        log_dir.mkdir(parents=True, exist_ok=True)
        handoff_file = new_handoff_file(log_dir)

    allocator = build_allocator_job(request, profile, log_dir, handoff_file, run_id)
    result.jobs.append(allocator)
    if dry_run:
        submit_job(allocator, dry_run=True, audit=audit, run_id=run_id)
        previous = f"<{allocator.name}>"
        scratch_dir = _DRY_RUN_SCRATCH
        result.job_ids["scratch"] = None
    else:
        previous, scratch_dir = _allocate_scratch(allocator, handoff_file, profile, run_id, audit)
        result.job_ids["scratch"] = previous
    result.scratch_dir = scratch_dir

    for stage, condition in _CHAIN:
        job = build_stage_job(
            stage,
            request,
            profile,
            scratch_dir,
            Dependency(previous, condition),
            log_dir,
            run_id,
        )
        result.jobs.append(job)
        try:
            job_id = submit_job(job, dry_run=dry_run, audit=audit, run_id=run_id)
        except SubmissionError as exc:
            if stage != "cleanup":
                _submit_cleanup_after_rejection(
                    request, profile, scratch_dir, previous, log_dir, run_id, result, audit
                )
            else:
                logger.error("scratch directory %s will not be removed", scratch_dir)
            raise ChainSubmissionError(str(exc), result) from exc
        result.job_ids[stage] = job_id
        if job_id is not None:
            previous = job_id
        elif dry_run:
            previous = f"<{job.name}>"
        else:
            raise RuntimeError(f"submission of {stage} returned no job id")

    return result
