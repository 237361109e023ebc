"""jobs.py — declarations handed to the LSF scheduler.

A :class:`Job` is built by the pipeline, turned into a ``bsub`` command by
:mod:`t1w_preproc_lsf.submit`, and identified afterwards by the
:data:`JobId` that LSF assigns on acceptance.
"""
from __future__ import annotations

__all__ = ["Condition", "Dependency", "Job", "JobId", "STAGES"]

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, NewType

from t1w_preproc_lsf.resources import ResourceRequest

JobId = NewType("JobId", str)

#: Predecessor state a dependent job waits for.
#: ``done`` is a successful exit, ``ended`` is any terminal state.
Condition = Literal["done", "ended"]

#: Pipeline stages in submission order.
STAGES: tuple[str, ...] = ("scratch", "prepare", "hdbet", "postprocess", "cleanup")


@dataclass(frozen=True)
class Dependency:
    """Wait condition on a single predecessor job."""

    job_id: str
    condition: Condition = "done"

    def __post_init__(self) -> None:
        if self.condition not in ("done", "ended"):
            raise ValueError(f"Unsupported dependency condition: {self.condition!r}")
        if not self.job_id:
            raise ValueError("Dependency requires a predecessor job id")

    def expression(self) -> str:
        """Return the ``bsub -w`` expression, e.g. ``done(12345)``."""
        return f"{self.condition}({self.job_id})"


@dataclass
class Job:
    """One scheduled unit of work."""

    name: str
    stage: str
    command: list[str]
    resources: ResourceRequest
    log_file: Path
    dependency: Dependency | None = None
    # Exported into the submission environment; LSF forwards it to the job
    env: dict[str, str] = field(default_factory=dict)
    binds: list[str] = field(default_factory=list)
