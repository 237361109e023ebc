from __future__ import annotations

__all__ = [
    "GPU_STAGES",
    "ResourceRequest",
    "bsub_resource_args",
    "container_env",
    "request_for_stage",
]

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from t1w_preproc_lsf.config import ClusterProfile

#: Stages that run the GPU model. Every other stage is CPU-only.
GPU_STAGES = frozenset({"hdbet"})

# The allocator only runs mkdtemp; it never needs more than one slot.
_SINGLE_CORE_STAGES = frozenset({"scratch"})

# Environment variables sized to the granted cores inside the container
_THREAD_VARIABLES = ("OMP_NUM_THREADS", "ITK_GLOBAL_DEFAULT_NUMBER_OF_THREADS")


@dataclass(frozen=True)
class ResourceRequest:
    """Scheduler resources for one job."""

    queue: str
    cores: int = 1
    gpu: str | None = None  # bsub -gpu string; None for CPU-only jobs


def request_for_stage(
    stage: str,
    profile: ClusterProfile,
    threads: int,
    queue: str | None = None,
) -> ResourceRequest:
    """Translate user options into the resource request for *stage*.

    Parameters
    ----------
    stage:
        One of the pipeline stage names.
    profile:
        Active cluster profile; supplies the default queue, the GPU queue and
        the GPU resource string.
    threads:
        Requested thread count. Used as the core count for every stage
        except the scratch allocator.
    queue:
        Queue chosen on the command line. Overrides both ``profile.queue``
        and ``profile.gpu_queue``.

    Returns
    -------
    ResourceRequest
        GPU stages get ``profile.gpu_resource`` and, unless *queue* was
        given, ``profile.gpu_queue`` when configured; all other stages get
        no GPU.
    """
    if threads < 1:
        raise ValueError(f"threads must be >= 1, got {threads}")
    cores = 1 if stage in _SINGLE_CORE_STAGES else threads
    if stage in GPU_STAGES:
        return ResourceRequest(
            queue=queue or profile.gpu_queue or profile.queue,
            cores=cores,
            gpu=profile.gpu_resource,
        )
    return ResourceRequest(queue=queue or profile.queue, cores=cores)


def container_env(profile: ClusterProfile, threads: int) -> dict[str, str]:
    """Return the environment forwarded into the container runtime.

    Singularity and Apptainer both inject ``<RUNTIME>ENV_<NAME>`` variables
    into the container as ``<NAME>``.
    """
    prefix = f"{profile.container_runtime.upper()}ENV_"
    env = {
        f"{prefix}TMPDIR": "/tmp",
        f"{prefix}CUDA_VISIBLE_DEVICES": profile.cuda_visible_devices,
    }
    for name in _THREAD_VARIABLES:
        env[f"{prefix}{name}"] = str(threads)
    return env


def bsub_resource_args(request: ResourceRequest) -> list[str]:
    """Return the ``bsub`` flags for *request*."""
    args = ["-q", request.queue, "-n", str(request.cores), "-R", "span[hosts=1]"]
    if request.gpu is not None:
        args.extend(["-gpu", request.gpu])
    return args
