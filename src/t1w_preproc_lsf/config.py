from __future__ import annotations

__all__ = ["ClusterProfile", "DEFAULT_PROFILES", "PipelineConfig"]

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import yaml


@dataclass
class ClusterProfile:
    """Deployment-specific settings for one LSF cluster."""

    name: str
    queue: str = "normal"
    gpu_queue: str | None = None  # falls back to the job's queue when None
    gpu_resource: str = "num=1:mode=exclusive_process:mps=no"
    cuda_visible_devices: str = "0"
    # Node-local storage; only visible from compute nodes
    scratch_root: Path = field(default_factory=lambda: Path("/scratch"))
    # Bound to /tmp inside the container
    container_tmpdir: Path = field(default_factory=lambda: Path("/scratch"))
    container_runtime: Literal["singularity", "apptainer"] = "singularity"
    container_image: Path = field(
        default_factory=lambda: Path("/opt/containers/ftdc-t1w-preproc-0.4.0.sif")
    )
    threads: int = 4
    allocation_timeout: float | None = 3600.0  # seconds; None waits forever
    poll_interval: float = 10.0
    python: str = "python3"  # interpreter for the scratch and cleanup jobs

    def __post_init__(self) -> None:
        for key in ("scratch_root", "container_tmpdir", "container_image"):
            setattr(self, key, Path(getattr(self, key)))
        if self.container_runtime not in ("singularity", "apptainer"):
            raise ValueError(
                f"Profile {self.name!r}: container_runtime must be 'singularity' "
                f"or 'apptainer', got {self.container_runtime!r}"
            )
        if self.threads < 1:
            raise ValueError(f"Profile {self.name!r}: threads must be >= 1")


DEFAULT_PROFILES: dict[str, ClusterProfile] = {
    "default": ClusterProfile(name="default"),
}


@dataclass
class PipelineConfig:
    """All cluster conventions and pipeline defaults in one place."""

    # Name of the active entry in ``profiles``
    profile: str = "default"
    profiles: dict[str, ClusterProfile] = field(
        default_factory=lambda: dict(DEFAULT_PROFILES)
    )

    # Relative to the output dataset
    log_subdir: str = "code/logs"

    # Postprocessing defaults, overridden by -r / -t on the command line
    reset_origin: bool = True
    trim_neck: bool = True

    def __post_init__(self) -> None:
        """Check that the selected profile exists.

        Raises
        ------
        ValueError
            If ``profile`` does not name an entry in ``profiles``.
        """
        if self.profile not in self.profiles:
            raise ValueError(
                f"Unknown cluster profile {self.profile!r}. "
                f"Known profiles: {sorted(self.profiles)}"
            )

    def get_profile(self, name: str | None = None) -> ClusterProfile:
        """Return the named profile, or the active one when *name* is None."""
        name = name or self.profile
        try:
            return self.profiles[name]
        except KeyError:
            raise ValueError(
                f"Unknown cluster profile {name!r}. Known profiles: {sorted(self.profiles)}"
            ) from None

    def log_dir(self, output_dataset: str | Path) -> Path:
        """Return the per-dataset log directory."""
        return Path(output_dataset) / self.log_subdir

    @classmethod
    def from_yaml(cls, path: str | Path) -> "PipelineConfig":
        """Load config from a YAML file, overriding defaults.

        Profiles are given as a mapping of name to settings; entries are
        merged over the built-in profiles, so a file may redefine
        ``default`` or add new ones.

        Raises
        ------
        ValueError
            If the file contains invalid YAML syntax.
        FileNotFoundError
            If *path* does not exist.
        """
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

        if "profiles" in data:
            profiles = dict(DEFAULT_PROFILES)
            for name, settings in (data["profiles"] or {}).items():
                profiles[name] = ClusterProfile(name=name, **(settings or {}))
            data["profiles"] = profiles

        return cls(**data)
