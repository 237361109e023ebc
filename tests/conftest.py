import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from t1w_preproc_lsf.config import ClusterProfile, PipelineConfig
from t1w_preproc_lsf.pipeline import PipelineRequest


# ---------------------------------------------------------------------------
# Fake LSF
# ---------------------------------------------------------------------------

class FakeLSF:
    """Stand-in for ``subprocess.run`` that answers bsub, bjobs and bkill.

    Job ids are handed out sequentially from *first_id*. When the allocator
    job (``make-scratch``) is submitted, *scratch_path* is written to its
    handoff file, as the real job would do on the compute node; pass
    ``scratch_path=""`` to simulate an allocator that failed.
    """

    def __init__(self, first_id=101, scratch_path="/scratch/t1w_preproc_tmp.abc123",
                 allocator_state="DONE", reject_stage=None):
        self.next_id = first_id
        self.scratch_path = scratch_path
        self.allocator_state = allocator_state
        self.reject_stage = reject_stage
        self.calls = []
        self.submitted = []
        self.envs = []

    @property
    def bsub_calls(self):
        return [c for c in self.calls if c[0] == "bsub"]

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        result = MagicMock()
        result.stderr = ""
        if cmd[0] == "bsub":
            name = cmd[cmd.index("-J") + 1]
            if self.reject_stage and f"_{self.reject_stage}_" in name:
                raise subprocess.CalledProcessError(
                    255, cmd, output="", stderr="Bad resource requirement syntax. Job not submitted."
                )
            job_id = str(self.next_id)
            self.next_id += 1
            self.submitted.append(job_id)
            self.envs.append(kwargs.get("env", {}))
            if "make-scratch" in cmd and self.scratch_path is not None:
                Path(cmd[-1]).write_text(f"{self.scratch_path}\n" if self.scratch_path else "")
            result.stdout = f"Job <{job_id}> is submitted to queue <normal>.\n"
        elif cmd[0] == "bjobs":
            ids = [c for c in cmd if c.isdigit()]
            result.stdout = "".join(f"{i}|{self.allocator_state}\n" for i in ids)
        else:
            result.stdout = ""
        return result


@pytest.fixture
def fake_lsf():
    return FakeLSF()


# ---------------------------------------------------------------------------
# Config and request fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def profile(tmp_path):
    return ClusterProfile(
        name="test",
        queue="normal",
        scratch_root=tmp_path / "scratch",
        container_tmpdir=tmp_path / "scratch",
        container_image=tmp_path / "containers" / "ftdc-t1w-preproc.sif",
        allocation_timeout=5.0,
        poll_interval=0.0,
    )


@pytest.fixture
def cfg(profile):
    """PipelineConfig whose only active profile points at tmp_path."""
    return PipelineConfig(profile="test", profiles={"test": profile})


@pytest.fixture
def datasets(tmp_path):
    """Input dataset, empty output location and a participant list."""
    input_dataset = tmp_path / "in"
    (input_dataset / "sub-01" / "anat").mkdir(parents=True)
    (input_dataset / "sub-01" / "anat" / "sub-01_T1w.nii.gz").touch()
    input_list = tmp_path / "list.txt"
    input_list.write_text("01\n")
    return input_dataset, tmp_path / "out", input_list


@pytest.fixture
def pipeline_request(datasets):
    input_dataset, output_dataset, input_list = datasets
    return PipelineRequest(
        input_dataset=input_dataset,
        output_dataset=output_dataset,
        input_list=input_list,
        level="participant",
        threads=8,
    )


@pytest.fixture
def lsf_factory():
    """Build a FakeLSF with non-default behaviour."""
    return FakeLSF
