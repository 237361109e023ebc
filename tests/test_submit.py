"""Tests for submit.py — subprocess.run is mocked throughout."""
import os
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from t1w_preproc_lsf.jobs import Dependency, Job
from t1w_preproc_lsf.resources import ResourceRequest
from t1w_preproc_lsf.submit import (
    SubmissionError,
    build_bsub_command,
    cancel_job,
    parse_job_id,
    submit_job,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_job(dependency=None, gpu=None, env=None, cores=4):
    return Job(
        name="t1w_preproc_hdbet_20240101_120000",
        stage="hdbet",
        command=["singularity", "run", "--nv", "image.sif", "hdbet", "--hd-bet-input-dir", "/workdir"],
        resources=ResourceRequest(queue="normal", cores=cores, gpu=gpu),
        log_file=Path("/data/out/code/logs/t1w_preproc_hdbet_20240101_120000_%J.txt"),
        dependency=dependency,
        env=env or {},
    )


def mock_bsub(job_id="12345", queue="normal"):
    m = MagicMock()
    m.stdout = f"Job <{job_id}> is submitted to queue <{queue}>.\n"
    return m


# ---------------------------------------------------------------------------
# build_bsub_command
# ---------------------------------------------------------------------------


def test_command_starts_with_bsub():
    cmd = build_bsub_command(make_job())
    assert cmd[:3] == ["bsub", "-cwd", "."]


def test_command_has_name_and_log():
    cmd = build_bsub_command(make_job())
    assert cmd[cmd.index("-J") + 1] == "t1w_preproc_hdbet_20240101_120000"
    assert cmd[cmd.index("-o") + 1].endswith("_%J.txt")


def test_command_has_queue_and_cores():
    cmd = build_bsub_command(make_job(cores=8))
    assert cmd[cmd.index("-q") + 1] == "normal"
    assert cmd[cmd.index("-n") + 1] == "8"


def test_command_gpu_flag_only_when_requested():
    assert "-gpu" not in build_bsub_command(make_job())
    cmd = build_bsub_command(make_job(gpu="num=1:mode=exclusive_process:mps=no"))
    assert cmd[cmd.index("-gpu") + 1] == "num=1:mode=exclusive_process:mps=no"


def test_command_dependency_expression():
    cmd = build_bsub_command(make_job(dependency=Dependency("777", "ended")))
    assert cmd[cmd.index("-w") + 1] == "ended(777)"


def test_command_without_dependency_has_no_wait():
    assert "-w" not in build_bsub_command(make_job())


def test_job_command_comes_last():
    job = make_job()
    cmd = build_bsub_command(job)
    assert cmd[-len(job.command):] == job.command


# ---------------------------------------------------------------------------
# parse_job_id
# ---------------------------------------------------------------------------


def test_parse_job_id_standard_output():
    assert parse_job_id("Job <4242> is submitted to queue <normal>.") == "4242"


def test_parse_job_id_default_queue():
    assert parse_job_id("Job <7> is submitted to default queue <normal>.\n") == "7"


def test_parse_job_id_skips_preamble_lines():
    out = "Warning: project not set\nJob <99> is submitted to queue <gpu>.\n"
    assert parse_job_id(out) == "99"


def test_parse_job_id_rejects_unexpected_output():
    with pytest.raises(SubmissionError, match="Unexpected bsub output"):
        parse_job_id("Submitted batch job 12345")


# ---------------------------------------------------------------------------
# submit_job
# ---------------------------------------------------------------------------


def test_submit_job_returns_job_id():
    with patch("subprocess.run", return_value=mock_bsub("99999")):
        assert submit_job(make_job()) == "99999"


def test_submit_job_subprocess_flags():
    """subprocess.run called with capture_output=True, text=True, check=True."""
    with patch("subprocess.run", return_value=mock_bsub()) as mock_run:
        submit_job(make_job())
    _, kwargs = mock_run.call_args
    assert kwargs.get("capture_output") is True
    assert kwargs.get("text") is True
    assert kwargs.get("check") is True


def test_submit_job_exports_job_env():
    job = make_job(env={"SINGULARITYENV_OMP_NUM_THREADS": "8"})
    with patch("subprocess.run", return_value=mock_bsub()) as mock_run:
        submit_job(job)
    env = mock_run.call_args.kwargs["env"]
    assert env["SINGULARITYENV_OMP_NUM_THREADS"] == "8"
    assert env.get("PATH") == os.environ.get("PATH")


def test_submit_job_rejection_carries_scheduler_message():
    err = subprocess.CalledProcessError(
        255, "bsub", output="", stderr="Queue does not exist. Job not submitted.\n"
    )
    with patch("subprocess.run", side_effect=err):
        with pytest.raises(SubmissionError, match="Queue does not exist"):
            submit_job(make_job())


def test_submit_job_missing_bsub():
    with patch("subprocess.run", side_effect=FileNotFoundError("bsub")):
        with pytest.raises(SubmissionError, match="not available"):
            submit_job(make_job())


def test_submit_job_unexpected_output_raises():
    m = MagicMock()
    m.stdout = "something else\n"
    with patch("subprocess.run", return_value=m):
        with pytest.raises(SubmissionError):
            submit_job(make_job())


# ---------------------------------------------------------------------------
# submit_job — dry run
# ---------------------------------------------------------------------------


def test_dry_run_does_not_call_subprocess():
    with patch("subprocess.run") as mock_run:
        result = submit_job(make_job(), dry_run=True)
    mock_run.assert_not_called()
    assert result is None


def test_dry_run_prints_command_with_env(capsys):
    submit_job(make_job(env={"SINGULARITYENV_TMPDIR": "/tmp"}), dry_run=True)
    out = capsys.readouterr().out
    assert "[DRY RUN]" in out
    assert "SINGULARITYENV_TMPDIR=/tmp" in out
    assert "bsub" in out
    assert "hdbet" in out


def test_dry_run_quotes_dependency(capsys):
    submit_job(make_job(dependency=Dependency("12", "done")), dry_run=True)
    assert "'done(12)'" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# cancel_job
# ---------------------------------------------------------------------------


def test_cancel_job_calls_bkill():
    with patch("subprocess.run", return_value=MagicMock()) as mock_run:
        assert cancel_job("55") is True
    assert mock_run.call_args[0][0] == ["bkill", "55"]


def test_cancel_job_failure_is_not_raised():
    with patch("subprocess.run", side_effect=subprocess.CalledProcessError(255, "bkill")):
        assert cancel_job("55") is False
