from __future__ import annotations

import logging
from pathlib import Path

import click

from t1w_preproc_lsf.audit import get_logger
from t1w_preproc_lsf.config import PipelineConfig
from t1w_preproc_lsf.monitor import update_state_from_bjobs
from t1w_preproc_lsf.pipeline import (
    LEVELS,
    ChainSubmissionError,
    PipelineRequest,
    PipelineResult,
    run_pipeline,
)
from t1w_preproc_lsf.scratch import (
    ScratchAllocationError,
    make_scratch_dir,
    remove_scratch_dir,
)
from t1w_preproc_lsf.state import (
    append_state,
    load_state,
    save_state,
    state_file_for,
    state_rows,
)
from t1w_preproc_lsf.submit import SubmissionError

logger = logging.getLogger(__name__)


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    metavar="PATH",
    help="Path to YAML config file. Uses built-in defaults if omitted.",
)
@click.option(
    "--profile",
    "profile",
    default=None,
    metavar="NAME",
    help="Cluster profile to use. Overrides config file.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: str | None,
    profile: str | None,
    verbose: bool,
) -> None:
    """t1w-preproc-lsf: submit T1w preprocessing to LSF as a chain of dependent jobs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        config = PipelineConfig.from_yaml(config_path) if config_path else PipelineConfig()
        if profile is not None:
            config.get_profile(profile)
            config.profile = profile
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    ctx.obj["config"] = config


def _show_usage(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    if not value or ctx.resilient_parsing:
        return
    click.echo(ctx.get_help())
    ctx.exit(1)


def _usage_error(ctx: click.Context, message: str) -> None:
    click.echo(ctx.get_help(), err=True)
    click.echo(f"\nError: {message}", err=True)
    ctx.exit(1)


def _echo_job_ids(result: PipelineResult) -> None:
    click.echo(f"Run {result.run_id}: scratch directory {result.scratch_dir}")
    for stage, job_id in result.job_ids.items():
        click.echo(f"  {stage:<12} {job_id}")


@main.command()
@click.option(
    "-h",
    "show_usage",
    is_flag=True,
    is_eager=True,
    expose_value=False,
    callback=_show_usage,
    help="Show usage and exit with status 1.",
)
@click.option("-i", "input_dataset", default=None, metavar="INPUT_DATASET", help="Path to the input dataset (required).")
@click.option("-o", "output_dataset", default=None, metavar="OUTPUT_DATASET", help="Path to the output dataset (required). Created if missing.")
@click.option(
    "-n",
    "threads",
    type=click.IntRange(min=1),
    default=None,
    metavar="N",
    help="Threads per job; also the core request. Defaults to the profile's value.",
)
@click.option("-q", "queue", default=None, metavar="QUEUE", help="LSF queue for every job. Defaults to the profile's queue (and its GPU queue for hdbet).")
@click.option(
    "-r",
    "reset_origin",
    type=click.Choice(["0", "1"]),
    default=None,
    help="Reset the origin of the output images (1) or not (0).",
)
@click.option(
    "-t",
    "trim_neck",
    type=click.Choice(["0", "1"]),
    default=None,
    help="Trim the neck from the output images (1) or not (0).",
)
@click.option("--dry-run", is_flag=True, help="Print the job declarations without submitting.")
@click.argument("input_list", required=False)
@click.argument("level", required=False, default="participant")
@click.pass_context
def submit(
    ctx: click.Context,
    input_dataset: str | None,
    output_dataset: str | None,
    threads: int | None,
    queue: str | None,
    reset_origin: str | None,
    trim_neck: str | None,
    dry_run: bool,
    input_list: str | None,
    level: str,
) -> None:
    """Submit T1w images for processing.

    INPUT_LIST is either a text file with one participant ID per line
    (LEVEL=participant, the default) or a CSV with one participant,session
    pair per line (LEVEL=session), without the 'sub-' and 'ses-' prefixes.

    Only '_T1w.nii.gz' images of the listed participants / sessions are
    processed. Logs are written to 'code/logs' in the output dataset.
    """
    if input_dataset is None or output_dataset is None or input_list is None:
        _usage_error(ctx, "-i, -o and INPUT_LIST are required.")
    if level not in LEVELS:
        _usage_error(ctx, f"LEVEL must be one of {', '.join(LEVELS)}, got {level!r}.")
    if not Path(input_dataset).is_dir():
        _usage_error(ctx, f"Input dataset {input_dataset} does not exist.")

    config: PipelineConfig = ctx.obj["config"]
    profile = config.get_profile()
    request = PipelineRequest(
        input_dataset=Path(input_dataset).resolve(),
        output_dataset=Path(output_dataset).resolve(),
        input_list=Path(input_list).resolve(),
        level=level,
        threads=threads or profile.threads,
        queue=queue,
        reset_origin=config.reset_origin if reset_origin is None else reset_origin == "1",
        trim_neck=config.trim_neck if trim_neck is None else trim_neck == "1",
    )

    state_file = state_file_for(request.output_dataset, config)
    # A dry run leaves the output dataset untouched, audit log included
    audit = None if dry_run else get_logger(config, request.output_dataset)
    try:
        result = run_pipeline(request, config, dry_run=dry_run, audit=audit)
    except ChainSubmissionError as exc:
        append_state(state_rows(exc.result, request), state_file)
        _echo_job_ids(exc.result)
        raise click.ClickException(str(exc)) from exc
    except (ScratchAllocationError, SubmissionError) as exc:
        raise click.ClickException(str(exc)) from exc

    if dry_run:
        click.echo(f"[DRY RUN] Would submit {len(result.jobs)} job(s).")
        return

    append_state(state_rows(result, request), state_file)
    _echo_job_ids(result)
    click.echo(
        f"Submitted {len(result.job_ids)} job(s). "
        f"Logs in {config.log_dir(request.output_dataset)}."
    )


@main.command(name="make-scratch")
@click.option(
    "--root",
    required=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Node-local directory to create the scratch directory in.",
)
@click.argument("handoff_file", type=click.Path(dir_okay=False, path_type=Path))
def make_scratch(root: Path, handoff_file: Path) -> None:
    """Create a scratch directory and write its path to HANDOFF_FILE.

    Runs inside the allocator job on a compute node.
    """
    try:
        scratch_dir = make_scratch_dir(root, handoff_file)
    except ScratchAllocationError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created scratch directory {scratch_dir}")


@main.command(name="clean-scratch")
@click.argument("scratch_dir", type=click.Path(path_type=Path))
def clean_scratch(scratch_dir: Path) -> None:
    """Remove SCRATCH_DIR. Failures are reported but never fail the job."""
    if remove_scratch_dir(scratch_dir):
        click.echo(f"Removed scratch directory {scratch_dir}")
    else:
        click.echo(f"Scratch directory {scratch_dir} was not removed.")


@main.command()
@click.option(
    "-o",
    "output_dataset",
    required=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Output dataset whose submissions to show.",
)
@click.option("--run", "run_id", default=None, help="Only show jobs of this run.")
@click.option(
    "--refresh/--no-refresh",
    default=True,
    help="Poll bjobs for in-flight jobs before showing (default: refresh).",
)
@click.pass_context
def status(ctx: click.Context, output_dataset: Path, run_id: str | None, refresh: bool) -> None:
    """Show submitted jobs and their last known state."""
    config: PipelineConfig = ctx.obj["config"]
    state_file = state_file_for(output_dataset, config)
    state = load_state(state_file)

    if state.empty:
        click.echo("No submissions recorded yet.")
        return

    if refresh:
        state = update_state_from_bjobs(state, audit=get_logger(config, output_dataset))
        save_state(state, state_file)

    if run_id is not None:
        state = state[state["run_id"] == run_id]
        if state.empty:
            click.echo(f"No jobs recorded for run {run_id}.")
            return

    click.echo(state[["run_id", "stage", "job_id", "status"]].to_string(index=False))
