from __future__ import annotations

__all__ = [
    "STATE_FILENAME",
    "append_state",
    "load_state",
    "save_state",
    "state_file_for",
    "state_rows",
]

from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import pandas as pd

from t1w_preproc_lsf.config import PipelineConfig

if TYPE_CHECKING:
    from t1w_preproc_lsf.pipeline import PipelineRequest, PipelineResult

STATE_FILENAME = "submissions.parquet"

# Columns and dtypes for the state parquet file
_STATE_COLUMNS = {
    "run_id": "object",
    "stage": "object",
    "job_id": "object",
    "status": "object",
    "submitted_at": "datetime64[ns, UTC]",
    "input_dataset": "object",
    "output_dataset": "object",
}


def state_file_for(output_dataset: str | Path, config: PipelineConfig) -> Path:
    """Return the submission state file of *output_dataset*."""
    return config.log_dir(output_dataset) / STATE_FILENAME


def load_state(state_file: str | Path) -> pd.DataFrame:
    """Load the state parquet file.

    Returns an empty DataFrame with the correct schema if the file does not exist.
    """
    if not Path(state_file).exists():
        return _empty_state()
    return pd.read_parquet(state_file)


def save_state(state: pd.DataFrame, state_file: str | Path) -> None:
    """Persist the state DataFrame to the parquet state file."""
    Path(state_file).parent.mkdir(parents=True, exist_ok=True)
    state.to_parquet(state_file, index=False)


def state_rows(result: PipelineResult, request: PipelineRequest) -> pd.DataFrame:
    """Return one ``pending`` state row per submitted job of *result*."""
    now = datetime.now(tz=timezone.utc)
    rows = [
        {
            "run_id": result.run_id,
            "stage": stage,
            "job_id": job_id,
            "status": "pending",
            "submitted_at": now,
            "input_dataset": str(request.input_dataset),
            "output_dataset": str(request.output_dataset),
        }
        for stage, job_id in result.job_ids.items()
        if job_id is not None
    ]
    if not rows:
        return _empty_state()
    return pd.DataFrame(rows)


def append_state(new_rows: pd.DataFrame, state_file: str | Path) -> pd.DataFrame:
    """Append *new_rows* to the state file and return the combined table."""
    state = load_state(state_file)
    parts = [df for df in (state, new_rows) if not df.empty]
    combined = pd.concat(parts, ignore_index=True) if parts else new_rows
    save_state(combined, state_file)
    return combined


def _empty_state() -> pd.DataFrame:
    """Return an empty DataFrame with the correct state schema and dtypes."""
    return pd.DataFrame(
        {col: pd.Series(dtype=dtype) for col, dtype in _STATE_COLUMNS.items()}
    )
