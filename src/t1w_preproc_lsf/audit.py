"""audit.py — per-dataset JSONL trail of what was sent to LSF.

Every bsub call (accepted, rejected or dry run), every scratch allocation
outcome and every status change seen through bjobs becomes one
:class:`AuditEvent`, stored as one JSON line in
``<output_dataset>/<log_subdir>/submissions_audit.jsonl``.

Typical usage::

    from t1w_preproc_lsf.audit import get_logger

    audit = get_logger(config, "/data/out")
    audit.log("submitted", run_id="20240101_120000", stage="hdbet", job_id="12345")
    [event.job_id for event in audit.events()]
"""
from __future__ import annotations

__all__ = ["AUDIT_EVENTS", "AUDIT_FILENAME", "AuditEvent", "AuditLogger", "get_logger"]

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from t1w_preproc_lsf.config import PipelineConfig

logger = logging.getLogger(__name__)

#: Valid event names for the audit log.
AUDIT_EVENTS = frozenset(
    {
        "submitted",
        "dry_run",
        "error",
        "scratch_allocated",
        "scratch_failed",
        "status_change",
    }
)

AUDIT_FILENAME = "submissions_audit.jsonl"


@dataclass(frozen=True)
class AuditEvent:
    """One line of the audit trail.

    ``job_id`` is *None* for dry runs and rejected submissions. ``detail``
    carries the command line, the scheduler's error text or the scratch
    path depending on ``event``. Keys outside the fixed fields end up in
    ``extra``.
    """

    event: str
    run_id: str = ""
    stage: str = ""
    job_id: str | None = None
    detail: str = ""
    old_status: str = ""
    new_status: str = ""
    ts: str = field(default_factory=lambda: datetime.now(tz=timezone.utc).isoformat())
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.event not in AUDIT_EVENTS:
            raise ValueError(f"Unknown audit event {self.event!r}")

    def to_json(self) -> str:
        record = asdict(self)
        record.update(record.pop("extra"))
        return json.dumps(record)

    @classmethod
    def from_json(cls, line: str) -> AuditEvent:
        record = json.loads(line)
        known = {name: record.pop(name) for name in cls.__dataclass_fields__ if name in record}
        return cls(**known, extra=record)


class AuditLogger:
    """Append-only writer (and reader) for one audit file.

    The file and its parent directories are created on the first event, so
    constructing a logger never touches the filesystem.
    """

    def __init__(self, log_file: Path) -> None:
        self.log_file = Path(log_file)

    def log(self, event: str, **fields: Any) -> AuditEvent:
        """Record *event* and return it.

        Keyword arguments matching :class:`AuditEvent` fields fill them;
        any others (``queue="gpu"``) are kept alongside as extra keys.

        Raises
        ------
        ValueError
            If *event* is not one of :data:`AUDIT_EVENTS`.
        """
        known = {
            k: fields.pop(k)
            for k in list(fields)
            if k in AuditEvent.__dataclass_fields__ and k != "extra"
        }
        entry = AuditEvent(event, **known, extra=fields)

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with self.log_file.open("a") as fh:
            fh.write(entry.to_json() + "\n")

        logger.debug("audit %s: %s/%s job_id=%s", event, entry.run_id, entry.stage, entry.job_id)
        return entry

    def events(self) -> Iterator[AuditEvent]:
        """Yield recorded events in write order; nothing if the file is absent."""
        if not self.log_file.exists():
            return
        with self.log_file.open() as fh:
            for line in fh:
                if line.strip():
                    yield AuditEvent.from_json(line)


def get_logger(config: PipelineConfig, output_dataset: str | Path) -> AuditLogger:
    """Return an :class:`AuditLogger` writing into *output_dataset*'s log directory."""
    return AuditLogger(config.log_dir(output_dataset) / AUDIT_FILENAME)
