"""Run provenance for audit.

Every reconciliation pass produces one ReconciliationRun. The record is
built when the pass ends and is never mutated afterwards; it answers:
- "What did pass N of target T try, and what happened to each object?"
- "Which version of the reconciler and of the manifests was running?"

Records go to the structured log and, when a store is configured, to the
target's append-only JSONL audit file.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .state_store import StateStore

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
CONVERGE_VERSION = os.environ.get("CONVERGE_VERSION", "dev")


@dataclass(frozen=True)
class ResourceOutcome:
    """Outcome of one object within a pass."""

    identity: str
    action: str
    outcome: str
    attempts: int = 0
    error: str | None = None
    blocked_by: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "identity": self.identity,
            "action": self.action,
            "outcome": self.outcome,
            "attempts": self.attempts,
        }
        if self.error:
            data["error"] = self.error
        if self.blocked_by:
            data["blocked_by"] = list(self.blocked_by)
        return data


@dataclass(frozen=True)
class ReconciliationRun:
    """Audit record of a single pass."""

    target: str
    attempt: int
    phase: str
    started_at: datetime
    finished_at: datetime
    outcomes: tuple[ResourceOutcome, ...] = ()
    change_counts: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    version: str = CONVERGE_VERSION
    git_commit_sha: str = field(default_factory=lambda: os.environ.get("GIT_COMMIT_SHA", ""))

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def outcome_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for outcome in self.outcomes:
            counts[outcome.outcome] = counts.get(outcome.outcome, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "target": self.target,
            "attempt": self.attempt,
            "phase": self.phase,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "change_counts": dict(self.change_counts),
            "outcomes": [o.to_dict() for o in self.outcomes],
            "error": self.error,
            "version": self.version,
            "git_commit_sha": self.git_commit_sha,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReconciliationRun:
        """Inverse of to_dict.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a timestamp is malformed.
        """
        return cls(
            run_id=data["run_id"],
            target=data["target"],
            attempt=int(data["attempt"]),
            phase=data["phase"],
            started_at=datetime.fromisoformat(data["started_at"]),
            finished_at=datetime.fromisoformat(data["finished_at"]),
            change_counts=dict(data.get("change_counts", {})),
            outcomes=tuple(
                ResourceOutcome(
                    identity=o["identity"],
                    action=o["action"],
                    outcome=o["outcome"],
                    attempts=int(o.get("attempts", 0)),
                    error=o.get("error"),
                    blocked_by=tuple(o.get("blocked_by", ())),
                )
                for o in data.get("outcomes", [])
            ),
            error=data.get("error"),
            version=data.get("version", ""),
            git_commit_sha=data.get("git_commit_sha", ""),
        )


class ProvenanceLogger:
    """Logs run records and appends them to the audit trail."""

    def __init__(self, store: StateStore | None = None) -> None:
        self._store = store

    def record(self, run: ReconciliationRun) -> None:
        """Log a completed run and persist it when a store is configured.

        The structured fields enable queries like:
        - "Which passes of target X failed this week?"
        - "Which commit introduced this drift?"
        """
        log_level = logging.INFO
        if run.error or run.phase in ("Failed", "Cancelled"):
            log_level = logging.ERROR
        elif run.phase == "Retrying":
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation run",
            extra={
                "run": run.to_dict(),
                # Flatten key fields for easier querying
                "target": run.target,
                "attempt": run.attempt,
                "phase": run.phase,
                "outcomes": run.outcome_counts(),
                "git_commit": run.git_commit_sha,
                "duration_seconds": run.duration_seconds,
            },
        )

        if self._store is not None:
            self._store.append_run(run)


def new_run(
    target: str,
    attempt: int,
    phase: str,
    started_at: datetime,
    outcomes: list[ResourceOutcome] | tuple[ResourceOutcome, ...] = (),
    change_counts: dict[str, int] | None = None,
    error: str | None = None,
) -> ReconciliationRun:
    """Seal a pass into its audit record, stamping the end time now."""
    return ReconciliationRun(
        target=target,
        attempt=attempt,
        phase=phase,
        started_at=started_at,
        finished_at=datetime.now(UTC),
        outcomes=tuple(outcomes),
        change_counts=dict(change_counts or {}),
        error=error,
    )
