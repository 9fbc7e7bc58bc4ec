"""Persisted state per reconciliation target.

Two files live in the state directory:
- <target>.state.json: the last successful observation, replaced atomically
  (write to a temp file in the same directory, fsync, os.replace) so a crash
  never leaves a half-written snapshot
- <target>.runs.jsonl: one ReconciliationRun per line, append-only

The snapshot is only written after a pass converges; it tells the next pass
which objects this target created and may need to delete.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from .config import MAX_STATE_FILE_SIZE_BYTES
from .models import ObservedState
from .provenance import ReconciliationRun

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateStoreError(Exception):
    """Raised when persisted state cannot be read or written."""

    pass


class StateStore:
    """File-backed snapshot and audit trail for one target."""

    def __init__(self, state_file: Path, audit_file: Path) -> None:
        self._state_file = state_file
        self._audit_file = audit_file

    @property
    def state_file(self) -> Path:
        return self._state_file

    @property
    def audit_file(self) -> Path:
        return self._audit_file

    def load_snapshot(self) -> ObservedState | None:
        """Read the last successful observation, or None if there is none.

        Raises:
            StateStoreError: If the file is too large, unreadable or malformed.
        """
        if not self._state_file.exists():
            return None

        try:
            if self._state_file.stat().st_size > MAX_STATE_FILE_SIZE_BYTES:
                raise StateStoreError(
                    f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                    f"{self._state_file}"
                )
            data = json.loads(self._state_file.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._state_file}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Corrupt state file {self._state_file}: {e}") from e

        if not isinstance(data, dict) or data.get("version") != STATE_FORMAT_VERSION:
            raise StateStoreError(f"Unsupported state file format: {self._state_file}")

        try:
            snapshot = ObservedState.from_dict(data)
        except ValueError as e:
            raise StateStoreError(f"Corrupt state file {self._state_file}: {e}") from e

        logger.debug(
            "Loaded state snapshot",
            extra={"state_file": str(self._state_file), "objects": len(snapshot)},
        )
        return snapshot

    def save_snapshot(self, observed: ObservedState) -> None:
        """Atomically replace the snapshot.

        Raises:
            StateStoreError: If the snapshot cannot be written.
        """
        data = {"version": STATE_FORMAT_VERSION, **observed.to_dict()}
        directory = self._state_file.parent

        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._state_file.name}.", suffix=".tmp", dir=directory
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, sort_keys=True, default=str)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._state_file)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateStoreError(f"Failed to write state file {self._state_file}: {e}") from e

        logger.info(
            "Saved state snapshot",
            extra={"state_file": str(self._state_file), "objects": len(observed)},
        )

    def append_run(self, run: ReconciliationRun) -> None:
        """Append a run record to the audit trail.

        Raises:
            StateStoreError: If the audit file cannot be written.
        """
        try:
            self._audit_file.parent.mkdir(parents=True, exist_ok=True)
            with self._audit_file.open("a", encoding="utf-8") as f:
                f.write(json.dumps(run.to_dict(), sort_keys=True, default=str) + "\n")
        except OSError as e:
            raise StateStoreError(f"Failed to append to audit file {self._audit_file}: {e}") from e

    def read_runs(self) -> list[ReconciliationRun]:
        """All recorded runs, oldest first.

        Raises:
            StateStoreError: If a line cannot be parsed.
        """
        if not self._audit_file.exists():
            return []

        runs: list[ReconciliationRun] = []
        with self._audit_file.open(encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    runs.append(ReconciliationRun.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    raise StateStoreError(
                        f"Corrupt audit record at {self._audit_file}:{line_number}: {e}"
                    ) from e
        return runs
