"""
Durable storage of rollout runs.

One record per run, keyed by run id, holding the full serialized RolloutRun
plus a version counter. Writes carry the version the writer read; a
mismatch means someone else saved the run in between and the write is
rejected with StaleWriteError. Creating a run enforces the uniqueness of
active runs per candidate version.

Readers always receive freshly deserialized copies, so snapshots handed to
status callers never alias the state a tick loop is mutating.

Example:
    >>> store = JsonFileRunStore("./rollout_state")
    >>> store.create(run)
    >>> run = store.get(run.run_id)
    >>> run.step_index += 1
    >>> store.save(run)   # bumps run.version
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from model_rollout.rollout.errors import (
    ConflictError,
    InvalidStateError,
    PersistenceError,
    RunNotFoundError,
    StaleWriteError,
)
from model_rollout.rollout.models import RolloutPhase, RolloutRun

logger = logging.getLogger(__name__)


class RunStore(ABC):
    """Base class implementing the store contract over raw record access."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    # Raw record access, called with the lock held
    @abstractmethod
    def _read(self, run_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def _write(self, run_id: str, record: dict[str, Any]) -> None: ...

    @abstractmethod
    def _records(self) -> Iterator[dict[str, Any]]: ...

    @abstractmethod
    def _read_archived(self, run_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def _move_to_archive(self, run_id: str, record: dict[str, Any]) -> None: ...

    def create(self, run: RolloutRun) -> RolloutRun:
        """
        Persist a new run.

        Creating a run that is already stored with identical content succeeds,
        so an attempt retried after a timed-out write is not a conflict.

        Raises:
            ConflictError: If the candidate already has an active run or the id exists
        """
        with self._lock:
            existing = self._read(run.run_id)
            if existing is not None:
                if run.version == 1 and RolloutRun.from_dict(existing) == run:
                    logger.debug(f"Run {run.run_id} already created, ignoring repeated create")
                    return run
                raise ConflictError(f"Run {run.run_id} already exists")
            active = self._find_active(run.candidate_version)
            if active is not None:
                raise ConflictError(
                    f"Candidate {run.candidate_version} already has active run "
                    f"{active['run_id']} ({active['phase']})"
                )
            run.version = 1
            self._write(run.run_id, run.to_dict())
        logger.info(f"Created run {run.run_id} for candidate {run.candidate_version}")
        return run

    def get(self, run_id: str) -> RolloutRun:
        """
        Load a run, including archived runs.

        Raises:
            RunNotFoundError: If no such run exists
        """
        with self._lock:
            record = self._read(run_id) or self._read_archived(run_id)
        if record is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return RolloutRun.from_dict(record)

    def save(self, run: RolloutRun) -> RolloutRun:
        """
        Persist ``run`` if nobody saved it since it was read.

        Raises:
            RunNotFoundError: If the run was never created
            StaleWriteError: If the stored version differs from ``run.version``
        """
        with self._lock:
            stored = self._read(run.run_id)
            if stored is None:
                raise RunNotFoundError(f"Run {run.run_id} not found")
            if stored["version"] != run.version:
                raise StaleWriteError(
                    f"Run {run.run_id} was modified concurrently "
                    f"(stored version {stored['version']}, writer version {run.version})"
                )
            record = run.to_dict()
            record["version"] = run.version + 1
            self._write(run.run_id, record)
            run.version += 1
        return run

    def list_runs(self, active_only: bool = False) -> list[RolloutRun]:
        """List stored (non-archived) runs, oldest first."""
        with self._lock:
            records = list(self._records())
        runs = [RolloutRun.from_dict(r) for r in records]
        if active_only:
            runs = [r for r in runs if not r.is_terminal]
        return sorted(runs, key=lambda r: r.started_at)

    def find_active(self, candidate_version: str) -> RolloutRun | None:
        """Return the active run of a candidate, if any."""
        with self._lock:
            record = self._find_active(candidate_version)
        return RolloutRun.from_dict(record) if record else None

    def archive(self, run_id: str) -> None:
        """
        Move a terminal run out of the active record set.

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidStateError: If the run is not terminal
        """
        with self._lock:
            record = self._read(run_id)
            if record is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            if not RolloutPhase(record["phase"]).is_terminal:
                raise InvalidStateError(f"Run {run_id} is still active ({record['phase']})")
            self._move_to_archive(run_id, record)
        logger.info(f"Archived run {run_id}")

    def _find_active(self, candidate_version: str) -> dict[str, Any] | None:
        for record in self._records():
            if (
                record["plan"]["candidate_version"] == candidate_version
                and not RolloutPhase(record["phase"]).is_terminal
            ):
                return record
        return None


class InMemoryRunStore(RunStore):
    """Process-local store, used by tests and simulations."""

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, str] = {}
        self._archive: dict[str, str] = {}

    def _read(self, run_id: str) -> dict[str, Any] | None:
        raw = self._data.get(run_id)
        return json.loads(raw) if raw is not None else None

    def _write(self, run_id: str, record: dict[str, Any]) -> None:
        self._data[run_id] = json.dumps(record)

    def _records(self) -> Iterator[dict[str, Any]]:
        for raw in self._data.values():
            yield json.loads(raw)

    def _read_archived(self, run_id: str) -> dict[str, Any] | None:
        raw = self._archive.get(run_id)
        return json.loads(raw) if raw is not None else None

    def _move_to_archive(self, run_id: str, record: dict[str, Any]) -> None:
        self._archive[run_id] = json.dumps(record)
        del self._data[run_id]


class JsonFileRunStore(RunStore):
    """
    One JSON document per run under ``<state_dir>/runs``.

    Writes go to a temporary file that atomically replaces the record, so a
    crash mid-write leaves the previous version intact.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """
        Initialize file store.

        Args:
            state_dir: Directory for run records and the archive
        """
        super().__init__()
        self.state_dir = Path(state_dir)
        self.runs_dir = self.state_dir / "runs"
        self.archive_dir = self.state_dir / "archive"
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def _load(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e

    def _read(self, run_id: str) -> dict[str, Any] | None:
        return self._load(self._path(run_id))

    def _write(self, run_id: str, record: dict[str, Any]) -> None:
        path = self._path(run_id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    def _records(self) -> Iterator[dict[str, Any]]:
        for path in sorted(self.runs_dir.glob("*.json")):
            record = self._load(path)
            if record is not None:
                yield record

    def _read_archived(self, run_id: str) -> dict[str, Any] | None:
        return self._load(self.archive_dir / f"{run_id}.json")

    def _move_to_archive(self, run_id: str, record: dict[str, Any]) -> None:
        try:
            os.replace(self._path(run_id), self.archive_dir / f"{run_id}.json")
        except OSError as e:
            raise PersistenceError(f"Failed to archive run {run_id}: {e}") from e
