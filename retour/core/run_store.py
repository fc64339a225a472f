"""Run, artifact and verdict persistence backed by SQLite.

The runs table is written only through the phase state machine (phase,
step, pause flag) and the orchestrator (step outputs, last error).
Phase changes are conditional writes: the UPDATE only lands when the
row still carries the phase the caller expected.

Artifacts and verdicts are insert-only and never updated.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from retour.core.sqlite import iso, parse_ts, reading, transaction
from retour.models.artifacts import Artifact
from retour.models.phases import Phase, PhaseTransition
from retour.models.runs import Run, parse_step_output, step_output_adapter
from retour.models.verdicts import ComparisonVerdict


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_RUNS = """
CREATE TABLE IF NOT EXISTS runs (
    run_id            TEXT PRIMARY KEY,
    owner_id          TEXT NOT NULL,
    phase             TEXT NOT NULL,
    step              INTEGER NOT NULL,
    step_outputs_json TEXT NOT NULL DEFAULT '{}',
    last_error        TEXT,
    paused            INTEGER NOT NULL DEFAULT 0,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
);
"""

_CREATE_TRANSITIONS = """
CREATE TABLE IF NOT EXISTS phase_transitions (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id      TEXT NOT NULL,
    trigger     TEXT NOT NULL,
    from_phase  TEXT NOT NULL,
    to_phase    TEXT NOT NULL,
    from_step   INTEGER NOT NULL,
    to_step     INTEGER NOT NULL,
    created_at  TEXT NOT NULL
);
"""

_CREATE_ARTIFACTS = """
CREATE TABLE IF NOT EXISTS artifacts (
    artifact_id   TEXT PRIMARY KEY,
    kind          TEXT NOT NULL,
    storage_ref   TEXT NOT NULL,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    job_id        TEXT,
    created_at    TEXT NOT NULL
);
"""

_CREATE_VERDICTS = """
CREATE TABLE IF NOT EXISTS verdicts (
    verdict_id   TEXT PRIMARY KEY,
    run_id       TEXT NOT NULL,
    step_id      INTEGER NOT NULL,
    artifact_id  TEXT NOT NULL,
    passed       INTEGER NOT NULL,
    next_step    TEXT NOT NULL,
    verdict_json TEXT NOT NULL,
    created_at   TEXT NOT NULL
);
"""

_CREATE_IDX_TRANSITIONS = """
CREATE INDEX IF NOT EXISTS idx_transitions_run ON phase_transitions(run_id, id);
"""

_CREATE_IDX_VERDICTS = """
CREATE INDEX IF NOT EXISTS idx_verdicts_run ON verdicts(run_id, step_id, created_at);
"""


class ArtifactConflictError(RuntimeError):
    """Raised when an artifact id is rewritten with different content."""


class RunNotFoundError(RuntimeError):
    """Raised when an operation names a run that does not exist."""


class RunStore:
    """SQLite-backed store for runs, artifacts and verdicts.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _init_schema(self) -> None:
        with transaction(self._db_path) as conn:
            for ddl in (
                _CREATE_RUNS,
                _CREATE_TRANSITIONS,
                _CREATE_ARTIFACTS,
                _CREATE_VERDICTS,
                _CREATE_IDX_TRANSITIONS,
                _CREATE_IDX_VERDICTS,
            ):
                conn.execute(ddl)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(self, run: Run) -> Run:
        """Insert a run; an existing run with the same id is returned as-is."""
        with transaction(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM runs WHERE run_id = ?", (run.run_id,)
            ).fetchone()
            if row is not None:
                return self._row_to_run(row)
            conn.execute(
                """
                INSERT INTO runs
                    (run_id, owner_id, phase, step, step_outputs_json,
                     last_error, paused, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.run_id,
                    run.owner_id,
                    run.phase.value,
                    run.step,
                    self._dump_outputs(run),
                    run.last_error,
                    int(run.paused),
                    iso(run.created_at),
                    iso(run.updated_at),
                ),
            )
        return run

    def get_run(self, run_id: str) -> Run | None:
        with reading(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM runs WHERE run_id = ?", (run_id,)
            ).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, owner_id: str | None = None) -> list[Run]:
        query = "SELECT * FROM runs"
        params: tuple[str, ...] = ()
        if owner_id is not None:
            query += " WHERE owner_id = ?"
            params = (owner_id,)
        with reading(self._db_path) as conn:
            rows = conn.execute(query + " ORDER BY created_at DESC", params).fetchall()
        return [self._row_to_run(row) for row in rows]

    def commit_transition(
        self, transition: PhaseTransition, *, now: datetime | None = None
    ) -> bool:
        """Apply a phase change only if the run still has ``from_phase``.

        The conditional UPDATE and the audit row are written in one
        transaction.  Returns False when the expected phase was stale.
        """
        ts = iso(now or datetime.now(timezone.utc))
        with transaction(self._db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE runs
                   SET phase = ?, step = ?, updated_at = ?
                 WHERE run_id = ? AND phase = ?
                """,
                (
                    transition.to_phase.value,
                    transition.to_step,
                    ts,
                    transition.run_id,
                    transition.from_phase.value,
                ),
            )
            if cursor.rowcount != 1:
                return False
            conn.execute(
                """
                INSERT INTO phase_transitions
                    (run_id, trigger, from_phase, to_phase, from_step, to_step, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transition.run_id,
                    transition.trigger.value,
                    transition.from_phase.value,
                    transition.to_phase.value,
                    transition.from_step,
                    transition.to_step,
                    ts,
                ),
            )
        return True

    def get_transitions(self, run_id: str) -> list[PhaseTransition]:
        """Return committed transitions for a run, oldest first."""
        with reading(self._db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM phase_transitions WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [
            PhaseTransition(
                run_id=row["run_id"],
                trigger=row["trigger"],
                from_phase=row["from_phase"],
                to_phase=row["to_phase"],
                from_step=row["from_step"],
                to_step=row["to_step"],
            )
            for row in rows
        ]

    def set_paused(self, run_id: str, paused: bool) -> bool:
        with transaction(self._db_path) as conn:
            cursor = conn.execute(
                "UPDATE runs SET paused = ?, updated_at = ? WHERE run_id = ?",
                (int(paused), iso(datetime.now(timezone.utc)), run_id),
            )
        return cursor.rowcount == 1

    def set_last_error(self, run_id: str, error: str | None) -> None:
        with transaction(self._db_path) as conn:
            conn.execute(
                "UPDATE runs SET last_error = ?, updated_at = ? WHERE run_id = ?",
                (error, iso(datetime.now(timezone.utc)), run_id),
            )

    def record_step_output(self, run_id: str, step_id: int, output: object) -> Run:
        """Store a validated step output under its step number."""
        parsed = parse_step_output(step_id, output)
        with transaction(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM runs WHERE run_id = ?", (run_id,)
            ).fetchone()
            if row is None:
                raise RunNotFoundError(f"Run {run_id} does not exist")
            run = self._row_to_run(row)
            outputs = dict(run.step_outputs)
            outputs[step_id] = parsed
            updated = Run.model_validate(
                {**run.model_dump(), "step_outputs": outputs}
            )
            conn.execute(
                "UPDATE runs SET step_outputs_json = ?, updated_at = ? WHERE run_id = ?",
                (
                    self._dump_outputs(updated),
                    iso(datetime.now(timezone.utc)),
                    run_id,
                ),
            )
        return updated

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def put_artifact(self, artifact: Artifact) -> Artifact:
        """Insert an artifact; identical rewrites are no-ops."""
        metadata_json = json.dumps(artifact.metadata.model_dump(mode="json"), sort_keys=True)
        with transaction(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM artifacts WHERE artifact_id = ?",
                (artifact.artifact_id,),
            ).fetchone()
            if row is not None:
                if row["storage_ref"] != artifact.storage_ref or row["metadata_json"] != metadata_json:
                    raise ArtifactConflictError(
                        f"Artifact {artifact.artifact_id} already stored with different content"
                    )
                return self._row_to_artifact(row)
            conn.execute(
                """
                INSERT INTO artifacts
                    (artifact_id, kind, storage_ref, metadata_json, job_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    artifact.artifact_id,
                    artifact.kind.value,
                    artifact.storage_ref,
                    metadata_json,
                    artifact.job_id,
                    iso(artifact.created_at),
                ),
            )
        return artifact

    def get_artifact(self, artifact_id: str) -> Artifact | None:
        with reading(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM artifacts WHERE artifact_id = ?", (artifact_id,)
            ).fetchone()
        return self._row_to_artifact(row) if row else None

    # ------------------------------------------------------------------
    # Verdicts
    # ------------------------------------------------------------------

    def save_verdict(self, verdict: ComparisonVerdict) -> ComparisonVerdict:
        with transaction(self._db_path) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO verdicts
                    (verdict_id, run_id, step_id, artifact_id, passed,
                     next_step, verdict_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    verdict.verdict_id,
                    verdict.run_id,
                    verdict.step_id,
                    verdict.artifact_id,
                    int(verdict.passed),
                    verdict.recommended_next_step.value,
                    verdict.model_dump_json(),
                    iso(verdict.created_at),
                ),
            )
        return verdict

    def get_verdict(self, verdict_id: str) -> ComparisonVerdict | None:
        with reading(self._db_path) as conn:
            row = conn.execute(
                "SELECT verdict_json FROM verdicts WHERE verdict_id = ?", (verdict_id,)
            ).fetchone()
        return ComparisonVerdict.model_validate_json(row[0]) if row else None

    def list_verdicts(
        self, run_id: str, step_id: int | None = None
    ) -> list[ComparisonVerdict]:
        query = "SELECT verdict_json FROM verdicts WHERE run_id = ?"
        params: tuple[object, ...] = (run_id,)
        if step_id is not None:
            query += " AND step_id = ?"
            params = (run_id, step_id)
        with reading(self._db_path) as conn:
            rows = conn.execute(query + " ORDER BY rowid ASC", params).fetchall()
        return [ComparisonVerdict.model_validate_json(row[0]) for row in rows]

    def latest_verdict(self, run_id: str) -> ComparisonVerdict | None:
        verdicts = self.list_verdicts(run_id)
        return verdicts[-1] if verdicts else None

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _dump_outputs(run: Run) -> str:
        return json.dumps(
            {
                str(step_id): step_output_adapter.dump_python(output, mode="json")
                for step_id, output in run.step_outputs.items()
            },
            sort_keys=True,
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Run:
        return Run(
            run_id=row["run_id"],
            owner_id=row["owner_id"],
            phase=Phase(row["phase"]),
            step=row["step"],
            step_outputs=json.loads(row["step_outputs_json"]),
            last_error=row["last_error"],
            paused=bool(row["paused"]),
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_artifact(row: sqlite3.Row) -> Artifact:
        return Artifact(
            artifact_id=row["artifact_id"],
            kind=row["kind"],
            storage_ref=row["storage_ref"],
            metadata=json.loads(row["metadata_json"]),
            job_id=row["job_id"],
            created_at=parse_ts(row["created_at"]),
        )
