"""Policy Rule Store — SQLite catalog of learned rules and their audit log.

A rule is identified by its key (scope, owner, run, step, category,
normalized text); ``upsert_violation`` is the only path that creates
rules.  Every other mutation goes through ``save`` with a whole rule
computed by ``retour.learning.strength``.

The promotion log records rule lifecycle changes and human job
decisions.  Writing a rule-change entry is best-effort: a failure is
logged and swallowed.  Human decisions are the system of record for an
override and must not be lost, so their failures propagate.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from retour.core.sqlite import PersistenceError, iso, parse_ts, reading, transaction
from retour.learning.strength import record_violation
from retour.models.policy import (
    ContextConditions,
    PolicyRule,
    PromotionLogEntry,
    PromotionType,
    RuleScope,
    RuleStatus,
    StrengthStage,
)

logger = logging.getLogger(__name__)

# Owner recorded on global-scope rules.
GLOBAL_OWNER = "*"


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_RULES = """
CREATE TABLE IF NOT EXISTS policy_rules (
    rule_id                  TEXT PRIMARY KEY,
    scope                    TEXT NOT NULL,
    owner_id                 TEXT NOT NULL,
    run_id                   TEXT NOT NULL DEFAULT '',
    step_id                  INTEGER NOT NULL,
    category                 TEXT NOT NULL,
    rule_text                TEXT NOT NULL,
    violation_count          INTEGER NOT NULL DEFAULT 0,
    strength_stage           TEXT NOT NULL,
    health                   INTEGER NOT NULL,
    confidence_score         REAL NOT NULL,
    triggered_count          INTEGER NOT NULL DEFAULT 0,
    approved_despite_trigger INTEGER NOT NULL DEFAULT 0,
    rejected_due_to_trigger  INTEGER NOT NULL DEFAULT 0,
    context_json             TEXT NOT NULL DEFAULT '{}',
    muted                    INTEGER NOT NULL DEFAULT 0,
    locked                   INTEGER NOT NULL DEFAULT 0,
    status                   TEXT NOT NULL,
    created_at               TEXT NOT NULL,
    last_triggered_at        TEXT,
    last_decay_at            TEXT NOT NULL,
    UNIQUE (scope, owner_id, run_id, step_id, category, rule_text)
);
"""

_CREATE_PROMOTION_LOG = """
CREATE TABLE IF NOT EXISTS promotion_log (
    entry_id        TEXT PRIMARY KEY,
    entry_type      TEXT NOT NULL,
    owner_id        TEXT NOT NULL DEFAULT '',
    rule_id         TEXT,
    job_id          TEXT,
    from_value      TEXT,
    to_value        TEXT,
    trigger_reason  TEXT NOT NULL DEFAULT '',
    rule_text       TEXT,
    category        TEXT,
    violation_count INTEGER,
    actor           TEXT NOT NULL,
    created_at      TEXT NOT NULL
);
"""

_CREATE_IDX_RULES_KEY = """
CREATE INDEX IF NOT EXISTS idx_rules_key
    ON policy_rules(step_id, category, rule_text, scope);
"""

_CREATE_IDX_LOG_OWNER = """
CREATE INDEX IF NOT EXISTS idx_promotion_log_owner ON promotion_log(owner_id, created_at);
"""

_RULE_COLUMNS = (
    "rule_id", "scope", "owner_id", "run_id", "step_id", "category", "rule_text",
    "violation_count", "strength_stage", "health", "confidence_score",
    "triggered_count", "approved_despite_trigger", "rejected_due_to_trigger",
    "context_json", "muted", "locked", "status", "created_at",
    "last_triggered_at", "last_decay_at",
)


class RuleNotFoundError(RuntimeError):
    """Raised when a rule id does not exist in the store."""


class RuleStore:
    """SQLite-backed store for policy rules and the promotion log.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. May be shared with the other stores.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        with transaction(self._db_path) as conn:
            for ddl in (
                _CREATE_RULES,
                _CREATE_PROMOTION_LOG,
                _CREATE_IDX_RULES_KEY,
                _CREATE_IDX_LOG_OWNER,
            ):
                conn.execute(ddl)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def upsert_violation(
        self,
        *,
        scope: RuleScope,
        owner_id: str,
        step_id: int,
        category: str,
        rule_text: str,
        run_id: str | None = None,
        context_conditions: ContextConditions | None = None,
        now: datetime | None = None,
    ) -> tuple[PolicyRule, PolicyRule | None]:
        """Count one violation against the rule with this key.

        Creates the rule on first sight.  Returns ``(updated, previous)``;
        ``previous`` is None when the rule was just created.
        """
        now = now or datetime.now(timezone.utc)
        stored_run = run_id if scope == RuleScope.RUN else ""
        with transaction(self._db_path) as conn:
            row = conn.execute(
                """
                SELECT * FROM policy_rules
                 WHERE scope = ? AND owner_id = ? AND run_id = ?
                   AND step_id = ? AND category = ? AND rule_text = ?
                """,
                (scope.value, owner_id, stored_run or "", step_id, category, rule_text),
            ).fetchone()
            if row is None:
                fresh = PolicyRule(
                    scope=scope,
                    owner_id=owner_id,
                    run_id=stored_run or None,
                    step_id=step_id,
                    category=category,
                    rule_text=rule_text,
                    context_conditions=context_conditions or ContextConditions(),
                    created_at=now,
                    last_decay_at=now,
                )
                created = record_violation(fresh).model_copy(
                    update={"last_triggered_at": now}
                )
                self._insert(conn, created)
                return created, None
            previous = self._row_to_rule(row)
            updated = record_violation(previous).model_copy(
                update={"last_triggered_at": now}
            )
            self._update(conn, updated)
            return updated, previous

    def get(self, rule_id: str) -> PolicyRule:
        with reading(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM policy_rules WHERE rule_id = ?", (rule_id,)
            ).fetchone()
        if row is None:
            raise RuleNotFoundError(f"Rule {rule_id} does not exist")
        return self._row_to_rule(row)

    def save(self, rule: PolicyRule) -> PolicyRule:
        """Persist every mutable field of an existing rule."""
        with transaction(self._db_path) as conn:
            if self._update(conn, rule) != 1:
                raise RuleNotFoundError(f"Rule {rule.rule_id} does not exist")
        return rule

    def list_rules(
        self,
        *,
        owner_id: str | None = None,
        scope: RuleScope | None = None,
        run_id: str | None = None,
        step_id: int | None = None,
        status: RuleStatus | None = None,
    ) -> list[PolicyRule]:
        clauses: list[str] = []
        params: list[object] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if scope is not None:
            clauses.append("scope = ?")
            params.append(scope.value)
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if step_id is not None:
            clauses.append("step_id = ?")
            params.append(step_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        query = "SELECT * FROM policy_rules"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, rule_id ASC"
        with reading(self._db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_rule(row) for row in rows]

    def applicable_rules(self, owner_id: str, run_id: str, step_id: int) -> list[PolicyRule]:
        """Active rules at every scope that can apply to one run step."""
        with reading(self._db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM policy_rules
                 WHERE step_id = ? AND status = ?
                   AND (   (scope = ? AND run_id = ?)
                        OR (scope = ? AND owner_id = ?)
                        OR  scope = ?)
                 ORDER BY created_at ASC, rule_id ASC
                """,
                (
                    step_id,
                    RuleStatus.ACTIVE.value,
                    RuleScope.RUN.value, run_id,
                    RuleScope.USER.value, owner_id,
                    RuleScope.GLOBAL.value,
                ),
            ).fetchall()
        return [self._row_to_rule(row) for row in rows]

    def count_distinct_runs(
        self, owner_id: str, step_id: int, category: str, rule_text: str
    ) -> int:
        """Independent runs of one owner that recorded this violation."""
        with reading(self._db_path) as conn:
            row = conn.execute(
                """
                SELECT COUNT(DISTINCT run_id) FROM policy_rules
                 WHERE scope = ? AND owner_id = ?
                   AND step_id = ? AND category = ? AND rule_text = ?
                """,
                (RuleScope.RUN.value, owner_id, step_id, category, rule_text),
            ).fetchone()
        return int(row[0])

    def count_distinct_owners(self, step_id: int, category: str, rule_text: str) -> int:
        """Independent owners holding this violation as a user-scope rule."""
        with reading(self._db_path) as conn:
            row = conn.execute(
                """
                SELECT COUNT(DISTINCT owner_id) FROM policy_rules
                 WHERE scope = ? AND status = ?
                   AND step_id = ? AND category = ? AND rule_text = ?
                """,
                (
                    RuleScope.USER.value,
                    RuleStatus.ACTIVE.value,
                    step_id, category, rule_text,
                ),
            ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Promotion log
    # ------------------------------------------------------------------

    def log_promotion(self, entry: PromotionLogEntry) -> bool:
        """Append one audit entry.

        Returns False when a rule-change entry could not be written.

        Raises
        ------
        PersistenceError
            For human-decision entries only.
        """
        try:
            with transaction(self._db_path) as conn:
                self.write_promotion(conn, entry)
        except PersistenceError:
            if entry.entry_type == PromotionType.HUMAN_DECISION:
                raise
            logger.warning(
                "Promotion log write failed for %s (rule=%s); continuing",
                entry.entry_type.value, entry.rule_id, exc_info=True,
            )
            return False
        return True

    @staticmethod
    def write_promotion(conn: sqlite3.Connection, entry: PromotionLogEntry) -> None:
        """Insert one audit entry on a connection the caller owns."""
        conn.execute(
            """
            INSERT INTO promotion_log
                (entry_id, entry_type, owner_id, rule_id, job_id,
                 from_value, to_value, trigger_reason, rule_text,
                 category, violation_count, actor, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.entry_type.value,
                entry.owner_id,
                entry.rule_id,
                entry.job_id,
                entry.from_value,
                entry.to_value,
                entry.trigger_reason,
                entry.rule_text,
                entry.category,
                entry.violation_count,
                entry.actor,
                iso(entry.created_at),
            ),
        )

    def get_promotion_log(
        self,
        *,
        owner_id: str | None = None,
        rule_id: str | None = None,
        job_id: str | None = None,
        entry_type: PromotionType | None = None,
        limit: int | None = None,
    ) -> list[PromotionLogEntry]:
        """Audit entries, oldest first."""
        clauses: list[str] = []
        params: list[object] = []
        for column, value in (
            ("owner_id", owner_id),
            ("rule_id", rule_id),
            ("job_id", job_id),
            ("entry_type", entry_type.value if entry_type else None),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        query = "SELECT * FROM promotion_log"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with reading(self._db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            PromotionLogEntry(
                entry_id=row["entry_id"],
                entry_type=PromotionType(row["entry_type"]),
                owner_id=row["owner_id"],
                rule_id=row["rule_id"],
                job_id=row["job_id"],
                from_value=row["from_value"],
                to_value=row["to_value"],
                trigger_reason=row["trigger_reason"],
                rule_text=row["rule_text"],
                category=row["category"],
                violation_count=row["violation_count"],
                actor=row["actor"],
                created_at=parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _values(rule: PolicyRule) -> tuple[object, ...]:
        return (
            rule.rule_id,
            rule.scope.value,
            rule.owner_id,
            rule.run_id or "",
            rule.step_id,
            rule.category,
            rule.rule_text,
            rule.violation_count,
            rule.strength_stage.value,
            rule.health,
            rule.confidence_score,
            rule.triggered_count,
            rule.approved_despite_trigger,
            rule.rejected_due_to_trigger,
            json.dumps(rule.context_conditions.model_dump(), sort_keys=True),
            int(rule.muted),
            int(rule.locked),
            rule.status.value,
            iso(rule.created_at),
            iso(rule.last_triggered_at),
            iso(rule.last_decay_at),
        )

    def _insert(self, conn: sqlite3.Connection, rule: PolicyRule) -> None:
        placeholders = ", ".join("?" for _ in _RULE_COLUMNS)
        conn.execute(
            f"INSERT INTO policy_rules ({', '.join(_RULE_COLUMNS)}) VALUES ({placeholders})",
            self._values(rule),
        )

    def _update(self, conn: sqlite3.Connection, rule: PolicyRule) -> int:
        # Key columns and created_at are never rewritten.
        mutable = _RULE_COLUMNS[7:18] + _RULE_COLUMNS[19:]
        values = self._values(rule)
        by_column = dict(zip(_RULE_COLUMNS, values))
        assignments = ", ".join(f"{column} = ?" for column in mutable)
        cursor = conn.execute(
            f"UPDATE policy_rules SET {assignments} WHERE rule_id = ?",
            [by_column[column] for column in mutable] + [rule.rule_id],
        )
        return cursor.rowcount

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> PolicyRule:
        return PolicyRule(
            rule_id=row["rule_id"],
            scope=RuleScope(row["scope"]),
            owner_id=row["owner_id"],
            run_id=row["run_id"] or None,
            step_id=row["step_id"],
            category=row["category"],
            rule_text=row["rule_text"],
            violation_count=row["violation_count"],
            strength_stage=StrengthStage(row["strength_stage"]),
            health=row["health"],
            confidence_score=row["confidence_score"],
            triggered_count=row["triggered_count"],
            approved_despite_trigger=row["approved_despite_trigger"],
            rejected_due_to_trigger=row["rejected_due_to_trigger"],
            context_conditions=ContextConditions.model_validate(
                json.loads(row["context_json"])
            ),
            muted=bool(row["muted"]),
            locked=bool(row["locked"]),
            status=RuleStatus(row["status"]),
            created_at=parse_ts(row["created_at"]),
            last_triggered_at=parse_ts(row["last_triggered_at"]),
            last_decay_at=parse_ts(row["last_decay_at"]),
        )
