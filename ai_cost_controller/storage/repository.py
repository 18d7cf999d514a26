"""
Repository pattern for data access.

Handles the append-only telemetry ledger and the per-user rule and
feedback records that back the approval workflow.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import ActiveRule, DecisionFeedback, DeployState, FeedbackType, InferenceEvent
from ai_cost_controller.core.fields import EventField
from ai_cost_controller.core.rules import CounterfactualRule, RuleAction, RuleCondition

logger = logging.getLogger(__name__)

DEFAULT_RISK_SCORE = 0.1

_EVENT_COLUMNS = (
    "timestamp, tenant_id, environment, model, prompt_class, tokens_in, "
    "tokens_out, latency_ms, retries, retry_reason, success, cost_usd, "
    "request_id, decision_id, decision_applied, rule_applied"
)

_RULE_COLUMNS = (
    "id, rule_id, description, condition_field, condition_op, condition_value, "
    "action_field, action_op, action_value, deploy_state, risk_score, created_at"
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger, rule and feedback tables if they don't exist.

    The inference_event table is an append-only ledger. No UPDATE or
    DELETE operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS inference_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                environment TEXT NOT NULL,
                model TEXT NOT NULL,
                prompt_class TEXT NOT NULL,
                tokens_in INTEGER NOT NULL,
                tokens_out INTEGER NOT NULL,
                latency_ms REAL NOT NULL,
                retries INTEGER NOT NULL DEFAULT 0,
                retry_reason TEXT,
                success INTEGER NOT NULL,
                cost_usd REAL NOT NULL,
                request_id TEXT,
                decision_id TEXT,
                decision_applied TEXT,
                rule_applied TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS active_rule (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                description TEXT NOT NULL,
                condition_field TEXT NOT NULL,
                condition_op TEXT NOT NULL,
                condition_value TEXT NOT NULL,
                action_field TEXT NOT NULL,
                action_op TEXT NOT NULL,
                action_value TEXT NOT NULL,
                deploy_state TEXT NOT NULL,
                risk_score REAL NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS decision_feedback (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                decision_id TEXT NOT NULL,
                feedback_type TEXT NOT NULL,
                override_reason TEXT,
                timestamp TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _event_params(event: InferenceEvent) -> tuple:
    return (
        event.timestamp.isoformat(),
        event.tenant_id,
        event.environment,
        event.model,
        event.prompt_class,
        event.tokens_in,
        event.tokens_out,
        event.latency_ms,
        event.retries,
        event.retry_reason,
        int(event.success),
        event.cost_usd,
        event.request_id,
        event.decision_id,
        event.decision_applied,
        event.rule_applied,
    )


def _row_to_event(row: tuple) -> InferenceEvent:
    return InferenceEvent(
        timestamp=datetime.fromisoformat(row[0]),
        tenant_id=row[1],
        environment=row[2],
        model=row[3],
        prompt_class=row[4],
        tokens_in=row[5],
        tokens_out=row[6],
        latency_ms=row[7],
        retries=row[8],
        retry_reason=row[9],
        success=bool(row[10]),
        cost_usd=row[11],
        request_id=row[12],
        decision_id=row[13],
        decision_applied=row[14],
        rule_applied=row[15],
    )


def insert_inference_events(events: List[InferenceEvent], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert events atomically into the append-only ledger.

    All events are inserted in a single transaction to ensure consistency.

    Args:
        events: Events to record
        db_path: Path to SQLite database file
    """
    if not events:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        conn.executemany(
            f"INSERT INTO inference_event ({_EVENT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [_event_params(event) for event in events],
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_recent_inference_events(
    limit: int = 1000,
    tenant_id: Optional[str] = None,
    db_path: str = DEFAULT_DB_PATH,
) -> List[InferenceEvent]:
    """Fetch the most recent events as a window.

    Args:
        limit: Maximum number of events to return
        tenant_id: Optional filter for a specific tenant
        db_path: Path to SQLite database file

    Returns:
        Up to `limit` newest events, ordered oldest first
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_EVENT_COLUMNS} FROM inference_event"
        params: list = []
        if tenant_id:
            query += " WHERE tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        rows = conn.execute(query, params).fetchall()
        return [_row_to_event(row) for row in reversed(rows)]
    finally:
        conn.close()


def _rule_params(user_id: str, active: ActiveRule) -> tuple:
    return (
        user_id,
        active.id,
        active.rule_id,
        active.description,
        active.condition.field.value,
        active.condition.op,
        json.dumps(active.condition.value),
        active.action.field.value,
        active.action.op,
        json.dumps(active.action.value),
        active.deploy_state.value,
        active.risk_score,
        active.created_at.isoformat(),
    )


def _insert_rule(conn, user_id: str, active: ActiveRule) -> None:
    conn.execute(
        f"INSERT INTO active_rule (user_id, {_RULE_COLUMNS}) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        _rule_params(user_id, active),
    )


def _insert_feedback(conn, user_id: str, feedback: DecisionFeedback) -> None:
    conn.execute(
        "INSERT INTO decision_feedback "
        "(user_id, decision_id, feedback_type, override_reason, timestamp) "
        "VALUES (?, ?, ?, ?, ?)",
        (
            user_id,
            feedback.decision_id,
            feedback.feedback_type.value,
            feedback.override_reason,
            feedback.timestamp.isoformat(),
        ),
    )


def _new_active_rule(rule: CounterfactualRule, deploy_state: DeployState, risk_score: float) -> ActiveRule:
    return ActiveRule(
        id=uuid.uuid4().hex,
        rule_id=rule.id,
        description=rule.description,
        condition=rule.condition,
        action=rule.action,
        deploy_state=deploy_state,
        risk_score=risk_score,
        created_at=datetime.now(),
    )


class RuleRepository:
    """Per-user store of deployed rules and decision feedback.

    Write failures (sqlite3.Error) propagate to the caller unchanged.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def deploy_rule(
        self,
        user_id: str,
        rule: CounterfactualRule,
        deploy_state: DeployState = DeployState.ACTIVE,
        risk_score: float = DEFAULT_RISK_SCORE,
    ) -> ActiveRule:
        """Persist an approved catalog rule for a user.

        Returns:
            The stored ActiveRule with its generated id
        """
        active = _new_active_rule(rule, deploy_state, risk_score)

        conn = get_connection(self.db_path)
        try:
            _insert_rule(conn, user_id, active)
            conn.commit()
        finally:
            conn.close()

        logger.info("Deployed rule %s (%s) for user %s", active.id, rule.id, user_id)
        return active

    def approve_rule(
        self,
        user_id: str,
        rule: CounterfactualRule,
        decision_id: str,
        deploy_state: DeployState = DeployState.ACTIVE,
        risk_score: float = DEFAULT_RISK_SCORE,
    ) -> ActiveRule:
        """Deploy a rule and record the approving feedback atomically.

        The rule row and the SUCCESS feedback row are written in a single
        transaction, so either both are stored or neither is.

        Args:
            user_id: Approving user
            rule: Catalog rule to deploy
            decision_id: Decision the rule came from
            deploy_state: State to deploy the rule in
            risk_score: Risk score attached to the deployed rule

        Returns:
            The stored ActiveRule with its generated id

        Raises:
            sqlite3.Error: If either write fails; nothing is stored
        """
        active = _new_active_rule(rule, deploy_state, risk_score)
        feedback = DecisionFeedback(
            decision_id=decision_id,
            feedback_type=FeedbackType.SUCCESS,
            timestamp=datetime.now(),
        )

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            _insert_rule(conn, user_id, active)
            _insert_feedback(conn, user_id, feedback)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info("Deployed rule %s (%s) for user %s", active.id, rule.id, user_id)
        return active

    def fetch_rules(self, user_id: str) -> List[ActiveRule]:
        """All rules deployed for a user, oldest first.

        Raises:
            ValueError: If a stored rule references an unknown field
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_RULE_COLUMNS} FROM active_rule WHERE user_id = ? "
                "ORDER BY created_at, rowid",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()

        return [
            ActiveRule(
                id=row[0],
                rule_id=row[1],
                description=row[2],
                condition=RuleCondition(EventField.parse(row[3]), row[4], json.loads(row[5])),
                action=RuleAction(EventField.parse(row[6]), row[7], json.loads(row[8])),
                deploy_state=DeployState(row[9]),
                risk_score=row[10],
                created_at=datetime.fromisoformat(row[11]),
            )
            for row in rows
        ]

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        """Revoke a deployed rule.

        Returns:
            True if a rule was deleted
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM active_rule WHERE user_id = ? AND id = ?",
                (user_id, rule_id),
            )
            conn.commit()
            deleted = cursor.rowcount > 0
        finally:
            conn.close()

        if deleted:
            logger.info("Revoked rule %s for user %s", rule_id, user_id)
        return deleted

    def log_decision_feedback(
        self,
        user_id: str,
        decision_id: str,
        feedback_type: FeedbackType,
        reason: Optional[str] = None,
    ) -> DecisionFeedback:
        """Record a human approval or override of a decision."""
        feedback = DecisionFeedback(
            decision_id=decision_id,
            feedback_type=feedback_type,
            timestamp=datetime.now(),
            override_reason=reason,
        )
        conn = get_connection(self.db_path)
        try:
            _insert_feedback(conn, user_id, feedback)
            conn.commit()
        finally:
            conn.close()
        return feedback

    def fetch_feedback(self, user_id: str) -> List[DecisionFeedback]:
        """Feedback records for a user, oldest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT decision_id, feedback_type, override_reason, timestamp "
                "FROM decision_feedback WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()

        return [
            DecisionFeedback(
                decision_id=row[0],
                feedback_type=FeedbackType(row[1]),
                override_reason=row[2],
                timestamp=datetime.fromisoformat(row[3]),
            )
            for row in rows
        ]
