"""
Unit tests for storage layer.

Tests schema creation, ledger insertion and retrieval, and the rule and
feedback records.
"""

import os
import sqlite3
import tempfile
from datetime import datetime

import pytest

from ai_cost_controller.core.counterfactual import default_catalog
from ai_cost_controller.core.fields import EventField
from ai_cost_controller.core.rules import ACTION_SET, CounterfactualRule, RuleAction, RuleCondition
from ai_cost_controller.storage.db import get_connection
from ai_cost_controller.storage.models import DeployState, FeedbackType, InferenceEvent
from ai_cost_controller.storage.repository import (
    RuleRepository,
    fetch_recent_inference_events,
    initialize_schema,
    insert_inference_events,
)


def _event(minute: int = 0, tenant_id: str = "acme_corp", **overrides) -> InferenceEvent:
    fields = dict(
        timestamp=datetime(2024, 1, 1, 12, minute, 0),
        tenant_id=tenant_id,
        environment="prod",
        model="gpt-4",
        prompt_class="chat",
        tokens_in=300,
        tokens_out=700,
        latency_ms=412.5,
        retries=0,
        success=True,
        cost_usd=0.03,
    )
    fields.update(overrides)
    return InferenceEvent(**fields)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
                )
                tables = [row[0] for row in cursor.fetchall()]
                assert tables == ["active_rule", "decision_feedback", "inference_event"]

                cursor = conn.execute("PRAGMA table_info(inference_event)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    'id', 'timestamp', 'tenant_id', 'environment', 'model', 'prompt_class',
                    'tokens_in', 'tokens_out', 'latency_ms', 'retries', 'retry_reason',
                    'success', 'cost_usd', 'request_id', 'decision_id', 'decision_applied',
                    'rule_applied',
                ]
            finally:
                conn.close()

    def test_schema_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)


class TestEventLedger:
    """Test inference event insertion and retrieval."""

    def test_round_trip_preserves_fields(self):
        """Every event field survives storage."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            event = _event(
                retries=2,
                retry_reason="timeout",
                success=False,
                request_id="req_1",
                decision_applied="CONDITIONAL",
                rule_applied="abc",
            )
            insert_inference_events([event], db_path)

            events = fetch_recent_inference_events(db_path=db_path)
            assert events == [event]

    def test_oldest_first_and_limit(self):
        """The newest events are returned in arrival order."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            insert_inference_events([_event(minute=i) for i in range(5)], db_path)

            events = fetch_recent_inference_events(limit=3, db_path=db_path)
            assert [e.timestamp.minute for e in events] == [2, 3, 4]

    def test_filter_by_tenant(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            insert_inference_events(
                [_event(tenant_id="acme_corp"), _event(tenant_id="globex"), _event(tenant_id="acme_corp")],
                db_path,
            )

            events = fetch_recent_inference_events(tenant_id="globex", db_path=db_path)
            assert len(events) == 1
            assert events[0].tenant_id == "globex"

    def test_insert_empty_event_list(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            insert_inference_events([], db_path)
            assert fetch_recent_inference_events(db_path=db_path) == []

    def test_missing_schema_raises(self):
        """Reading before initialization surfaces the sqlite error."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            with pytest.raises(sqlite3.OperationalError, match="no such table"):
                fetch_recent_inference_events(db_path=db_path)

    def test_negative_cost_rejected(self):
        with pytest.raises(ValueError, match="cost_usd cannot be negative"):
            _event(cost_usd=-0.01)


class TestRuleRepository:
    """Test deployed rule and feedback records."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = RuleRepository(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_deploy_and_fetch(self):
        """Deployed rules round-trip with typed conditions and actions."""
        rule = default_catalog().get_rule("cap_retries_1")
        active = self.repository.deploy_rule("alice", rule, risk_score=0.3)

        rules = self.repository.fetch_rules("alice")
        assert len(rules) == 1
        fetched = rules[0]
        assert fetched.id == active.id
        assert fetched.rule_id == "cap_retries_1"
        assert fetched.condition == rule.condition
        assert fetched.action == rule.action
        assert fetched.deploy_state == DeployState.ACTIVE
        assert fetched.risk_score == 0.3

    def test_list_values_round_trip(self):
        rule = CounterfactualRule(
            id="route_batch",
            description="Route batch classes",
            condition=RuleCondition(EventField.PROMPT_CLASS, "in", ["reporting", "extraction"]),
            action=RuleAction(EventField.MODEL, ACTION_SET, "gpt-3.5-turbo"),
        )
        self.repository.deploy_rule("alice", rule, deploy_state=DeployState.SHADOW)

        fetched = self.repository.fetch_rules("alice")[0]
        assert fetched.condition.value == ["reporting", "extraction"]
        assert fetched.deploy_state == DeployState.SHADOW

    def test_rules_are_per_user(self):
        rule = default_catalog().get_rule("downgrade_reporting")
        self.repository.deploy_rule("alice", rule)

        assert self.repository.fetch_rules("bob") == []

    def test_delete_rule(self):
        active = self.repository.deploy_rule("alice", default_catalog().get_rule("cap_retries_1"))

        assert self.repository.delete_rule("bob", active.id) is False
        assert self.repository.delete_rule("alice", active.id) is True
        assert self.repository.fetch_rules("alice") == []
        assert self.repository.delete_rule("alice", active.id) is False

    def test_invalid_risk_score(self):
        with pytest.raises(ValueError, match="risk_score"):
            self.repository.deploy_rule("alice", default_catalog().get_rule("cap_retries_1"), risk_score=2.0)

    def test_feedback_log(self):
        self.repository.log_decision_feedback("alice", "d1", FeedbackType.SUCCESS)
        self.repository.log_decision_feedback("alice", "d2", FeedbackType.OVERRIDE, "too risky")

        feedback = self.repository.fetch_feedback("alice")
        assert [(f.decision_id, f.feedback_type) for f in feedback] == [
            ("d1", FeedbackType.SUCCESS),
            ("d2", FeedbackType.OVERRIDE),
        ]
        assert feedback[1].override_reason == "too risky"
        assert self.repository.fetch_feedback("bob") == []

    def test_approve_rule_writes_rule_and_feedback(self):
        rule = default_catalog().get_rule("downgrade_reporting")
        active = self.repository.approve_rule("alice", rule, "d1", risk_score=0.2)

        assert [r.id for r in self.repository.fetch_rules("alice")] == [active.id]
        feedback = self.repository.fetch_feedback("alice")
        assert [(f.decision_id, f.feedback_type) for f in feedback] == [("d1", FeedbackType.SUCCESS)]

    def test_approve_rule_rolls_back_on_feedback_failure(self):
        """A missing feedback table fails the approval and leaves no rule behind."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("DROP TABLE decision_feedback")
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(sqlite3.OperationalError, match="no such table"):
            self.repository.approve_rule("alice", default_catalog().get_rule("cap_retries_1"), "d1")

        assert self.repository.fetch_rules("alice") == []
