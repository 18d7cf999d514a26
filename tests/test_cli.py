"""
Tests for the CLI interface.
"""

import os
import re
import tempfile
from datetime import datetime
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from ai_cost_controller.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from ai_cost_controller.storage.models import InferenceEvent
from ai_cost_controller.storage.repository import (
    RuleRepository,
    fetch_recent_inference_events,
    initialize_schema,
    insert_inference_events,
)

runner = CliRunner()


def _event(cost_usd: float, prompt_class: str) -> InferenceEvent:
    return InferenceEvent(
        timestamp=datetime(2024, 1, 1),
        tenant_id="acme_corp",
        environment="prod",
        model="gpt-4",
        prompt_class=prompt_class,
        tokens_in=300,
        tokens_out=700,
        latency_ms=400.0,
        retries=0,
        success=True,
        cost_usd=cost_usd,
    )


@pytest.fixture
def db_path():
    """Path to a fresh database file in a temporary directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "test.db")


@pytest.fixture
def seeded_db(db_path):
    """Database holding a reporting-heavy window."""
    initialize_schema(db_path)
    events = [_event(0.03, "reporting") for _ in range(50)] + [_event(0.02, "chat") for _ in range(50)]
    insert_inference_events(events, db_path)
    return db_path


class TestBasics:
    """Test global behavior and setup commands."""

    def test_no_command(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_status(self):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "initialized" in result.output

    def test_init(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "init"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert fetch_recent_inference_events(db_path=db_path) == []

    def test_missing_config(self, db_path):
        result = runner.invoke(app, ["--config", os.path.join(os.path.dirname(db_path), "nope.yaml"), "status"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading config" in result.output

    def test_seed(self, db_path):
        """Seeding stores generated traffic."""
        result = runner.invoke(app, ["--db", db_path, "seed", "--count", "120", "--seed", "3"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Stored 120 events" in result.output
        assert len(fetch_recent_inference_events(limit=500, db_path=db_path)) == 120


class TestCompileCommand:
    """Test decision compilation from the CLI."""

    def test_uninitialized_database(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "compile"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No historical inference data found" in result.output

    def test_window_below_floor(self, seeded_db):
        result = runner.invoke(app, ["--db", seeded_db, "compile", "--window", "30"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No decision compiled" in result.output

    def test_display(self, seeded_db):
        result = runner.invoke(app, ["--db", seeded_db, "compile"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Cost Decision" in result.output
        assert "HOLD" in result.output
        assert "prompt_class" in result.output

    def test_json(self, seeded_db):
        result = runner.invoke(app, ["--db", seeded_db, "compile", "--json"])

        assert result.exit_code == EXIT_CODE_PASS
        assert '"decision_state": "HOLD"' in result.output

    @patch('ai_cost_controller.cli.main.DecisionNarrator')
    def test_narrate(self, mock_narrator_class, seeded_db):
        mock_narrator_class.return_value.narrate.return_value = "Reporting dominates spend."

        result = runner.invoke(app, ["--db", seeded_db, "compile", "--narrate"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Reporting dominates spend." in result.output

    def test_approve(self, seeded_db):
        """Approval deploys the recommended rule for the user."""
        result = runner.invoke(app, ["--db", seeded_db, "compile", "--approve", "--user", "alice"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Deployed rule" in result.output
        rules = RuleRepository(seeded_db).fetch_rules("alice")
        assert [r.rule_id for r in rules] == ["downgrade_reporting"]

    def test_override(self, seeded_db):
        result = runner.invoke(app, ["--db", seeded_db, "compile", "--override", "enterprise traffic"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Override recorded" in result.output
        feedback = RuleRepository(seeded_db).fetch_feedback("local")
        assert feedback[0].override_reason == "enterprise traffic"

    def test_approve_and_override_conflict(self, seeded_db):
        result = runner.invoke(app, ["--db", seeded_db, "compile", "--approve", "--override", "no"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "mutually exclusive" in result.output


class TestRuleCommands:
    """Test the hot path and rule management commands."""

    def _approve(self, db_path: str) -> str:
        runner.invoke(app, ["--db", db_path, "compile", "--approve"])
        return RuleRepository(db_path).fetch_rules("local")[0].id

    def test_evaluate_conditional(self, seeded_db):
        rule_id = self._approve(seeded_db)

        result = runner.invoke(app, ["--db", seeded_db, "evaluate", '{"prompt_class": "reporting"}'])

        assert result.exit_code == EXIT_CODE_PASS
        assert "CONDITIONAL" in result.output
        assert rule_id in result.output
        assert "claude-3-haiku" in result.output

    def test_evaluate_allow(self, seeded_db):
        result = runner.invoke(app, ["--db", seeded_db, "evaluate", '{"prompt_class": "chat"}'])
        assert result.exit_code == EXIT_CODE_PASS
        assert "ALLOW" in result.output

    @pytest.mark.parametrize("payload", ["{not json", "[1, 2]"])
    def test_evaluate_invalid_json(self, seeded_db, payload):
        result = runner.invoke(app, ["--db", seeded_db, "evaluate", payload])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid request JSON" in result.output

    def test_list_empty(self, seeded_db):
        result = runner.invoke(app, ["--db", seeded_db, "rules", "list"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No rules deployed" in result.output

    def test_list(self, seeded_db):
        self._approve(seeded_db)
        result = runner.invoke(app, ["--db", seeded_db, "rules", "list"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Deployed Rules" in result.output

    def test_revoke(self, seeded_db):
        rule_id = self._approve(seeded_db)

        result = runner.invoke(app, ["--db", seeded_db, "rules", "revoke", rule_id])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Revoked rule" in result.output
        assert RuleRepository(seeded_db).fetch_rules("local") == []

    def test_revoke_unknown(self, seeded_db):
        result = runner.invoke(app, ["--db", seeded_db, "rules", "revoke", "missing"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "No rule missing" in result.output

    def test_seed_enforces_rules(self, seeded_db):
        """Seeded traffic passes through the deployed rules."""
        rule_id = self._approve(seeded_db)

        result = runner.invoke(app, ["--db", seeded_db, "seed", "--count", "400", "--seed", "1"])

        assert result.exit_code == EXIT_CODE_PASS
        seeded = fetch_recent_inference_events(limit=400, db_path=seeded_db)
        rewritten = [e for e in seeded if e.rule_applied == rule_id]
        assert rewritten
        assert all(e.model == "claude-3-haiku" and e.prompt_class == "reporting" for e in rewritten)


class TestWatchCommand:
    """Test the live runtime loop."""

    def test_watch_reports_verdicts(self, seeded_db):
        result = runner.invoke(
            app, ["--db", seeded_db, "watch", "--seconds", "0.25", "--rate", "400", "--seed", "2"]
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert "Processed 100 requests" in result.output

    def test_watch_enforces_rules(self, seeded_db):
        """With the reporting rule deployed some traffic is rewritten."""
        runner.invoke(app, ["--db", seeded_db, "compile", "--approve"])

        result = runner.invoke(
            app, ["--db", seeded_db, "watch", "--seconds", "0.25", "--rate", "400", "--seed", "2"]
        )

        assert result.exit_code == EXIT_CODE_PASS
        match = re.search(r"(\d+) CONDITIONAL", result.output)
        assert match is not None
        assert int(match.group(1)) > 0

    def test_watch_rejects_bad_rate(self, seeded_db):
        result = runner.invoke(app, ["--db", seeded_db, "watch", "--rate", "0"])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_watch_fails_on_unpriced_model(self, seeded_db):
        """Traffic for a model missing from the pricing table exits cleanly."""
        config_path = os.path.join(os.path.dirname(seeded_db), "engine.yaml")
        with open(config_path, "w") as f:
            f.write("pricing:\n  in-house:\n    cost_per_1k: 0.002\n    tier: low\n")

        result = runner.invoke(
            app,
            ["--db", seeded_db, "--config", config_path, "watch", "--seconds", "0.1", "--rate", "100", "--seed", "2"],
        )

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unsupported model" in result.output
