"""
CLI interface for AI Cost Controller.

Provides command-line access to compilation, approval and the hot path.
"""

import json
import logging
import sqlite3
import sys
import time
from collections import Counter
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_cost_controller.config.loader import EngineConfig, load_engine_config
from ai_cost_controller.core.approval import approve_decision, override_decision, revoke_rule
from ai_cost_controller.core.compiler import DecisionCompiler, DecisionObject, DecisionState
from ai_cost_controller.core.counterfactual import default_catalog
from ai_cost_controller.core.hot_path import HotPathDecision, enforce_overrides, evaluate_request
from ai_cost_controller.core.runtime import ActiveRuleSet, CompileScheduler, EventWindow
from ai_cost_controller.demo.traffic import iter_requests, to_event
from ai_cost_controller.sdk.narrator import DecisionNarrator
from ai_cost_controller.storage.db import DEFAULT_DB_PATH
from ai_cost_controller.storage.repository import (
    RuleRepository,
    fetch_recent_inference_events,
    initialize_schema,
    insert_inference_events,
)

app = typer.Typer()
rules_app = typer.Typer(help="Manage deployed rules.")
app.add_typer(rules_app, name="rules")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_USER = "local"

_STATE_STYLES = {
    DecisionState.CONDITIONAL: "yellow",
    DecisionState.HOLD: "red",
    DecisionState.INSUFFICIENT_EVIDENCE: "dim",
}


def _settings(ctx: typer.Context) -> dict:
    return ctx.obj or {"db": DEFAULT_DB_PATH, "config": EngineConfig.default()}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Engine YAML configuration"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI Cost Controller CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    try:
        engine_config = load_engine_config(config) if config else EngineConfig.default()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        raise typer.Exit(EXIT_CODE_FAIL)

    ctx.obj = {"db": db, "config": engine_config}
    if ctx.invoked_subcommand is None:
        console.print("AI Cost Controller - Use --help to see available commands")


@app.command()
def status():
    """Check initialization status of AI Cost Controller."""
    console.print("[green]✓[/] AI Cost Controller is initialized")


@app.command()
def init(ctx: typer.Context):
    """Initialize the AI Cost Controller database."""
    try:
        initialize_schema(_settings(ctx)["db"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def seed(
    ctx: typer.Context,
    count: int = typer.Option(1000, "--count", "-n", help="Number of requests to generate"),
    seed_value: Optional[int] = typer.Option(None, "--seed", help="Random seed"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User whose rules are enforced"),
):
    """Generate synthetic traffic, route it through the hot path and store it."""
    settings = _settings(ctx)
    config: EngineConfig = settings["config"]
    try:
        initialize_schema(settings["db"])
        active_rules = RuleRepository(settings["db"]).fetch_rules(user)

        events = []
        blocked = 0
        conditional = 0
        for request in iter_requests(count, seed_value):
            response = evaluate_request(request, active_rules)
            if response.decision == HotPathDecision.BLOCK:
                blocked += 1
                continue
            event = enforce_overrides(to_event(request, config.pricing), response, config.pricing)
            if event.rule_applied:
                conditional += 1
            events.append(event)

        insert_inference_events(events, settings["db"])
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Stored {len(events)} events "
        f"({conditional} rewritten, {blocked} blocked by {len(active_rules)} rules)"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command(name="compile")
def compile_decision(
    ctx: typer.Context,
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User approving or overriding"),
    window: Optional[int] = typer.Option(None, "--window", "-w", help="Number of recent events to analyze"),
    as_json: bool = typer.Option(False, "--json", help="Print the decision as JSON"),
    narrate: bool = typer.Option(False, "--narrate", help="Add an OpenAI narrative"),
    approve: bool = typer.Option(False, "--approve", help="Deploy the recommended rule"),
    override: Optional[str] = typer.Option(None, "--override", help="Reject the decision with a reason"),
):
    """
    Compile a decision from the most recent stored traffic.

    Note: compilation requires at least the configured minimum window of
    events. Run `ai-cost-controller seed` to generate demo traffic.
    """
    if approve and override is not None:
        console.print("[red]Error:[/] --approve and --override are mutually exclusive")
        sys.exit(EXIT_CODE_FAIL)

    settings = _settings(ctx)
    config: EngineConfig = settings["config"]
    try:
        events = fetch_recent_inference_events(
            limit=window or config.window.analysis_events, db_path=settings["db"]
        )
        compiler = DecisionCompiler(default_catalog(), config.compiler, config.pricing)
        decision = compiler.compile(events)

        if decision is None:
            console.print(
                f"\n[bold yellow]No decision compiled[/] from {len(events)} events "
                f"(minimum {config.compiler.min_window_size}, or no rule targets the driver)\n"
            )
            sys.exit(EXIT_CODE_PASS)

        narrative = DecisionNarrator().narrate(decision) if narrate else None

        if as_json:
            payload = decision.to_dict()
            if narrative is not None:
                payload["narrative"] = narrative
            console.print_json(json.dumps(payload))
        else:
            _display_decision(decision, narrative)

        repository = RuleRepository(settings["db"])
        if approve:
            active = approve_decision(decision, user, repository)
            console.print(f"[green]✓[/] Deployed rule {active.id} ({active.rule_id})")
        elif override is not None:
            override_decision(decision, user, repository, override)
            console.print(f"[yellow]✓[/] Override recorded for decision {decision.id}")

        sys.exit(EXIT_CODE_PASS)

    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No historical inference data found[/]")
            console.print("\nTo get started with AI Cost Controller:")
            console.print("1. Run `ai-cost-controller init` to initialize the database")
            console.print("2. Run `ai-cost-controller seed` to generate traffic")
            console.print("3. Run this command again to compile a decision\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def evaluate(
    ctx: typer.Context,
    request_json: str = typer.Argument(..., help='Request fields as JSON, e.g. \'{"retries": 3}\''),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User whose rules are evaluated"),
):
    """Evaluate a single request against the deployed rules."""
    try:
        request = json.loads(request_json)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid request JSON:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if not isinstance(request, dict):
        console.print("[red]Invalid request JSON:[/] expected an object")
        sys.exit(EXIT_CODE_FAIL)

    try:
        active_rules = RuleRepository(_settings(ctx)["db"]).fetch_rules(user)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    response = evaluate_request(request, active_rules)
    console.print(f"[bold]Decision:[/bold] {response.decision.value}")
    if response.rule_id:
        console.print(f"Rule: {response.rule_id}")
    if response.overrides:
        console.print(f"Overrides: {json.dumps(response.overrides)}")
    console.print(f"Latency overhead: {response.latency_overhead_ms:.3f} ms")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def watch(
    ctx: typer.Context,
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User whose rules are enforced"),
    seconds: float = typer.Option(5.0, "--seconds", "-s", help="How long to generate traffic"),
    rate: int = typer.Option(200, "--rate", help="Requests per second"),
    seed_value: Optional[int] = typer.Option(None, "--seed", help="Random seed"),
):
    """
    Run the hot path and the background compiler over live synthetic traffic.

    Requests pass through the user's deployed rules into a rolling window
    while the scheduler recompiles it at the configured interval.
    """
    if seconds <= 0 or rate <= 0:
        console.print("[red]Error:[/] --seconds and --rate must be positive")
        sys.exit(EXIT_CODE_FAIL)

    settings = _settings(ctx)
    config: EngineConfig = settings["config"]
    try:
        rule_set = ActiveRuleSet(RuleRepository(settings["db"]).fetch_rules(user))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    window = EventWindow(config.window.max_events)
    scheduler = CompileScheduler(
        DecisionCompiler(default_catalog(), config.compiler, config.pricing),
        window,
        config.window.analysis_events,
    )
    verdicts: Counter = Counter()

    scheduler.start(config.scheduler.interval_seconds)
    try:
        for request in iter_requests(int(seconds * rate), seed_value):
            response = evaluate_request(request, rule_set.snapshot())
            verdicts[response.decision] += 1
            if response.decision != HotPathDecision.BLOCK:
                try:
                    event = enforce_overrides(to_event(request, config.pricing), response, config.pricing)
                except ValueError as e:
                    console.print(f"[red]Error:[/] {str(e)}")
                    sys.exit(EXIT_CODE_FAIL)
                window.append(event)
            time.sleep(1.0 / rate)
    finally:
        scheduler.stop(timeout=5.0)

    # Final pass so the report reflects the whole window
    scheduler.trigger()

    console.print(
        f"Processed {sum(verdicts.values())} requests: "
        + ", ".join(f"{verdicts[d]} {d.value}" for d in HotPathDecision)
    )
    if scheduler.dropped_triggers:
        console.print(f"[dim]{scheduler.dropped_triggers} compile triggers dropped while busy[/]")

    if scheduler.latest_decision is None:
        console.print("\n[bold yellow]No actionable decision compiled[/]\n")
    else:
        _display_decision(scheduler.latest_decision)
    sys.exit(EXIT_CODE_PASS)


@rules_app.command("list")
def list_rules(
    ctx: typer.Context,
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="Rule owner"),
):
    """List rules deployed for a user."""
    try:
        active_rules = RuleRepository(_settings(ctx)["db"]).fetch_rules(user)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not active_rules:
        console.print("\n[dim]No rules deployed.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Deployed Rules")
    table.add_column("ID")
    table.add_column("Rule")
    table.add_column("Condition")
    table.add_column("Action")
    table.add_column("State")
    table.add_column("Risk", justify="right")
    for rule in active_rules:
        table.add_row(
            rule.id,
            rule.description,
            f"{rule.condition.field.value} {rule.condition.op} {rule.condition.value}",
            f"{rule.action.op} {rule.action.field.value} {rule.action.value}",
            rule.deploy_state.value,
            f"{rule.risk_score:.2f}",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@rules_app.command("revoke")
def revoke(
    ctx: typer.Context,
    rule_id: str = typer.Argument(..., help="Deployed rule id"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="Rule owner"),
):
    """Revoke a deployed rule."""
    try:
        deleted = revoke_rule(user, rule_id, RuleRepository(_settings(ctx)["db"]))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not deleted:
        console.print(f"[red]Error:[/] No rule {rule_id} for user {user}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Revoked rule {rule_id}")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _display_decision(decision: DecisionObject, narrative: Optional[str] = None):
    """Display a compiled decision in a clean, financial format."""
    style = _STATE_STYLES[decision.decision_state]
    console.print("\n[bold]Cost Decision[/bold]")
    console.print("-" * 40)
    console.print(f"[bold]Issue:[/bold] {decision.issue}")
    console.print(f"[bold]Root cause:[/bold] {decision.root_cause}")
    console.print(f"[bold]State:[/bold] [{style}]{decision.decision_state.value}[/]")
    console.print(
        f"[bold]Confidence:[/bold] {decision.confidence.final_score:.3f} "
        f"(overfit risk {decision.confidence.overfit_risk.value})"
    )
    for reason in decision.rationale:
        console.print(f"  • {reason}")

    console.print(f"\n[bold]Recommended:[/bold] {decision.recommended_action.action}")
    if decision.recommended_action.only_if:
        console.print(f"Only if: {', '.join(decision.recommended_action.only_if)}")

    table = Table(title="Alternatives Considered")
    table.add_column("Action")
    table.add_column("Risk")
    table.add_column("Score", justify="right")
    for alternative in decision.alternative_actions:
        table.add_row(alternative.action, alternative.risk.value, f"{alternative.score:.2f}")
    console.print(table)

    impact = decision.expected_impact
    console.print(f"Mean savings per 1k requests: {_format_currency(impact.mean_savings_usd)}")
    console.print(f"P95 savings per 1k requests: {_format_currency(impact.p95_savings_usd)}")
    console.print(f"Variance reduction: {impact.variance_reduction_pct:.1f}%")
    console.print(f"Distribution: {impact.distribution_notes}")
    console.print(
        f"Cost of inaction: {_format_currency(decision.inaction_cost.expected_monthly_loss_usd)}/month "
        f"(-{decision.inaction_cost.runway_impact_days:.1f} runway days)"
    )
    console.print(
        f"Blast radius: {decision.blast_radius.affected_tenants_pct:.0%} of tenants, "
        f"{decision.blast_radius.affected_revenue_pct:.0%} of revenue"
    )

    if narrative is not None:
        console.print(f"\n[bold]Narrative[/bold]\n{narrative}")
    print()


if __name__ == "__main__":
    app()
