"""CLI entry point for the proposal engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TYPE_CHECKING, TypeVar

import click
from rich.console import Console
from rich.table import Table

from proposal_engine import __version__
from proposal_engine.errors import EngineError
from proposal_engine.logging import configure_logging
from proposal_engine.models import TaskStatus, utcnow

if TYPE_CHECKING:
    from proposal_engine.consensus import Decision
    from proposal_engine.engine import ProposalEngine

console = Console()

T = TypeVar("T")


def _run(work: Callable[[ProposalEngine], Awaitable[T]]) -> T:
    """Open the engine, run ``work`` and turn engine errors into exit code 1."""
    from proposal_engine.engine import ProposalEngine

    async def runner() -> T:
        engine = await ProposalEngine.open()
        try:
            return await work(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(runner())
    except EngineError as exc:
        console.print(f"[red]{exc.code}:[/red] {exc.message}")
        raise SystemExit(1) from exc


@click.group()
@click.version_option(version=__version__, prog_name="propeng")
@click.option("-v", "--verbose", is_flag=True, help="Log engine activity")
def main(verbose: bool) -> None:
    """Proposal decision and task allocation engine."""
    configure_logging(logging.DEBUG if verbose else logging.WARNING)


@main.command()
def init() -> None:
    """Initialize the engine: create the data directory and database."""

    async def work(engine: ProposalEngine) -> None:
        await engine.repository.ensure_schema()

    _run(work)

    from proposal_engine.config import default_data_dir

    data_dir = default_data_dir()
    console.print(f"[green]Engine initialized at {data_dir}[/green]")
    console.print(f"  Database: {data_dir / 'data' / 'engine.db'}")
    console.print(f"  Config:   {data_dir / 'config.toml'}")


@main.group()
def agent() -> None:
    """Manage the agent roster."""


@agent.command("add")
@click.argument("name")
@click.option("--specialty", required=True, help="Specialty tag, e.g. Finance")
@click.option("--capability", "capabilities", multiple=True, help="Capability tag (repeatable)")
def agent_add(name: str, specialty: str, capabilities: tuple[str, ...]) -> None:
    """Register an agent."""
    registered = _run(lambda engine: engine.register_agent(name, specialty, capabilities))
    console.print(f"[green]Registered[/green] {registered.name}: {registered.id}")


@agent.command("caps")
@click.argument("agent_id")
@click.option("--capability", "capabilities", multiple=True, help="Capability tag (repeatable)")
def agent_caps(agent_id: str, capabilities: tuple[str, ...]) -> None:
    """Replace an agent's capabilities."""
    updated = _run(lambda engine: engine.update_agent_capabilities(agent_id, capabilities))
    caps = ", ".join(sorted(updated.capabilities)) or "none"
    console.print(f"[green]{updated.name}[/green] capabilities: {caps}")


@agent.command("list")
def agent_list() -> None:
    """Show all agents with their reputation."""
    agents = _run(lambda engine: engine.list_agents())

    if not agents:
        console.print("[dim]No agents registered.[/dim]")
        return

    table = Table(title="Agents")
    table.add_column("Agent ID", style="cyan")
    table.add_column("Name")
    table.add_column("Specialty", style="green")
    table.add_column("Capabilities")
    table.add_column("Reputation", style="bold")

    for a in agents:
        table.add_row(
            a.id,
            a.name,
            a.specialty,
            ", ".join(sorted(a.capabilities)),
            f"{a.reputation:.3f}",
        )

    console.print(table)


@main.command()
@click.argument("content")
@click.option("--specialty", required=True, help="Originating specialty")
def propose(content: str, specialty: str) -> None:
    """Submit a proposal for evaluation."""
    proposal = _run(lambda engine: engine.submit_proposal(content, specialty))
    console.print(f"[green]Proposal submitted:[/green] {proposal.id}")


@main.command()
@click.argument("proposal_id")
@click.argument("evaluator_id")
@click.option("--score", type=float, default=None, help="Score; omit to ask the scoring oracle")
@click.option("--explanation", default="", help="Rationale for the score")
def evaluate(proposal_id: str, evaluator_id: str, score: float | None, explanation: str) -> None:
    """Record an evaluation of a proposal."""
    evaluation = _run(
        lambda engine: engine.submit_evaluation(proposal_id, evaluator_id, score, explanation)
    )
    console.print(f"[green]Evaluation recorded:[/green] {evaluation.score:.2f}")
    if evaluation.explanation:
        console.print(f"[bold]Explanation:[/bold] {evaluation.explanation}")


@main.command()
@click.argument("proposal_id")
def consensus(proposal_id: str) -> None:
    """Preview the weighted consensus without deciding."""
    from proposal_engine.consensus import InsufficientEvidence

    result = _run(lambda engine: engine.aggregate(proposal_id))

    if isinstance(result, InsufficientEvidence):
        console.print("[yellow]Waiting for evaluations.[/yellow]")
        return

    console.print(f"[bold]Consensus:[/bold] {result.consensus_score:.2f}")
    console.print(f"[bold]Evaluations:[/bold] {result.sample_count}")
    console.print(f"[bold]Variance:[/bold] {result.variance:.3f} ({result.variance_band.value})")
    console.print(f"[bold]Confidence:[/bold] {result.confidence.value}")


@main.command()
@click.argument("proposal_id")
def decide(proposal_id: str) -> None:
    """Finalize a proposal from its evaluations."""
    decision = _run(lambda engine: engine.decide_consensus(proposal_id))
    _print_decision(decision)


@main.command()
@click.argument("description")
@click.option("--capability", "capabilities", multiple=True, help="Required capability (repeatable)")
@click.option("--priority", default=0, help="Task priority")
def allocate(description: str, capabilities: tuple[str, ...], priority: int) -> None:
    """Create a task and assign it to the best-suited agent."""
    allocation = _run(lambda engine: engine.allocate_task(description, capabilities, priority))

    console.print(f"[green]Task {allocation.task.id} assigned to {allocation.best.agent.name}[/green]")
    console.print(f"[bold]Explanation:[/bold] {allocation.explanation}")

    table = Table(title="Candidate Ranking")
    table.add_column("Agent", style="cyan")
    table.add_column("Capability")
    table.add_column("Workload")
    table.add_column("Performance")
    table.add_column("Score", style="bold")

    for c in allocation.ranking:
        table.add_row(
            c.agent.name,
            f"{c.capability_match:.2f}",
            f"{c.workload_inverse:.2f}",
            f"{c.performance:.2f}",
            f"{c.final_score:.3f}",
        )

    console.print(table)


@main.command("task-status")
@click.argument("task_id")
@click.argument(
    "status",
    type=click.Choice([TaskStatus.IN_PROGRESS.value, TaskStatus.COMPLETED.value]),
)
def task_status(task_id: str, status: str) -> None:
    """Move an allocated task forward."""
    task = _run(lambda engine: engine.update_task_status(task_id, TaskStatus(status)))
    console.print(f"[green]Task {task.id} is now {task.status.value}[/green]")


@main.command()
@click.option("--days", default=30, help="Trailing window length in days")
@click.option("--watch", is_flag=True, help="Recompute periodically until interrupted")
@click.option("--interval", default=None, type=float, help="Seconds between runs with --watch")
def metrics(days: int, watch: bool, interval: float | None) -> None:
    """Compute performance metrics and update reputations."""
    if watch:
        _watch_metrics(days, interval)
        return

    end = utcnow()
    result = _run(
        lambda engine: engine.compute_window_metrics(end - timedelta(days=days), end)
    )

    p, t = result.proposals, result.tasks
    console.print(
        f"[bold]Proposals:[/bold] {p.total} total | {p.accepted} accepted | "
        f"{p.rejected} rejected | acceptance {p.acceptance_rate:.0%}"
    )
    console.print(
        f"[bold]Tasks:[/bold] {t.total} total | {t.completed} completed | "
        f"completion {t.completion_rate:.0%} | avg {t.avg_completion_seconds / 3600:.1f}h"
    )
    console.print(
        f"[bold]Resource utilization:[/bold] {result.resource_utilization.value} "
        f"({result.utilization_rate:.2f} in-progress tasks per agent)"
    )

    if not result.agents:
        return

    table = Table(title="Agent Performance")
    table.add_column("Agent", style="cyan")
    table.add_column("Completed Tasks")
    table.add_column("Accepted Proposals")
    table.add_column("Rating")
    table.add_column("Reputation", style="bold")

    for a in result.agents:
        table.add_row(
            a.name,
            str(a.completed_tasks),
            str(a.accepted_proposals),
            f"{a.average_rating:.1f}",
            f"{a.reputation:.3f}",
        )

    console.print(table)


def _watch_metrics(days: int, interval: float | None) -> None:
    async def work(engine: ProposalEngine) -> int:
        stop = asyncio.Event()
        try:
            return await engine.performance.run_periodically(
                stop, interval_seconds=interval, window_seconds=days * 86400.0
            )
        except asyncio.CancelledError:
            stop.set()
            raise

    console.print("[dim]Computing metrics periodically; Ctrl+C to stop.[/dim]")
    try:
        _run(work)
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


@main.command()
@click.option("--limit", default=20, help="Number of snapshots to show")
def history(limit: int) -> None:
    """Show recent metrics snapshots."""
    snapshots = _run(lambda engine: engine.metrics_history(limit))

    if not snapshots:
        console.print("[dim]No metrics yet. Run `propeng metrics` first.[/dim]")
        return

    table = Table(title="Metrics History")
    table.add_column("Snapshot", style="cyan")
    table.add_column("Window")
    table.add_column("Proposals")
    table.add_column("Acceptance", style="green")
    table.add_column("Tasks")
    table.add_column("Completion", style="green")

    for snap in snapshots:
        table.add_row(
            str(snap["id"]),
            f"{snap['window']['start'][:10]} → {snap['window']['end'][:10]}",
            str(snap["proposals"]["total"]),
            f"{snap['proposals']['acceptance_rate']:.0%}",
            str(snap["tasks"]["total"]),
            f"{snap['tasks']['completion_rate']:.0%}",
        )

    console.print(table)


def _print_decision(decision: Decision) -> None:
    """Print decision summary."""
    color = {"accepted": "green", "rejected": "red", "pending": "yellow"}.get(
        decision.outcome.value, "dim"
    )

    console.print(f"[{color}]Outcome: {decision.outcome.value}[/{color}]")
    if decision.already_decided:
        console.print("[dim]Proposal was already decided; nothing changed.[/dim]")
    if decision.consensus_score is not None:
        console.print(f"Consensus: {decision.consensus_score:.2f}")
    console.print(f"Evaluations: {decision.sample_count}")
    if decision.confidence is not None:
        console.print(f"Confidence: {decision.confidence.value}")
