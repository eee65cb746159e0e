"""Command line interface for inspecting and signalling stepwise runs."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import typer

from stepwise import get_repository, get_transport, load_config, publish_signal
from stepwise.config import configure_logging

app = typer.Typer(help="CLI for stepwise workflows")

run_app = typer.Typer(help="Commands for inspecting and signalling runs")

app.add_typer(run_app, name="run")


@app.callback()
def main() -> None:
    """Stepwise CLI entry point."""
    configure_logging(load_config())


@run_app.command("list")
def run_list(
    status: Optional[str] = typer.Option(None, help="Only show runs with this status"),
) -> None:
    """
    List persisted runs with their kind, phase and status.

    Example:
        stepwise run list
        # Output: purchase_1f2e...    purchase    completed    completed
        stepwise run list --status suspended
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(statuses=[status] if status else None))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.kind}\t{run.phase}\t{run.status}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run's status, state and step history.

    Example:
        stepwise run show draft_9c1a...
        # Output: Run draft_9c1a... (draft): suspended [in_progress]
        #         - record_pick:1:p1: completed (2024-01-01 10:00 -> 10:00)
    """
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.run_id} ({run.kind}): {run.status} [{run.phase}]")
    if run.continuations or run.reschedules:
        typer.echo(f"Continuations: {run.continuations}  Reschedules: {run.reschedules}")
    if run.result:
        typer.echo(f"Result: {json.dumps(run.result)}")
    for step in asyncio.run(repo.list_steps(run_id)):
        typer.echo(
            f"- {step.step_name}: {step.status}"
            + (f" attempt {step.attempt}" if step.attempt > 1 else "")
            + (
                f" ({step.started_at} -> {step.completed_at})"
                if step.started_at or step.completed_at
                else ""
            )
        )


@run_app.command("query")
def run_query(run_id: str) -> None:
    """Print the persisted state snapshot of a run as JSON."""
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(run.state, indent=2, default=str))


@run_app.command("signal")
def run_signal(
    run_id: str,
    signal_type: str,
    payload: Optional[str] = typer.Option(None, help="JSON object sent with the signal"),
    topic: str = typer.Option("signals", help="Topic the engine's relay listens on"),
) -> None:
    """
    Publish a signal for a run on the configured transport.

    Example:
        stepwise run signal draft_9c1a... makePick --payload '{"teamId": "t1", "playerId": "p7"}'
        stepwise run signal purchase_1f2e... cancelPurchase
    """
    try:
        data = json.loads(payload) if payload else {}
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    transport = get_transport()

    async def send():
        await transport.connect()
        try:
            return await publish_signal(transport, run_id, signal_type, data, topic=topic)
        finally:
            await transport.disconnect()

    message = asyncio.run(send())
    typer.echo(f"Sent {signal_type} to {run_id} (message {message.message_id})")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
