"""Command line interface for inspecting and steering devflow runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from devflow import get_repository, get_transport
from devflow.config import load_config
from devflow.contracts import ParsedAnswer, QuestionState, ResponseType
from devflow.runtime import PipelineRuntime
from devflow.signals import HumanSignalBroker, parse_reply

app = typer.Typer(help="CLI for devflow pipelines")

# Command groups
runs_app = typer.Typer(help="Commands for managing pipeline runs")
questions_app = typer.Typer(help="Commands for pending human questions")
reply_app = typer.Typer(help="Commands for reply comments")

app.add_typer(runs_app, name="runs")
app.add_typer(questions_app, name="questions")
app.add_typer(reply_app, name="reply")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """devflow CLI entry point."""
    level = log_level or load_config().log_level
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _broker() -> HumanSignalBroker:
    config = load_config()
    return HumanSignalBroker(
        get_repository(),
        get_transport(),
        timeout_hours=config.questions.timeout_hours,
    )


@runs_app.command("list")
def runs_list(item: Optional[str] = typer.Option(None, help="Only runs of this item")) -> None:
    """List runs with their state and current step."""
    repository = get_repository()
    runs = asyncio.run(repository.list_runs(item_id=item))
    if not runs:
        typer.echo("No runs found.")
        return
    for run in runs:
        step = run.current_step or "-"
        typer.echo(f"{run.run_id}  {run.phase.value}  {run.state.value}  {step}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """Show one run and its step history."""
    repository = get_repository()
    run = asyncio.run(repository.get_run(run_id))
    if run is None:
        typer.secho(f"Run not found: {run_id}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Run: {run.run_id}")
    typer.echo(f"  Item: {run.item_id}")
    typer.echo(f"  Phase: {run.phase.value}")
    typer.echo(f"  State: {run.state.value}")
    if run.error:
        typer.echo(f"  Error: {run.error}")
    for step in run.steps:
        status = step.status.value if step.status else "running"
        line = f"  - {step.step_name}: {status} (attempts: {step.attempts})"
        if step.error:
            line += f" {step.error}"
        typer.echo(line)


@runs_app.command("cancel")
def runs_cancel(run_id: str) -> None:
    """Cancel a running or blocked run and release its questions."""
    broker = _broker()
    runtime = PipelineRuntime({}, broker.repository, broker.transport, broker)
    if not asyncio.run(runtime.cancel(run_id)):
        typer.secho(f"Run {run_id} is not active", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Cancelled {run_id}")


@questions_app.command("list")
def questions_list(
    run: Optional[str] = typer.Option(None, help="Only questions of this run"),
    all_states: bool = typer.Option(False, "--all", help="Include resolved questions"),
) -> None:
    """List pending questions."""
    repository = get_repository()
    state = None if all_states else QuestionState.PENDING
    questions = asyncio.run(repository.list_questions(run_id=run, state=state))
    if not questions:
        typer.echo("No questions found.")
        return
    for question in questions:
        typer.echo(
            f"{question.comment_id}  {question.question_type.value}  "
            f"{question.state.value}  run={question.run_id} step={question.step_name} "
            f"timeout={question.timeout_at.isoformat()}"
        )


@questions_app.command("answer")
def questions_answer(
    comment_id: str,
    body: str,
    by: str = typer.Option("cli", "--by", help="Name recorded as the responder"),
    custom: bool = typer.Option(False, help="Send the body as free text"),
) -> None:
    """Answer the question posted as ``comment_id``.

    The body uses the reply grammar (``OPTION:X``, ``APPROVE``,
    ``REJECT:reason``) unless ``--custom`` is given.

    Example:
        devflow questions answer c-123 "OPTION:B" --by alice
    """
    if custom:
        answer = ParsedAnswer(response_type=ResponseType.CUSTOM_TEXT, custom_text=body)
    else:
        answer = parse_reply(body)
    if answer is None:
        typer.secho("Reply is not a recognised answer", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    outcome = asyncio.run(_broker().deliver_answer(comment_id, answer, by))
    if not outcome.delivered:
        typer.secho(f"Not delivered: {outcome.status.value}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Delivered {answer.response_type.value} to run {outcome.run_id}")


@reply_app.command("parse")
def reply_parse(body: str) -> None:
    """Show how a reply comment would be interpreted."""
    answer = parse_reply(body)
    if answer is None:
        typer.echo("Not an answer")
        return
    typer.echo(answer.model_dump_json(exclude_none=True))


@app.command("statuses")
def statuses() -> None:
    """Print the configured status table in order."""
    table = load_config().build_status_table()
    for entry in table:
        flags = [
            flag for flag, on in (("cascade", entry.cascade), ("rollup", entry.rollup)) if on
        ]
        phase = entry.phase.value if entry.phase else "-"
        role = entry.role or "-"
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        typer.echo(f"{entry.name}  {phase}  {role}{suffix}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
