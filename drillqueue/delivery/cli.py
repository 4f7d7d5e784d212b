"""
drillqueue: terminal study CLI.

A Rich terminal interface for interleaved spaced repetition drills over a
JSON question bank, scheduled with FSRS.

Commands:
- drillqueue study    - Start a study session for a topic, subject or space
- drillqueue preview  - Show the queue a session would start with
- drillqueue stats    - Show learning statistics
"""
from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from config import Settings, get_settings

from .errors import DrillQueueError, PersistenceError, ValidationError
from .memory_model import MemoryModel, Rating, SchedulerParameters, format_interval, utcnow
from .memory_store import SqlMemoryStore
from .question_bank import QuestionBank, StudyScope
from .queue_manager import CardType, SessionItem
from .session_controller import SessionConfig, StudySessionController

# =============================================================================
# CLI Setup
# =============================================================================

app = typer.Typer(
    name="drillqueue",
    help="drillqueue: interleaved spaced-repetition drills",
    no_args_is_help=True,
)
console = Console()


# =============================================================================
# Styling
# =============================================================================

STYLES = {
    "info": "bold cyan",
    "warning": "bold yellow",
    "dim": "dim",
    "card_type": {
        CardType.NEW: "green",
        CardType.LEARNING: "red",
        CardType.REVIEW: "blue",
    },
    "rating": {
        Rating.AGAIN: "red",
        Rating.HARD: "yellow",
        Rating.GOOD: "green",
        Rating.EASY: "blue",
    },
}


def style_card_type(card_type: CardType) -> str:
    """Get styled card type string."""
    color = STYLES["card_type"].get(card_type, "white")
    return f"[{color}]{card_type.value}[/{color}]"


# =============================================================================
# Display Helpers
# =============================================================================


def display_card_front(item: SessionItem, counts_line: str) -> None:
    """Display the prompt side of a card."""
    question = item.question
    header = f"{counts_line}  |  {style_card_type(item.card_type)}  |  {question.kind}"
    if item.is_retry:
        header += "  |  [dim]again[/dim]"

    content = question.prompt or f"[dim]{question.id}[/dim]"
    if question.options:
        content += "\n\n"
        for i, option in enumerate(question.options):
            content += f"  {chr(65 + i)}. {option}\n"

    console.print(
        Panel(
            content.rstrip(),
            title=header,
            title_align="left",
            border_style="cyan",
            padding=(1, 2),
        )
    )


def display_card_back(item: SessionItem) -> None:
    """Display the answer side of a card."""
    question = item.question
    answers = ", ".join(question.answers) if question.answers else "[dim]no answer recorded[/dim]"
    content = f"[bold]Answer:[/bold] {answers}"
    if question.explanation:
        content += f"\n\n{question.explanation}"

    console.print(Panel(content, border_style="green", padding=(1, 2)))


def display_rating_choices(model: MemoryModel, item: SessionItem) -> None:
    """Show each rating with the interval it would schedule."""
    now = utcnow()
    outcomes = model.preview(item.memory_state, now)

    parts = []
    for rating, state in outcomes.items():
        color = STYLES["rating"][rating]
        interval = format_interval(state.next_review_at - now)
        parts.append(f"[{color}]{int(rating)} {rating.label}[/{color}] [dim]({interval})[/dim]")
    console.print("  ".join(parts))


def format_counts(controller: StudySessionController) -> str:
    counts = controller.counts
    return (
        f"[green]{counts.new}[/green] + "
        f"[red]{counts.learning}[/red] + "
        f"[blue]{counts.review}[/blue]"
    )


# =============================================================================
# Wiring
# =============================================================================


def _build_scope(topic: Optional[str], subject: Optional[str], space: Optional[str]) -> StudyScope:
    try:
        return StudyScope(topic_id=topic, subject_id=subject, space_id=space)
    except ValidationError:
        console.print("[red]Pass exactly one of --topic, --subject or --space.[/red]")
        raise typer.Exit(2) from None


def _load_bank(path: Optional[Path], settings: Settings) -> QuestionBank:
    bank = QuestionBank(path or Path(settings.questions_path))
    if bank.load() == 0:
        console.print("\n[red]No questions found![/red]")
        console.print(f"Looking in: {bank.path.absolute()}")
        raise typer.Exit(1)
    return bank


def _open_store(settings: Settings) -> SqlMemoryStore:
    try:
        return SqlMemoryStore(settings.database_url)
    except PersistenceError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from None


def _build_controller(
    settings: Settings,
    user: Optional[str],
    bank: QuestionBank,
    store: SqlMemoryStore,
) -> StudySessionController:
    try:
        model = MemoryModel(SchedulerParameters.from_settings(settings))
    except ValidationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(2) from None

    return StudySessionController(
        user_id=user or settings.default_user_id,
        resolver=bank,
        store=store,
        model=model,
        config=SessionConfig.from_settings(settings),
    )


# =============================================================================
# Commands
# =============================================================================


@app.command()
def study(
    topic: Optional[str] = typer.Option(None, "--topic", "-t", help="Topic id to study"),
    subject: Optional[str] = typer.Option(None, "--subject", "-s", help="Subject id to study"),
    space: Optional[str] = typer.Option(None, "--space", help="Space id to study"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum cards this session"),
    questions: Optional[Path] = typer.Option(
        None,
        "--questions", "-q",
        help="JSON file or directory of question files",
    ),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Learner id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Start without confirmation"),
) -> None:
    """
    Start an interactive study session.

    Learning cards come first; review and new cards are interleaved
    (2 reviews per new card by default). Cards that come due again within
    the lookahead window are shown again before the session ends.
    """
    settings = get_settings()
    scope = _build_scope(topic, subject, space)
    bank = _load_bank(questions, settings)
    store = _open_store(settings)

    try:
        controller = _build_controller(settings, user, bank, store)
        start = controller.start_session(scope, limit=limit)

        if start.finished:
            console.print("\n[green]Nothing due for review![/green]")
            console.print("All caught up. Check back later.")
            raise typer.Exit(0)

        console.print(f"\n[bold]Session: {scope}[/bold]")
        console.print(f"  Learning: {start.total_learning}")
        console.print(f"  Due reviews: {start.total_review}")
        console.print(f"  New cards: {start.total_new}")
        console.print()

        if not yes and not Confirm.ask("Start session?", default=True):
            raise typer.Exit(0)

        _run_session(controller, start.first_card)
    except DrillQueueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from None
    finally:
        store.close()


def _run_session(controller: StudySessionController, card: SessionItem | None) -> None:
    try:
        while card is not None:
            console.print()
            display_card_front(card, format_counts(controller))

            started = time.monotonic()
            Prompt.ask("[dim]Press Enter to reveal[/dim]", default="", show_default=False)
            duration_ms = int((time.monotonic() - started) * 1000)

            display_card_back(card)
            display_rating_choices(controller.model, card)
            choice = Prompt.ask("Rating", choices=["1", "2", "3", "4"], default="3")

            while True:
                try:
                    outcome = controller.submit_rating(card.id, choice, review_duration_ms=duration_ms)
                    break
                except PersistenceError:
                    console.print("[yellow]Could not save this rating (temporary failure).[/yellow]")
                    if not Confirm.ask("Retry?", default=True):
                        console.print("\n[yellow]Ending session early.[/yellow]")
                        _display_session_summary(controller)
                        return

            card = outcome.next_card
    except KeyboardInterrupt:
        console.print("\n\n[yellow]Session interrupted.[/yellow]")

    _display_session_summary(controller)


def _display_session_summary(controller: StudySessionController) -> None:
    """Display end-of-session summary."""
    totals = controller.totals
    status = "Session Complete!" if controller.is_finished else "Session Paused"
    console.print("\n")
    console.print(
        Panel(
            f"[bold]{status}[/bold]\n\n"
            f"Cards answered: {controller.answered_count}\n"
            f"Started with: {totals.new} new, {totals.review} review, {totals.learning} learning\n"
            f"Progress: {controller.progress * 100:.0f}%",
            title="Summary",
            border_style="green",
        )
    )


@app.command()
def preview(
    topic: Optional[str] = typer.Option(None, "--topic", "-t", help="Topic id"),
    subject: Optional[str] = typer.Option(None, "--subject", "-s", help="Subject id"),
    space: Optional[str] = typer.Option(None, "--space", help="Space id"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum cards"),
    questions: Optional[Path] = typer.Option(None, "--questions", "-q", help="Question file or directory"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Learner id"),
) -> None:
    """Preview the cards a session would start with."""
    settings = get_settings()
    scope = _build_scope(topic, subject, space)
    bank = _load_bank(questions, settings)
    store = _open_store(settings)

    try:
        controller = _build_controller(settings, user, bank, store)
        plan = controller.plan_session(scope, limit=limit)
    except DrillQueueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from None
    finally:
        store.close()

    console.print(f"\n[bold]Upcoming Cards: {scope}[/bold]\n")

    table = Table()
    table.add_column("ID")
    table.add_column("Kind")
    table.add_column("Type")
    table.add_column("Due")

    now = utcnow()
    for item in [*plan.learning, *plan.review, *plan.new]:
        due = item.memory_state.due_in(now) if item.memory_state else None
        due_text = "-" if due is None else ("now" if due.total_seconds() <= 0 else format_interval(due))
        table.add_row(item.id, item.question.kind, style_card_type(item.card_type), due_text)

    console.print(table)
    console.print(
        f"\n{len(plan.learning)} learning, {len(plan.review)} review, "
        f"{len(plan.new)} new  [dim]({plan.excluded} not due)[/dim]"
    )


@app.command()
def stats(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Learner id"),
) -> None:
    """Show learning statistics and scheduler settings."""
    settings = get_settings()
    user_id = user or settings.default_user_id
    store = _open_store(settings)
    try:
        db_stats = store.get_stats(user_id, utcnow())
    except PersistenceError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from None
    finally:
        store.close()

    console.print(f"\n[bold cyan]Learning Statistics[/bold cyan] ({user_id})")
    console.print("=" * 40)

    table = Table(show_header=False, box=None)
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold")

    table.add_row("Questions tracked", str(db_stats["total_tracked"]))
    for state, count in db_stats["by_state"].items():
        table.add_row(f"  {state}", str(count))
    table.add_row("Due now", str(db_stats["due_now"]))
    table.add_row("Total reviews", str(db_stats["total_reviews"]))
    table.add_row("Total lapses", str(db_stats["total_lapses"]))
    table.add_row("Retention (recent)", f"{db_stats['retention_rate_percent']:.1f}%")

    console.print(table)

    console.print("\n[bold]Scheduler[/bold]")
    fsrs_table = Table(show_header=False, box=None)
    fsrs_table.add_column("Setting", style="dim")
    fsrs_table.add_column("Value")
    for key, value in settings.get_fsrs_config().items():
        fsrs_table.add_row(key, str(value))
    console.print(fsrs_table)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """CLI entry point."""
    settings = get_settings()

    # Configure logging
    logger.remove()
    logger.add(
        sys.stderr,
        level="WARNING",
        format="<level>{message}</level>",
    )
    if settings.log_file:
        logger.add(
            settings.log_file,
            level=settings.log_level,
            rotation="10 MB",
            retention=5,
        )

    app()


if __name__ == "__main__":
    main()
