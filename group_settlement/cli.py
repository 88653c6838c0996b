"""
Group Settlement CLI.

Operator commands for the settlement database.
"""

from datetime import datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from shared.config.logging import setup_logging
from shared.config.settings import settings

app = typer.Typer(
    name="group-settlement",
    help="Table session and group settlement operations",
    add_completion=False,
)
console = Console()


def _cents(amount: int | None) -> str:
    if amount is None:
        return "-"
    return f"{amount / 100:.2f} {settings.currency}"


# =============================================================================
# Database Commands
# =============================================================================

@app.command()
def init_db():
    """Create all tables."""
    from shared.infrastructure.db import get_engine
    from group_settlement.models import Base

    try:
        Base.metadata.create_all(get_engine())
        console.print("[green]✓ Tables created[/green]")
    except Exception as e:
        console.print(f"[red]✗ Table creation failed: {e}[/red]")
        raise typer.Exit(1)


# =============================================================================
# Settlement Commands
# =============================================================================

@app.command()
def sweep(
    now: Optional[datetime] = typer.Option(None, help="Reference time (UTC), defaults to now"),
):
    """Cancel abandoned split sessions (one pass)."""
    if now is not None and now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    from shared.infrastructure.db import get_session_factory
    from shared.infrastructure.events import RedisNotifier
    from shared.infrastructure.locks import KeyedLockManager
    from group_settlement.services.sweeper import SplitSweeper

    setup_logging()
    notifier = RedisNotifier()
    try:
        sweeper = SplitSweeper(get_session_factory(), locks=KeyedLockManager(config=settings), notifier=notifier)
        cancelled = sweeper.sweep_once(now)
    finally:
        notifier.shutdown()

    if cancelled:
        console.print(f"[yellow]Cancelled {len(cancelled)} split session(s): {cancelled}[/yellow]")
    else:
        console.print("[green]✓ No abandoned split sessions[/green]")


@app.command()
def bill(
    session_id: int = typer.Argument(..., help="Table session id"),
):
    """Show the group bill of a table session."""
    from shared.infrastructure.db import get_db_context
    from shared.utils.exceptions import NotFoundError
    from group_settlement.services.domain import BillSummaryService

    with get_db_context() as db:
        try:
            summary = BillSummaryService(db).get_group_bill(session_id)
        except NotFoundError as e:
            console.print(f"[red]✗ {e}[/red]")
            raise typer.Exit(1)

    state = "active" if summary.is_active else f"ended ({summary.ended_by})"
    console.print(f"[bold]Table {summary.table_id}[/bold] · session {summary.session_id} · {state}")

    table = Table(title="Participants")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Orders", justify="right")
    table.add_column("Ordered", justify="right")
    table.add_column("Due", justify="right")
    table.add_column("Paid", justify="right")
    table.add_column("Status", style="green")

    for p in summary.participants:
        name = p.fantasy_name if p.is_active else f"{p.fantasy_name} (left)"
        table.add_row(
            str(p.id),
            name,
            str(len(p.orders)),
            _cents(p.ordered_cents),
            _cents(p.amount_due_cents),
            _cents(p.amount_paid_cents),
            p.contribution_status or "-",
        )
    console.print(table)

    if summary.split_session:
        split = summary.split_session
        console.print(
            f"Split {split.id}: {split.strategy}, tip {split.tip_strategy} "
            f"{_cents(split.tip_amount_cents)}, status [bold]{split.status}[/bold]"
        )
    console.print(
        f"Billable {_cents(summary.billable_cents)} · settled {_cents(summary.settled_cents)} "
        f"· outstanding {_cents(summary.outstanding_cents)}"
    )


# =============================================================================
# Health Commands
# =============================================================================

@app.command()
def check_config():
    """Validate settings for the current environment."""
    errors = settings.validate_production_config()

    table = Table(title="Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Environment", settings.environment)
    table.add_row("Currency", settings.currency)
    table.add_row("Tax rate", f"{settings.tax_rate_bps / 100:.2f}%")
    table.add_row("Leave fallback policy", settings.leave_fallback_policy)
    table.add_row("Split inactivity timeout", f"{settings.split_inactivity_timeout_seconds}s")
    table.add_row("Session lock timeout", f"{settings.session_lock_timeout_seconds}s")
    table.add_row("Payment processing timeout", f"{settings.payment_processing_timeout_seconds}s")
    console.print(table)

    if errors:
        for error in errors:
            console.print(f"[red]✗ {error}[/red]")
        raise typer.Exit(1)
    console.print("[green]✓ Configuration valid[/green]")


if __name__ == "__main__":
    app()
