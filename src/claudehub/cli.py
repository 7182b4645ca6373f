"""Command-line interface for claudehub."""

import logging
from collections.abc import Sequence
from pathlib import Path

import click
from rich import box
from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from claudehub.app import run_dashboard
from claudehub.config import ScoringWeights, load_config, validate_config, write_default_config
from claudehub.context import SchedulerContext
from claudehub.errors import HubError, NoAccountsAvailable
from claudehub.failover import run_supervised, terminate_on_signals
from claudehub.models import AccountUsageSnapshot
from claudehub.overlays import usage_bar
from claudehub.scoring import ScoreBreakdown, format_reset
from claudehub.supervisor import run_passthrough
from claudehub.sync import SyncSummary, list_conversations, sync_conversations_and_history

logger = logging.getLogger("claudehub")

console = Console(stderr=True, highlight=False)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(process)d]: %(message)s"


def configure_logging(log_file: Path, verbose: bool = False) -> None:
    """Send claudehub logs to a file; the terminal belongs to the wrapped CLI."""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as exc:
        console.print(f"[yellow]Logging disabled: cannot open {escape(str(log_file))} ({escape(str(exc))})[/yellow]")
        handler = logging.NullHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def usage_table(snapshots: Sequence[AccountUsageSnapshot], best: str | None = None) -> Table:
    table = Table(title="Usage Across Accounts", box=box.ROUNDED)
    table.add_column("Account", style="cyan")
    table.add_column("Email", style="green")
    table.add_column("Session", no_wrap=True)
    table.add_column("Resets", justify="right", no_wrap=True)
    table.add_column("Weekly", no_wrap=True)
    table.add_column("Resets", justify="right", no_wrap=True)

    for snapshot in snapshots:
        name = snapshot.account_id + (" [green](best)[/green]" if snapshot.account_id == best else "")
        if snapshot.has_error:
            table.add_row(name, snapshot.email or "", f"[red]{escape(snapshot.error_reason or '')}[/red]", "", "", "")
            continue
        table.add_row(
            name,
            snapshot.email or "",
            f"{usage_bar(snapshot.session_used_pct)} {snapshot.session_used_pct:3.0f}%",
            format_reset(snapshot.session_reset_at),
            f"{usage_bar(snapshot.window_used_pct)} {snapshot.window_used_pct:3.0f}%",
            format_reset(snapshot.window_reset_at),
        )
    return table


def weights_panel(weights: ScoringWeights) -> Panel:
    return Panel(
        f"Base score = session% x {weights.session_weight} + weekly% x {weights.window_weight}\n"
        f"Penalties: active session -{weights.active_session_penalty}, last used -{weights.last_used_penalty}\n"
        f"Session reset bonus: up to +{weights.session_bonus_cap_hours * weights.session_bonus_per_hour:g} "
        f"({weights.session_bonus_per_hour}/hour closer)\n"
        f"Weekly reset bonus: up to +{weights.window_bonus_cap_days * weights.window_bonus_per_day:g} "
        f"({weights.window_bonus_per_day}/day closer)",
        title="Scoring",
        border_style="blue",
    )


def score_table(rows: Sequence[ScoreBreakdown]) -> Table:
    table = Table(title="Score Breakdown", box=box.ROUNDED)
    table.add_column("Account", style="cyan")
    table.add_column("Session", justify="right")
    table.add_column("Weekly", justify="right")
    table.add_column("Base", justify="right")
    table.add_column("Reset bonus", justify="right")
    table.add_column("Penalties", justify="right")
    table.add_column("Final", justify="right", style="bold")

    for row in rows:
        c = row.candidate
        name = row.snapshot.account_id
        if row.is_best:
            name += " [green]<- BEST[/green]"
        elif row.is_rate_limited:
            name += " [red](rate-limited)[/red]"
        table.add_row(
            name,
            f"{row.snapshot.session_remaining_pct:.0f}% ({format_reset(row.snapshot.session_reset_at)})",
            f"{row.snapshot.window_remaining_pct:.0f}% ({format_reset(row.snapshot.window_reset_at)})",
            f"{c.base_score:.1f}",
            f"+{c.session_bonus:.1f} / +{c.window_bonus:.1f}",
            f"-{c.penalties:g}" if c.penalties else "",
            f"{row.final_score:.1f}",
        )
    return table


def startup_panel(
    account_id: str,
    snapshot: AccountUsageSnapshot | None,
    summary: SyncSummary | None,
    auto_switch: bool,
) -> Panel:
    lines: list[Text | str] = []
    if snapshot is None:
        lines.append(f"{account_id} (usage unknown)")
    elif snapshot.has_error:
        lines.append(Text(f"{account_id} (error: {snapshot.error_reason})"))
    else:
        lines.append(
            f"{account_id}  {usage_bar(snapshot.session_used_pct, 10)} {snapshot.session_used_pct:3.0f}% used | "
            f"{format_reset(snapshot.session_reset_at)}"
        )
        lines.append(
            f"{' ' * len(account_id)}  {usage_bar(snapshot.window_used_pct, 10)} {snapshot.window_used_pct:3.0f}% week | "
            f"{format_reset(snapshot.window_reset_at)}"
        )

    if summary is None:
        sync_text = "sync off"
    elif summary.changed:
        sync_text = f"synced ({summary.changed})"
    else:
        sync_text = "synced"
    lines.append(f"{sync_text} | auto-switch {'on' if auto_switch else 'off'}")
    lines.append("F9: usage | F10: switch")
    return Panel(Group(*lines), title="Hub", title_align="left", expand=False)


def run_sync(context: SchedulerContext) -> SyncSummary | None:
    try:
        return sync_conversations_and_history(context.config.accounts)
    except OSError as exc:
        logger.warning("Sync failed: %s", exc)
        console.print(f"[yellow]Sync failed: {escape(str(exc))}[/yellow]")
        return None


def launch(
    context: SchedulerContext,
    account: str | None,
    auto_switch: bool,
    claude_args: Sequence[str],
) -> int:
    """
    Pick an account, sync, and run the CLI under it.

    Raises:
        NoAccountsAvailable: If no account can be selected.
        ConfigError: If a forced account is not configured.
    """
    snapshots: list[AccountUsageSnapshot] = []
    if account is None:
        with console.status("Checking account usage..."):
            snapshots = context.usage_snapshots()
        selection = context.select(snapshots)
        if selection is None:
            raise NoAccountsAvailable("No accounts available. Check that every account is logged in.")
        if selection.is_rate_limited and selection.resets_at is not None:
            console.print(
                f"[yellow]All accounts are rate-limited. Using {selection.account_id} "
                f"(resets in {format_reset(selection.resets_at)})[/yellow]"
            )
        account = selection.account_id
        logger.info("Selected %s (score %.1f)", account, selection.score)
    else:
        context.account_path(account)
        if auto_switch:
            snapshots = context.usage_snapshots()

    summary = run_sync(context) if context.config.sync_on_start else None
    auto_switch = auto_switch and bool(snapshots)
    current = next((s for s in snapshots if s.account_id == account), None)
    console.print(startup_panel(account, current, summary, auto_switch))

    if auto_switch:
        return run_supervised(context, account, claude_args, snapshots, auto_failover_enabled=True, console=console)

    with terminate_on_signals(), context.registry.session(account):
        return run_passthrough(context.config.command, claude_args, context.account_env(account), console=console)


@click.command(
    context_settings={
        "ignore_unknown_options": True,
        "allow_extra_args": True,
        "help_option_names": ["-h", "--help"],
    },
    epilog="Keys while running: F9 shows usage for all accounts, F10 switches account.",
)
@click.option("--account", "-a", help="Use this account (skip auto-selection)")
@click.option("--no-auto-switch", is_flag=True, help="Disable automatic account switching on rate limit")
@click.option("--usage", "show_usage", is_flag=True, help="Show usage across all accounts")
@click.option("--score", "show_score", is_flag=True, help="Show the scoring breakdown")
@click.option("--dashboard", is_flag=True, help="Open the live usage dashboard")
@click.option("--sync", "sync_only", is_flag=True, help="Sync conversations and history, don't run claude")
@click.option("--list", "list_only", is_flag=True, help="List conversations per account")
@click.option("--init", "init_config", is_flag=True, help="Write a default config.json")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging to the log file")
@click.argument("claude_args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def cli(
    ctx: click.Context,
    account: str | None,
    no_auto_switch: bool,
    show_usage: bool,
    show_score: bool,
    dashboard: bool,
    sync_only: bool,
    list_only: bool,
    init_config: bool,
    verbose: bool,
    claude_args: tuple[str, ...],
) -> None:
    """Run claude on the best of several accounts, switching when one is rate limited.

    Arguments hub does not recognise are passed on to claude.
    """
    try:
        if init_config:
            path = write_default_config()
            console.print(f"[green]✓[/green] Wrote {path}")
            return

        config = load_config()
        configure_logging(config.resolved_log_file, verbose)
        validate_config(config)
        context = SchedulerContext(config)

        if list_only:
            for name, projects in list_conversations(config.accounts).items():
                console.print(f"[bold]{name}[/bold] ({config.accounts[name]}):")
                if not projects:
                    console.print("  No projects found")
                for project, count in projects.items():
                    console.print(f"  {project}: {count} conversations")
            return

        if show_usage:
            with console.status("[bold green]Fetching usage..."):
                snapshots = context.usage_snapshots()
            best = context.select(snapshots)
            console.print(usage_table(snapshots, best.account_id if best and not best.is_rate_limited else None))
            return

        if show_score:
            with console.status("[bold green]Fetching usage and calculating scores..."):
                rows = context.score_breakdown(context.usage_snapshots())
            console.print(weights_panel(config.scoring))
            console.print(score_table(rows))
            return

        if dashboard:
            run_dashboard(context)
            return

        if sync_only:
            summary = sync_conversations_and_history(config.accounts)
            console.print(
                f"Conversations: {summary.copied} copied, {summary.updated} updated, {summary.skipped} skipped\n"
                f"History: {summary.history_entries} unique entries"
            )
            console.print("[green]✓[/green] Sync complete")
            return

        code = launch(context, account, not no_auto_switch, list(claude_args) + list(ctx.args))
    except HubError as exc:
        logger.error("%s", exc)
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
        ctx.exit(1)
    except KeyboardInterrupt:
        ctx.exit(130)
    else:
        ctx.exit(code)


def main() -> None:
    """Entry point for the hub command."""
    cli()


if __name__ == "__main__":
    main()
