#!/usr/bin/env python3
"""
Loop Control
============

Inspect and control PRP loop sessions from the command line.
Can be used while an orchestrator is running or standalone; a running
loop picks up changes at the start of its next tick.

Usage:
    python scripts/loop_control.py list
    python scripts/loop_control.py status <session_id> [--history 5]
    python scripts/loop_control.py reset <session_id> [--reason "..."]
    python scripts/loop_control.py skip <session_id> [--reason "..."]
    python scripts/loop_control.py abort <session_id> [--reason "..."]
    python scripts/loop_control.py pause <session_id> [--reason "..."]
    python scripts/loop_control.py resume <session_id>
    python scripts/loop_control.py override <session_id>
    python scripts/loop_control.py serve [--host 127.0.0.1] [--port 8765]
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from prp_loop.config import Config
from prp_loop.controls import LoopControls
from prp_loop.dashboard import create_dashboard_app, time_ago
from prp_loop.errors import PRPLoopError
from prp_loop.state_store import StateStore
from prp_loop.structured_logging import setup_structured_logging

console = Console()

STATUS_STYLES = {
    'running': 'green',
    'paused': 'yellow',
    'completed': 'bright_blue',
    'halted': 'red',
}

BREAKER_STYLES = {
    'CLOSED': 'green',
    'HALF_OPEN': 'yellow',
    'OPEN': 'red',
}


def show_sessions(store: StateStore) -> None:
    """Show all sessions in the session root."""
    sessions = store.list_sessions()
    if not sessions:
        console.print(f"[dim]No sessions in {store.root}[/dim]")
        return

    table = Table(title="Sessions", box=box.ROUNDED)
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Target", style="magenta")
    table.add_column("Status")
    table.add_column("Phase", justify="center")
    table.add_column("Iteration", justify="center")
    table.add_column("Last activity", style="dim")

    for session in sessions:
        style = STATUS_STYLES.get(session.status.value, 'white')
        table.add_row(
            session.session_id[:8],
            session.target[:40],
            f"[{style}]{session.status.value}[/{style}]",
            session.current_phase.value,
            str(session.current_iteration),
            time_ago(session.last_activity),
        )

    console.print(table)


def show_status(status: Dict[str, Any]) -> None:
    """Show decision state of one session."""
    style = STATUS_STYLES.get(status['status'], 'white')
    breaker = status['circuit_breaker']
    breaker_style = BREAKER_STYLES.get(breaker['state'], 'white')
    rate = status['rate_limit']
    gate = status.get('dual_gate') or {}

    text = f"""
[yellow]Target:[/yellow]     {status['target']}
[yellow]Status:[/yellow]     [{style}]{status['status']}[/{style}]
[yellow]Phase:[/yellow]      {status['phase']} (iteration {status['iteration']}, {status['progress_percent']}%)
[yellow]Completed:[/yellow]  {', '.join(status['phases_completed']) or '-'}

[cyan]Circuit breaker:[/cyan] [{breaker_style}]{breaker['state']}[/{breaker_style}]  no-progress {breaker['no_progress_count']}, same-error {breaker['same_error_count']}
[cyan]Dual gate:[/cyan]       gate 1 {gate.get('gate_1', False)}, gate 2 {gate.get('gate_2', False)}, can exit {gate.get('can_exit', False)}
[cyan]Rate limit:[/cyan]      {rate['calls_made']}/{rate['limit']} calls, resets {rate['next_reset'][:19]}{' [yellow](cooldown)[/yellow]' if rate['cooldown_waiting'] else ''}{' [red](override)[/red]' if rate['override_active'] else ''}
"""
    if status.get('halt_reason'):
        text += f"\n[red]Halted:[/red] {status['halt_reason']}"
    if status.get('pause_reason'):
        text += f"\n[yellow]Paused:[/yellow] {status['pause_reason']}"
    if breaker.get('open_reason'):
        text += f"\n[red]Breaker:[/red] {breaker['open_reason']}"

    console.print(Panel(text, title=f"Session {status['session_id']}", border_style="bright_blue"))


def show_history(entries: List[Dict[str, Any]]) -> None:
    """Show recent status blocks."""
    if not entries:
        console.print("[dim]No status history yet[/dim]")
        return

    table = Table(title="Recent ticks", box=box.ROUNDED)
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Phase", justify="center")
    table.add_column("Iter", justify="center")
    table.add_column("Decision")
    table.add_column("Breaker")
    table.add_column("Recommendation", style="white")

    for entry in entries:
        breaker = entry.get('CIRCUIT_BREAKER', {})
        table.add_row(
            str(entry.get('TIMESTAMP', ''))[:19],
            str(entry.get('PHASE', '')),
            str(entry.get('ITERATION', '')),
            str(entry.get('DECISION', '')),
            str(breaker.get('STATE', '')),
            str(entry.get('RECOMMENDATION', ''))[:70],
        )

    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and control PRP loop sessions")
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a .prp-loop.yaml config file"
    )
    parser.add_argument(
        "--session-dir",
        help="Session root directory (overrides PRP_SESSION_DIR)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List sessions")

    status_parser = subparsers.add_parser("status", help="Show session decision state")
    status_parser.add_argument("session_id")
    status_parser.add_argument(
        "--history",
        type=int,
        default=0,
        help="Also show the last N status blocks"
    )

    for name, help_text in (
        ("reset", "Reset circuit breaker and rate limit; revive a halted session"),
        ("skip", "Force the current phase to exit (recorded as forced)"),
        ("abort", "Halt the session"),
        ("pause", "Pause the session"),
    ):
        action_parser = subparsers.add_parser(name, help=help_text)
        action_parser.add_argument("session_id")
        action_parser.add_argument("--reason", help="Reason recorded with the action")

    resume_parser = subparsers.add_parser("resume", help="Resume a paused session")
    resume_parser.add_argument("session_id")

    override_parser = subparsers.add_parser("override", help="Continue past the hourly call limit")
    override_parser.add_argument("session_id")

    serve_parser = subparsers.add_parser("serve", help="Run the dashboard API")
    serve_parser.add_argument("--host", help="Bind address (default from config)")
    serve_parser.add_argument("--port", type=int, help="Port (default from config)")

    return parser


def load_config(args: argparse.Namespace) -> Config:
    config = Config.load_from_file(args.config) if args.config else Config.load_default()
    if args.session_dir:
        config.storage.session_dir = args.session_dir
    return config


def run_command(args: argparse.Namespace, config: Config) -> int:
    """Execute one parsed command. Returns the process exit code."""
    store = StateStore(config.storage.session_root)
    controls = LoopControls(config=config, store=store)

    if args.command == "list":
        show_sessions(store)
        return 0

    if args.command == "serve":
        import uvicorn

        host = args.host or config.dashboard.host
        port = args.port or config.dashboard.port
        console.print(f"[cyan]Dashboard on http://{host}:{port}/api/sessions[/cyan]")
        uvicorn.run(create_dashboard_app(config=config, store=store), host=host, port=port)
        return 0

    if args.command == "status":
        show_status(controls.status(args.session_id))
        if args.history > 0:
            show_history(store.read_status_history(args.session_id, args.history))
        return 0

    reason: Optional[str] = getattr(args, "reason", None)
    if args.command == "reset":
        status = controls.reset(args.session_id, reason or "Manual reset")
    elif args.command == "skip":
        status = controls.skip_phase(args.session_id, reason or "Skipped by operator")
    elif args.command == "abort":
        status = controls.abort(args.session_id, reason or "Aborted by operator")
    elif args.command == "pause":
        status = controls.pause(args.session_id, reason or "Paused by operator")
    elif args.command == "resume":
        status = controls.resume(args.session_id)
    elif args.command == "override":
        status = controls.override_rate_limit(args.session_id)
    else:
        raise ValueError(f"Unknown command: {args.command}")

    console.print(f"[green]✓ {args.command} applied[/green]")
    show_status(status)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
        setup_structured_logging(
            level=config.logging.level,
            format_type=config.logging.format,
            log_file=Path(config.logging.log_file) if config.logging.log_file else None,
        )
        return run_command(args, config)
    except PRPLoopError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
