"""Ensemble Status Dashboard - Minimal CLI dashboard for usage, cost and budgets."""

import argparse
import io
import json
import sys
import time
from datetime import datetime
from pathlib import Path

# Fix Windows console encoding
if sys.platform == "win32":
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table
from rich.text import Text

from .config import EnsembleConfig


REFRESH_INTERVAL = 2

HEALTH_STYLES = {"healthy": "green", "warning": "yellow", "critical": "red"}


def status_file() -> Path:
    return Path(EnsembleConfig.load().state_dir) / "status.json"


def load_status(path: Path | None = None) -> dict | None:
    """Load the snapshot the server writes after each tool call."""
    path = path or status_file()
    if not path.exists():
        return None
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (json.JSONDecodeError, IOError):
        return None


def format_age(timestamp: str) -> str:
    """Format time since timestamp as human-readable string."""
    try:
        then = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        now = datetime.now(then.tzinfo) if then.tzinfo else datetime.now()
        seconds = (now - then).total_seconds()

        if seconds < 60:
            return f"{int(seconds)}s ago"
        elif seconds < 3600:
            return f"{int(seconds // 60)}m ago"
        else:
            return f"{int(seconds // 3600)}h ago"
    except (ValueError, TypeError):
        return "unknown"


def render_dashboard(status: dict | None) -> Panel:
    """Render the dashboard as a Rich Panel."""
    if status is None:
        return Panel(
            Text("No usage data found", style="dim"),
            title="Ensemble Status",
            border_style="dim",
        )

    stats = status.get("stats", {})
    backend = stats.get("backend", {})
    cost = status.get("cost", {})
    forecast = status.get("forecast", {})

    table = Table.grid(padding=(0, 1))
    table.add_column()

    header = Text()
    header.append("Updated: ", style="dim")
    header.append(format_age(status.get("updated_at", "")), style="white")
    header.append(" | Queues: ", style="dim")
    header.append(f"{stats.get('queue_count', 0)}", style="cyan")
    header.append(" | Messages: ", style="dim")
    header.append(f"{stats.get('total_messages', 0)}", style="cyan")
    table.add_row(header)
    table.add_row(Text("-" * 50, style="dim"))

    usage = Text()
    usage.append("Requests ", style="dim")
    usage.append(f"{backend.get('total_requests', 0)}  ")
    usage.append("Tokens ", style="dim")
    usage.append(f"{backend.get('total_tokens', 0)}  ")
    usage.append("Cost ", style="dim")
    usage.append(f"${cost.get('total_cost', 0.0):.4f}", style="bold")
    table.add_row(usage)

    limits = backend.get("rate_limit", {})
    if limits:
        table.add_row(Text(
            f"Quota    {limits.get('minute_remaining', 0)}/min  {limits.get('hour_remaining', 0)}/hr left",
            style="dim",
        ))

    if forecast:
        table.add_row(Text(
            f"Forecast ${forecast.get('projected_cost', 0.0):.2f} over {forecast.get('days', 7)}d "
            f"({forecast.get('trend', 'stable')}, {forecast.get('confidence', 'low')} confidence)",
            style="dim",
        ))

    table.add_row(Text("-" * 50, style="dim"))

    budgets = status.get("budgets", [])
    if budgets:
        for budget in budgets:
            limit = budget.get("limit", 0.0)
            spent = budget.get("spent", 0.0)
            style = HEALTH_STYLES.get(budget.get("status"), "white")
            progress = Progress(
                TextColumn(f"{budget.get('key', '?')[:16]:<16}"),
                BarColumn(bar_width=24, complete_style=style),
                TextColumn(f"${spent:.2f}/${limit:.2f}"),
                expand=False,
            )
            progress.add_task("", total=max(limit, 0.0001), completed=min(spent, limit))
            table.add_row(progress)
    else:
        table.add_row(Text("Budgets  None configured", style="dim"))

    table.add_row(Text("-" * 50, style="dim"))

    if status.get("emergency_stop"):
        table.add_row(Text("! EMERGENCY STOP ACTIVE", style="bold red"))

    alerts = status.get("alerts", [])
    if alerts:
        for alert in alerts:
            alert_text = Text()
            severity = alert.get("severity", "warning")
            alert_text.append("! ", style="bold red" if severity == "critical" else "bold yellow")
            alert_text.append(f"{alert.get('budget_key', '?')}: {alert.get('message', '')}")
            table.add_row(alert_text)
    else:
        table.add_row(Text("[OK] No budget alerts", style="green"))

    return Panel(
        table,
        title="Ensemble Status",
        border_style="cyan",
    )


def main():
    """Main entry point for ensemble-status command."""
    parser = argparse.ArgumentParser(description="Show usage, cost and budget status")
    parser.add_argument(
        "-w", "--watch",
        action="store_true",
        help="Watch mode - refresh every 2 seconds"
    )
    args = parser.parse_args()

    console = Console()

    if args.watch:
        try:
            with Live(render_dashboard(load_status()), console=console, refresh_per_second=1) as live:
                while True:
                    time.sleep(REFRESH_INTERVAL)
                    live.update(render_dashboard(load_status()))
        except KeyboardInterrupt:
            pass
    else:
        console.print(render_dashboard(load_status()))


if __name__ == "__main__":
    main()
