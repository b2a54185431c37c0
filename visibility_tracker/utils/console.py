"""
Rich console utilities for dual-mode CLI output.

Human mode (--format text): rich spinners, tables and panels.
Agent mode (--format json): everything is buffered into one JSON document
that is flushed to stdout at the end of the command.
Quiet mode (--quiet): tab-separated lines only.

Examples:
    >>> from visibility_tracker.utils.console import output_mode, spinner, success
    >>> output_mode.format = "text"
    >>> with spinner("Loading configuration..."):
    ...     config = load_config(path)
    >>> success("Configuration loaded")
"""

from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table


class OutputMode:
    """
    Output mode configuration shared by every CLI command.

    Attributes:
        format: "text" (human) or "json" (agent)
        quiet: Suppress non-essential output
    """

    def __init__(self, format_type: str = "text", quiet: bool = False):
        if format_type not in ["text", "json"]:
            raise ValueError(f"Invalid format: {format_type}. Must be 'text' or 'json'")

        self.format = format_type
        self.quiet = quiet
        self._json_buffer: dict[str, Any] = {}

    def is_human(self) -> bool:
        return self.format == "text"

    def is_agent(self) -> bool:
        return self.format == "json"

    def add_json(self, key: str, value: Any) -> None:
        self._json_buffer[key] = value

    def flush_json(self) -> None:
        """Write the buffered JSON document to stdout (agent mode only)."""
        if self.is_agent() and self._json_buffer:
            json.dump(self._json_buffer, sys.stdout, indent=2, default=str)
            sys.stdout.write("\n")
            sys.stdout.flush()
            self._json_buffer.clear()


# Global output mode instance (set by CLI flags)
output_mode = OutputMode()

console = Console()
console_err = Console(stderr=True)


@contextmanager
def spinner(message: str):
    """Show a rich spinner in human mode; silent otherwise."""
    if output_mode.is_human():
        with console.status(f"[bold blue]{message}", spinner="dots") as status:
            yield status
    else:
        yield None


def success(message: str) -> None:
    if output_mode.is_human():
        console.print(f"[green]✓[/green] {message}")
    elif output_mode.is_agent():
        output_mode.add_json("status", "success")
        output_mode.add_json("message", message)


def error(message: str) -> None:
    if output_mode.is_human():
        console_err.print(f"[red]✗[/red] {message}", style="red")
    elif output_mode.is_agent():
        output_mode.add_json("status", "error")
        output_mode.add_json("error", message)


def warning(message: str) -> None:
    if output_mode.is_human():
        console.print(f"[yellow]⚠[/yellow] {message}", style="yellow")
    elif output_mode.is_agent():
        output_mode.add_json("warning", message)


def info(message: str) -> None:
    if output_mode.is_human() and not output_mode.quiet:
        console.print(f"[blue]ℹ[/blue] {message}")


def print_results_table(results: list[dict]) -> None:
    """
    Print one row per (prompt, provider) result.

    Expected keys: prompt, provider, mention_count, visibility_score,
    citations (list), response.

    Human mode: rich table (error sentinels highlighted in red)
    Agent mode: buffered as "results"
    Quiet mode: tab-separated provider, score, mentions, prompt
    """
    if output_mode.is_agent():
        output_mode.add_json("results", results)
        return

    if output_mode.quiet:
        for result in results:
            print(
                f"{result['provider']}\t{result['visibility_score']}\t"
                f"{result['mention_count']}\t{result['prompt']}"
            )
        return

    table = Table(title="Tracking Results", box=box.ROUNDED)
    table.add_column("Prompt", style="cyan", max_width=48)
    table.add_column("Provider", style="magenta")
    table.add_column("Mentions", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Citations", justify="right")

    for result in results:
        if result["response"].startswith("Error: "):
            score_str = "[red]error[/red]"
        elif result["visibility_score"] > 0:
            score_str = f"[green]{result['visibility_score']}[/green]"
        else:
            score_str = str(result["visibility_score"])

        table.add_row(
            result["prompt"],
            result["provider"],
            str(result["mention_count"]),
            score_str,
            str(len(result.get("citations") or [])),
        )

    console.print(table)


def print_run_summary(
    run_id: int,
    status: str,
    results_written: int,
    errors: int,
    average_score: float,
) -> None:
    """
    Print the final summary of a tracking run.

    Agent mode flushes the whole JSON buffer, including these fields.
    """
    if output_mode.is_agent():
        output_mode.add_json("run_id", run_id)
        output_mode.add_json("run_status", status)
        output_mode.add_json("results_written", results_written)
        output_mode.add_json("error_results", errors)
        output_mode.add_json("average_visibility_score", round(average_score, 1))
        output_mode.flush_json()
        return

    if output_mode.quiet:
        print(f"{run_id}\t{status}\t{results_written}\t{errors}\t{average_score:.1f}")
        return

    summary_text = (
        f"[bold]Run ID:[/bold] {run_id}\n"
        f"[bold]Status:[/bold] {status}\n"
        f"[bold]Results:[/bold] {results_written} written, {errors} provider errors\n"
        f"[bold]Average visibility:[/bold] {average_score:.1f}/100"
    )

    if status == "completed" and errors == 0:
        border_style = "green"
        title = "[bold green]✓ Run Completed[/bold green]"
    elif status == "completed":
        border_style = "yellow"
        title = "[bold yellow]⚠ Run Completed with Provider Errors[/bold yellow]"
    else:
        border_style = "red"
        title = "[bold red]✗ Run Failed[/bold red]"

    console.print(
        Panel(summary_text, title=title, border_style=border_style, box=box.ROUNDED)
    )


def print_usage(usage: dict) -> None:
    """Print prompt quota usage for an owner."""
    if output_mode.is_agent():
        output_mode.add_json("usage", usage)
        output_mode.flush_json()
        return

    if output_mode.quiet:
        print(f"{usage['used']}\t{usage['limit']}\t{usage['remaining']}")
        return

    table = Table(title="Prompt Usage", box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Used", str(usage["used"]))
    table.add_row("Limit", str(usage["limit"]))
    table.add_row("Remaining", str(usage["remaining"]))
    table.add_row("Period", f"{usage['period_start']} → {usage['period_end']}")
    console.print(table)
