#!/usr/bin/env python3
"""
Main CLI for StackMind - captured snippet library.

Usage:
    sm capture "text"       - Capture a snippet for background enrichment
    sm list                 - List stored snippets
    sm search "query"       - Semantic search (falls back to keywords)
    sm task <id>            - Show a background task
    sm watch                - Follow task broadcasts
    sm daemon start         - Start the daemon
    sm daemon status        - Check daemon status
"""

import asyncio
import json
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import httpx
from loguru import logger
from rich.console import Console
from rich.table import Table

console = Console()

# Default daemon URL
DAEMON_URL = "http://localhost:8765"


async def send_message(payload: Dict[str, Any], url: str = DAEMON_URL) -> Dict[str, Any]:
    """POST one action message to the daemon and return its reply."""
    async with httpx.AsyncClient() as client:
        response = await client.post(f"{url}/messages", json=payload, timeout=10.0)
    return response.json()


def call(ctx: click.Context, action: str, **fields) -> Dict[str, Any]:
    """Send an action, exiting with status 1 on connection or action failure."""
    payload = {"action": action, **fields}
    try:
        result = asyncio.run(send_message(payload, ctx.obj["url"]))
    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon. Is it running?[/red]")
        console.print("Start with: [cyan]sm daemon start[/cyan]")
        sys.exit(1)
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if result.get("success") is False:
        console.print(f"[red]{action} failed[/red] ({result.get('code')}): {result.get('error')}")
        sys.exit(1)
    return result


def to_epoch_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def format_timestamp(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def display_solutions(solutions: List[Dict[str, Any]], title: str,
                      scores: Optional[List[float]] = None) -> None:
    """Display records in a table."""
    if not solutions:
        console.print("[yellow]No snippets found[/yellow]")
        return

    table = Table(title=title)
    table.add_column("ID", style="dim")
    table.add_column("Title", style="cyan", no_wrap=False)
    table.add_column("Tags", style="magenta")
    table.add_column("Saved")
    if scores:
        table.add_column("Score", justify="right")

    for i, s in enumerate(solutions):
        row = [
            s.get("id", ""),
            s.get("title") or s.get("pageTitle") or "Untitled",
            ", ".join(s.get("tags", [])),
            format_timestamp(s.get("timestamp", 0)),
        ]
        if scores:
            row.append(f"{scores[i]:.2f}")
        table.add_row(*row)

    console.print(table)


@click.group()
@click.option("--url", envvar="STACKMIND_URL", default=DAEMON_URL, show_default=True,
              help="Daemon base URL")
@click.pass_context
def cli(ctx, url: str):
    """StackMind - captured snippet library CLI."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url.rstrip("/")


@cli.command()
@click.argument("text")
@click.option("--url", "page_url", default="", help="Page the snippet came from")
@click.option("--page-title", default="", help="Title of that page")
@click.option("--tag", "-t", "tags", multiple=True, help="Tag to attach (repeatable)")
@click.option("--title", default=None, help="Skip title generation and use this")
@click.option("--notes", default="", help="Free-form notes")
@click.option("--formatted", is_flag=True, help="Text is already formatted")
@click.pass_context
def capture(ctx, text: str, page_url: str, page_title: str, tags: tuple,
            title: Optional[str], notes: str, formatted: bool):
    """Capture a snippet and enrich it in the background."""
    result = call(
        ctx, "processInBackground",
        selectedText=text,
        url=page_url,
        pageTitle=page_title,
        currentTags=list(tags),
        currentTitle=title,
        isFormatted=formatted,
        notes=notes,
    )
    console.print(f"[green]✓[/green] Processing in background: {result['taskId']}")
    console.print(f"[dim]Follow with: sm task {result['taskId']}[/dim]")


@cli.command(name="list")
@click.pass_context
def list_solutions(ctx):
    """List stored snippets, newest first."""
    result = call(ctx, "getSolutions")
    display_solutions(result["solutions"], f"Snippets ({len(result['solutions'])})")


@cli.command()
@click.argument("solution_id")
@click.pass_context
def show(ctx, solution_id: str):
    """Show one snippet in full."""
    s = call(ctx, "getSolution", id=solution_id)["solution"]
    console.print(f"[bold cyan]{s.get('title') or 'Untitled'}[/bold cyan]")
    if s.get("url"):
        console.print(f"[dim]{s['url']}[/dim]")
    console.print(f"Saved: {format_timestamp(s['timestamp'])}")
    if s.get("tags"):
        console.print(f"Tags: {', '.join(s['tags'])}")
    if s.get("summary"):
        console.print(f"\n[bold]Summary[/bold]\n{s['summary']}")
    console.print(f"\n{s.get('formattedText') or s['text']}")
    if s.get("notes"):
        console.print(f"\n[bold]Notes[/bold]\n{s['notes']}")


@cli.command()
@click.argument("query", required=False, default="")
@click.option("--keyword", "-k", is_flag=True, help="Substring search instead of semantic")
@click.option("--tag", "-t", "tags", multiple=True, help="Require tag (repeatable)")
@click.option("--since", type=click.DateTime(formats=["%Y-%m-%d"]), help="Saved on or after")
@click.option("--until", type=click.DateTime(formats=["%Y-%m-%d"]), help="Saved on or before")
@click.option("--limit", "-l", default=10, help="Max results for semantic search")
@click.pass_context
def search(ctx, query: str, keyword: bool, tags: tuple, since: Optional[datetime],
           until: Optional[datetime], limit: int):
    """Search snippets."""
    if tags or since or until:
        filters: Dict[str, Any] = {"query": query, "tags": list(tags)}
        if since:
            filters["startDate"] = to_epoch_ms(since)
        if until:
            # Whole day inclusive
            filters["endDate"] = to_epoch_ms(until + timedelta(days=1)) - 1
        result = call(ctx, "advancedSearch", filters=filters)
        display_solutions(result["solutions"], "Filtered results")
    elif keyword:
        result = call(ctx, "searchSolutions", query=query)
        display_solutions(result["solutions"], f"Keyword results for '{query}'")
    else:
        result = call(ctx, "semanticSearch", query=query, topK=limit)
        mode = result.get("mode", "semantic")
        if mode == "keyword":
            console.print("[yellow]Semantic search unavailable, showing keyword matches[/yellow]")
        display_solutions(result["solutions"], f"Results for '{query}' ({mode})",
                          scores=result.get("scores") or None)


@cli.command()
@click.pass_context
def tags(ctx):
    """List every tag in use."""
    all_tags = call(ctx, "getAllTags")["tags"]
    if not all_tags:
        console.print("[yellow]No tags yet[/yellow]")
        return
    for tag in all_tags:
        console.print(f"  • {tag}")


@cli.command()
@click.argument("solution_id")
@click.pass_context
def delete(ctx, solution_id: str):
    """Delete a snippet."""
    result = call(ctx, "deleteSolution", id=solution_id)
    if result.get("deleted"):
        console.print(f"[green]Deleted {solution_id}[/green]")
    else:
        console.print(f"[yellow]No snippet {solution_id}[/yellow]")


@cli.command()
@click.confirmation_option(prompt="Delete every stored snippet?")
@click.pass_context
def clear(ctx):
    """Delete every snippet."""
    result = call(ctx, "clearAllSolutions")
    console.print(f"[green]Removed {result.get('removed', 0)} snippets[/green]")


@cli.command(name="export")
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def export_solutions(ctx, output: Path):
    """Export every snippet to a JSON file."""
    solutions = call(ctx, "exportSolutions")["solutions"]
    output.write_text(json.dumps(solutions, indent=2), encoding="utf-8")
    console.print(f"[green]Exported {len(solutions)} snippets to {output}[/green]")


@cli.command(name="import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_solutions(ctx, source: Path):
    """Import snippets from a JSON export (existing ids are overwritten)."""
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
    except ValueError as e:
        console.print(f"[red]Not a JSON export:[/red] {e}")
        sys.exit(1)
    if isinstance(data, dict):
        data = data.get("solutions", [])
    result = call(ctx, "importSolutions", solutions=data)
    console.print(f"[green]Imported {result['imported']} snippets[/green]")


@cli.command()
@click.argument("task_id", required=False)
@click.option("--finalize", is_flag=True, help="Save now, using fallbacks for unfinished steps")
@click.option("--cancel", is_flag=True, help="Abandon the task")
@click.option("--notes", default=None, help="Replace the task's notes")
@click.pass_context
def task(ctx, task_id: Optional[str], finalize: bool, cancel: bool, notes: Optional[str]):
    """Show, finalize or cancel background tasks."""
    if finalize and cancel:
        console.print("[red]Cannot both finalize and cancel[/red]")
        sys.exit(1)

    if task_id is None:
        tasks = call(ctx, "getActiveTasks")["tasks"]
        if not tasks:
            console.print("[green]No active tasks[/green]")
            return
        table = Table(title="Background tasks")
        table.add_column("ID", style="dim")
        table.add_column("Page")
        table.add_column("Status")
        table.add_column("Done", justify="right")
        for t in tasks:
            done = sum(1 for flag in t["progress"].values() if flag)
            table.add_row(t["id"], t.get("pageTitle") or "-", t["status"], f"{done}/4")
        console.print(table)
        return

    if notes is not None:
        call(ctx, "updateTaskNotes", taskId=task_id, notes=notes)
        console.print("[green]Notes updated[/green]")
    if finalize:
        solution = call(ctx, "finalizeTask", taskId=task_id)["solution"]
        console.print(f"[green]✓ Saved as {solution['id']}[/green]")
        return
    if cancel:
        result = call(ctx, "cancelTask", taskId=task_id)
        if result.get("success"):
            console.print(f"[yellow]Cancelled {task_id}[/yellow]")
        return

    t = call(ctx, "getTaskStatus", taskId=task_id)["task"]
    if t is None:
        console.print(f"[yellow]No task {task_id} (finished tasks are purged after a grace period)[/yellow]")
        return
    console.print(f"Task {t['id']}: [bold]{t['status']}[/bold]")
    for step, flag in t["progress"].items():
        mark = "[green]✓[/green]" if flag else "[dim]…[/dim]"
        console.print(f"  {mark} {step}")
    if t.get("error"):
        console.print(f"[red]Error:[/red] {t['error']}")


async def follow_events(url: str, task_id: Optional[str] = None) -> None:
    """Print task broadcasts from the daemon's event stream."""
    params = {"taskId": task_id} if task_id else None
    async with httpx.AsyncClient(timeout=None) as client:
        async with client.stream("GET", f"{url}/events", params=params) as response:
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                message = json.loads(line[len("data: "):])
                action = message.pop("action")
                console.print(f"[cyan]{action}[/cyan] {json.dumps(message)}")


@cli.command()
@click.option("--task", "task_id", default=None, help="Only this task's events")
@click.pass_context
def watch(ctx, task_id: Optional[str]):
    """Follow background task events until interrupted."""
    try:
        asyncio.run(follow_events(ctx.obj["url"], task_id))
    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


@cli.group()
def daemon():
    """Manage the StackMind daemon."""
    pass


@daemon.command()
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--data-path", "-d", type=click.Path(file_okay=False), help="Data directory (no config file)")
def start(config: Optional[str], data_path: Optional[str]):
    """Start the StackMind daemon in the foreground."""
    console.print("[cyan]Starting StackMind daemon...[/cyan]")

    from stackmind.daemon.main import main as daemon_main

    try:
        asyncio.run(daemon_main(config, data_path))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
    except Exception as e:
        console.print(f"[red]Daemon error:[/red] {e}")
        logger.exception("Daemon crashed")


@daemon.command()
@click.pass_context
def status(ctx):
    """Check daemon status."""
    asyncio.run(check_status(ctx.obj["url"]))


async def check_status(url: str):
    """Check if daemon is running and get stats."""
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{url}/status", timeout=2.0)

        if response.status_code == 200:
            data = response.json()
            console.print("[green]✓ Daemon is running[/green]")

            stats = data.get("stats", {})
            console.print(f"\nUptime: {data.get('uptime', 'unknown')}")
            console.print(f"Snippets: {stats.get('records', 0)}")
            console.print(f"Active tasks: {stats.get('active_tasks', 0)}")
            console.print(f"LLM: {data.get('llm', 'unknown')}")
            console.print(f"Memory: {stats.get('memory_mb', 0):.1f} MB")
        else:
            console.print("[red]Daemon error[/red]")

    except httpx.ConnectError:
        console.print("[red]✗ Daemon is not running[/red]")
        console.print("Start with: [cyan]sm daemon start[/cyan]")


def main():
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
