"""Thin CLI wrapper for stagebuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import shutil
import signal
import tempfile
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from stagebuild import __version__
from stagebuild.config import get_settings, print_settings_json

app = typer.Typer(
    name="stagebuild",
    help="Staged build orchestrator - build multi-stage filesystems with cache mounts",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"stagebuild version {__version__}")
        raise typer.Exit()


def _print_json(data: Any) -> None:
    """Print JSON without Rich wrapping or markup."""
    text = data if isinstance(data, str) else json.dumps(data, indent=2)
    console.print(text, soft_wrap=True, markup=False, highlight=False)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )
    logging.getLogger("stagebuild").setLevel(level)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
        ),
    ] = None,
) -> None:
    """Staged build orchestrator - build multi-stage filesystems with cache mounts."""
    level = (log_level or get_settings().log_level).upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        err_console.print(f"[red]Invalid log level: {log_level}[/red]")
        raise typer.Exit(code=1)
    _configure_logging(level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        _print_json(print_settings_json(settings))
    else:
        work_dir_display = (
            str(settings.work_dir) if settings.work_dir else "(system default)"
        )
        timeout_display = (
            str(settings.step_timeout) if settings.step_timeout else "(none)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Images directory:    {settings.images_dir}")
        console.print(f"  Work directory:      {work_dir_display}")
        console.print()
        console.print("[bold]Execution:[/bold]")
        console.print(f"  Max workers:         {settings.max_workers}")
        console.print(f"  Shell:               {settings.shell}")
        console.print(f"  Isolation:           {settings.isolation}")
        console.print(f"  Host tools:          {settings.host_tools}")
        console.print(f"  Step timeout:        {timeout_display}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Cache:[/bold]")
        console.print(f"  Budget (bytes):      {settings.cache_budget_bytes}")


@app.command()
def plan(
    file: Annotated[
        Path,
        typer.Option("--file", "-f", help="Build description (YAML or JSON)"),
    ],
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Final stage (default: last declared)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Resolve a build description into execution batches without running it."""
    from stagebuild.description import load_description
    from stagebuild.errors import BuildError, exit_code_for
    from stagebuild.stages.resolver import resolve_plan

    try:
        description = load_description(file)
        build_plan = resolve_plan(description.stages, target=target)
    except BuildError as e:
        if json_output:
            _print_json({"error": str(e), "code": e.code})
        else:
            console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(code=exit_code_for(e)) from None

    if json_output:
        _print_json(build_plan.to_dict())
        return

    console.print(f"[bold]Build plan ({len(build_plan)} stage(s)):[/bold]")
    for index, batch in enumerate(build_plan.batches):
        console.print(f"  Batch {index}: [green]{', '.join(batch)}[/green]")
        for name in batch:
            deps = build_plan.dependencies.get(name, [])
            if deps:
                console.print(f"    {name} <- {', '.join(deps)}")


@app.command()
def build(
    file: Annotated[
        Path,
        typer.Option("--file", "-f", help="Build description (YAML or JSON)"),
    ],
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Final stage (default: last declared)"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Directory to export the final filesystem to"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite an existing output directory"),
    ] = False,
    workers: Annotated[
        int | None,
        typer.Option("--workers", "-j", min=1, help="Maximum concurrent stages"),
    ] = None,
    cache_dir: Annotated[
        Path | None,
        typer.Option("--cache-dir", help="Cache store root"),
    ] = None,
    context: Annotated[
        Path | None,
        typer.Option("--context", "-c", help="Build context directory"),
    ] = None,
    keep_work_dir: Annotated[
        bool,
        typer.Option("--keep-work-dir", help="Keep snapshots and step logs"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the target stage of a build description.

    Stages run in dependency order; independent stages run concurrently.
    Press Ctrl-C once to stop starting new stages (running ones finish).
    """
    from stagebuild.builds.report import build_report, format_failure_report
    from stagebuild.builds.service import CancelToken, execute_plan, export_snapshot
    from stagebuild.cache.store import CacheStore
    from stagebuild.description import load_description
    from stagebuild.errors import BuildError
    from stagebuild.stages.resolver import resolve_plan
    from stagebuild.types import StageResult, StageStatus

    settings = get_settings()
    overrides: dict[str, Any] = {}
    if workers is not None:
        overrides["max_workers"] = workers
    if cache_dir is not None:
        overrides["cache_dir"] = cache_dir
    if overrides:
        settings = settings.model_copy(update=overrides)

    results: list[StageResult] = []

    def on_stage_done(result: StageResult) -> None:
        results.append(result)
        if json_output:
            return
        if result.succeeded:
            console.print(f"  [green]✓ {result.name}[/green]")
        elif result.status is StageStatus.CANCELLED:
            console.print(f"  [yellow]- {result.name} (cancelled)[/yellow]")
        else:
            console.print(f"  [red]✗ {result.name}[/red]")

    token = CancelToken()

    def on_sigint(signum: int, frame: Any) -> None:
        err_console.print("[yellow]Cancelling: waiting for running stages...[/yellow]")
        token.cancel()

    base = settings.work_dir
    if base is not None:
        base.mkdir(parents=True, exist_ok=True)
    work_dir = Path(tempfile.mkdtemp(prefix="stagebuild_", dir=base))
    cache: CacheStore | None = None
    previous_handler = signal.signal(signal.SIGINT, on_sigint)

    error: BuildError | None = None
    build_target: str | None = target
    exported: Path | None = None
    pruned: list[str] = []
    try:
        cache = _open_store(
            settings.cache_dir, budget_bytes=settings.cache_budget_bytes
        )
        description = load_description(file, context_dir=context)
        build_plan = resolve_plan(description.stages, target=target or description.last_stage)
        build_target = build_plan.target
        if not json_output:
            console.print(
                f"[blue]Building '{build_target}' ({len(build_plan)} stage(s))...[/blue]"
            )
        outcome = execute_plan(
            build_plan,
            settings=settings,
            cache=cache,
            work_dir=work_dir,
            cancel_token=token,
            context_dir=description.context_dir,
            on_stage_done=on_stage_done,
        )
        pruned = outcome.pruned_keys
        final = outcome.final
        if output is not None and final is not None and final.snapshot is not None:
            exported = export_snapshot(final.snapshot, output, overwrite=force)
    except BuildError as e:
        error = e
    except FileExistsError as e:
        error = BuildError(str(e), code="output_exists")
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        if cache is not None:
            cache.close()
        if not keep_work_dir:
            shutil.rmtree(work_dir, ignore_errors=True)

    report = build_report(
        results,
        target=build_target,
        error=error,
        output_dir=str(exported) if exported else None,
        work_dir=str(work_dir) if keep_work_dir else None,
        pruned_cache_keys=pruned,
    )

    if json_output:
        _print_json(report.model_dump_json(indent=2))
    elif error is None:
        console.print()
        final_stage = next((s for s in report.stages if s.name == build_target), None)
        console.print(f"[bold green]Built '{build_target}'[/bold green]")
        if final_stage is not None and final_stage.digest:
            console.print(f"  Digest: {final_stage.digest}")
        if exported:
            console.print(f"  Output: {exported}")
        if keep_work_dir:
            console.print(f"  Work directory: {work_dir}")
        if pruned:
            console.print(f"  Evicted {len(pruned)} cache key(s)")
    else:
        console.print()
        console.print(f"[red]{escape(format_failure_report(error))}[/red]")

    if report.exit_code:
        raise typer.Exit(code=report.exit_code)


cache_app = typer.Typer(help="Inspect and prune the cache store")
app.add_typer(cache_app, name="cache")


def _open_store(cache_dir: Path, budget_bytes: int | None):
    """Open the cache store, mapping setup failures to BuildError."""
    from sqlalchemy.exc import SQLAlchemyError

    from stagebuild.cache.store import CacheStore
    from stagebuild.errors import BuildError

    try:
        return CacheStore(cache_dir, budget_bytes=budget_bytes)
    except (OSError, SQLAlchemyError) as e:
        raise BuildError(
            f"Cannot open cache store at {cache_dir}: {e}", code="cache_unavailable"
        ) from e


def _open_cache(cache_dir: Path | None):
    from stagebuild.errors import BuildError

    settings = get_settings()
    try:
        return _open_store(
            cache_dir or settings.cache_dir, budget_bytes=settings.cache_budget_bytes
        )
    except BuildError as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(code=type(e).cli_exit_code) from None


@cache_app.command("info")
def cache_info(
    cache_dir: Annotated[
        Path | None,
        typer.Option("--cache-dir", help="Cache store root"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show cache store information."""
    store = _open_cache(cache_dir)
    try:
        info = store.info()
    finally:
        store.close()

    if json_output:
        _print_json(info)
    else:
        console.print("[bold]Cache Store Information:[/bold]")
        console.print()
        console.print(f"  Cache directory: {info['cache_dir']}")
        console.print(f"  Entries: {info['entries']}")
        console.print(f"  Total size: {info['total_size_human']}")
        console.print(f"  Budget (bytes): {info['budget_bytes']}")


@cache_app.command("list")
def cache_list(
    cache_dir: Annotated[
        Path | None,
        typer.Option("--cache-dir", help="Cache store root"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cache entries, least recently used first."""
    from stagebuild.cache.store import format_size

    store = _open_cache(cache_dir)
    try:
        entries = store.list_entries()
    finally:
        store.close()

    if json_output:
        _print_json(
            [
                {
                    "key": e.key,
                    "size_bytes": e.size_bytes,
                    "content_digest": e.content_digest,
                    "created_at": e.created_at.isoformat() if e.created_at else None,
                    "last_accessed_at": (
                        e.last_accessed_at.isoformat() if e.last_accessed_at else None
                    ),
                }
                for e in entries
            ]
        )
        return

    if not entries:
        console.print("[yellow]No cache entries found[/yellow]")
        return

    console.print(f"[bold]Found {len(entries)} cache entr(ies):[/bold]")
    for e in entries:
        console.print(f"  [green]{escape(e.key)}[/green]")
        console.print(f"    Size: {format_size(e.size_bytes)}")
        console.print(f"    Last used: {e.last_accessed_at}")


@cache_app.command("prune")
def cache_prune(
    cache_dir: Annotated[
        Path | None,
        typer.Option("--cache-dir", help="Cache store root"),
    ] = None,
    budget: Annotated[
        int | None,
        typer.Option("--budget", min=0, help="Size budget in bytes (default: configured)"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-n", help="Show what would be evicted without evicting"
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Evict least recently used cache entries until within the budget."""
    store = _open_cache(cache_dir)
    try:
        evicted = store.prune(budget_bytes=budget, dry_run=dry_run)
    finally:
        store.close()

    if json_output:
        _print_json({"dry_run": dry_run, "evicted": evicted})
        return

    if not evicted:
        console.print("[yellow]Nothing to evict[/yellow]")
    else:
        prefix = "[DRY RUN] Would evict" if dry_run else "Evicted"
        console.print(f"[bold]{prefix} {len(evicted)} cache key(s):[/bold]")
        for key in evicted:
            console.print(f"  - {key}", markup=False)


__all__ = ["app"]
