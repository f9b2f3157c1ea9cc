"""Command line entry points for the project."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from concurrent.futures import Executor, ProcessPoolExecutor
from pathlib import Path
from typing import List, Optional, Sequence

import networkx as nx
import typer

from crate_callgraph import __version__
from crate_callgraph.analysis.graph_queries import (
    find_functions,
    packages_calling_into,
    reachable_functions,
    unresolved_calls,
)
from crate_callgraph.analysis.model import PackageVersion
from crate_callgraph.config import (
    DEFAULT_ARCHIVE_URL,
    DEFAULT_INDEX_URL,
    DEFAULT_STORE_URL,
    AnalysisConfig,
    ProjectPaths,
    RegistryConfig,
    StoreConfig,
)
from crate_callgraph.data.archive import ArchiveFetcher
from crate_callgraph.data.registry_index import RegistryIndex
from crate_callgraph.errors import ConfigError, IngestionError
from crate_callgraph.io.graph_store import load_graph, open_store
from crate_callgraph.pipelines.scheduler import RunReport, Scheduler

FATAL_EXIT_CODE = 125

app = typer.Typer(help="Build an ecosystem-wide call graph from the compiled IR of registry packages.")

_CONCURRENCY = typer.Option(8, help="Number of package versions analysed at the same time.")
_FETCH_LIMIT = typer.Option(None, help="Maximum simultaneous archive downloads (defaults to --concurrency).")
_REGISTRY = typer.Option(DEFAULT_INDEX_URL, "--registry", help="Sparse registry index URL.")
_INDEX_DIR = typer.Option(None, help="Local registry index mirror used instead of --registry.")
_ARCHIVE_URL = typer.Option(DEFAULT_ARCHIVE_URL, help="Archive URL template with {name} and {version}.")
_ARCHIVE_DIR = typer.Option(None, help="Local directory of .crate archives used instead of --archive-url.")
_WORK_DIR = typer.Option(Path(".crate-callgraph"), help="Directory for downloads and extracted archives.")
_RETRY_CAP = typer.Option(3, help="Attempts per retryable stage before a job fails.")
_STORE = typer.Option(DEFAULT_STORE_URL, help="Graph store: bolt://, neo4j://, memory://, file://PATH or a path.")
_STORE_USER = typer.Option(None, help="Graph store user name.")
_STORE_PASSWORD = typer.Option(None, envvar="CRATE_CALLGRAPH_STORE_PASSWORD", help="Graph store password.")
_STORE_DATABASE = typer.Option(None, help="Graph store database name.")
_STORE_FLUSH = typer.Option(1, "--flush-every", help="File stores: write the store file every N commits.")
_PROCESSES = typer.Option(None, help="Worker processes for IR parsing (0 parses in threads; default: CPU count).")
_FORCE = typer.Option(False, "--force", help="Re-analyse package versions that are already ingested.")
_PRERELEASE = typer.Option(False, "--prerelease", help="Let version requirements select pre-releases.")
_VERBOSE = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _make_executor(processes: Optional[int]) -> Optional[Executor]:
    if processes is not None and processes < 0:
        raise typer.BadParameter("--processes cannot be negative.")
    if processes == 0:
        return None
    return ProcessPoolExecutor(max_workers=processes or os.cpu_count())


async def _run_scheduler(scheduler: Scheduler, requests: Sequence[str], packages: Sequence[PackageVersion]) -> RunReport:
    stop = asyncio.Event()
    scheduler.stop = stop
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop.set)
        loop.add_signal_handler(signal.SIGTERM, stop.set)
    except (NotImplementedError, RuntimeError):
        # signal handlers are only available on the main thread of Unix event loops
        pass
    return await scheduler.run(requests, packages)


def _print_report(report: RunReport) -> None:
    typer.echo(f"Ingested: {len(report.ingested)}")
    typer.echo(f"Failed:   {report.failure_count}")
    typer.echo(f"Skipped:  {len(report.skipped)}")
    for label, reason in report.failure_reasons():
        typer.secho(f"  FAILED  {label}: {reason}", fg=typer.colors.RED)
    for job in report.skipped:
        typer.secho(f"  SKIPPED {job.package}: {job.reason}", fg=typer.colors.YELLOW)


def _analyse(
    *,
    requests: Sequence[str],
    packages: Sequence[PackageVersion],
    index: RegistryIndex,
    registry: RegistryConfig,
    analysis: AnalysisConfig,
    store_config: StoreConfig,
    processes: Optional[int],
) -> None:
    try:
        store = open_store(store_config)
    except ConfigError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=FATAL_EXIT_CODE)
    executor = _make_executor(processes)

    fetcher = ArchiveFetcher(registry, analysis.paths, max_extracted_bytes=analysis.max_extracted_bytes)
    scheduler = Scheduler(index, fetcher, store, analysis, executor=executor)
    try:
        report = asyncio.run(_run_scheduler(scheduler, requests, packages))
    except ConfigError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=FATAL_EXIT_CODE)
    finally:
        if executor is not None:
            executor.shutdown()
        try:
            store.close()
        except IngestionError as exc:
            typer.secho(f"Graph store error: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=FATAL_EXIT_CODE)

    _print_report(report)
    if report.exit_code:
        raise typer.Exit(code=report.exit_code)
    typer.secho("All package versions analysed.", fg=typer.colors.GREEN)


def _build_configs(
    *,
    concurrency: int,
    fetch_limit: Optional[int],
    registry_url: str,
    index_dir: Optional[Path],
    archive_url: str,
    archive_dir: Optional[Path],
    work_dir: Path,
    retry_cap: int,
    store: str,
    store_user: Optional[str],
    store_password: Optional[str],
    store_database: Optional[str],
    flush_every: int,
    force: bool,
    prerelease: bool,
) -> tuple[RegistryConfig, AnalysisConfig, StoreConfig]:
    registry = RegistryConfig(
        index_url=registry_url,
        index_dir=index_dir.expanduser().resolve() if index_dir else None,
        archive_url=archive_url,
        archive_dir=archive_dir.expanduser().resolve() if archive_dir else None,
    )
    analysis = AnalysisConfig(
        concurrency=concurrency,
        fetch_limit=fetch_limit,
        retry_cap=retry_cap,
        include_prerelease=prerelease,
        force=force,
        paths=ProjectPaths(work_dir),
    )
    store_config = StoreConfig(
        url=store, user=store_user, password=store_password, database=store_database, flush_every=flush_every
    )
    try:
        registry.validate()
        analysis.validate()
        store_config.validate()
    except ConfigError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=FATAL_EXIT_CODE)
    return registry, analysis, store_config


@app.callback()
def version(display_version: bool = typer.Option(False, "--version", "-V", help="Show version and exit.")) -> None:
    """Print the package version when requested."""

    if display_version:
        typer.echo(__version__)
        raise typer.Exit()


@app.command("analyze")
def analyze(
    packages: List[str] = typer.Argument(..., help="Packages to analyse as NAME or NAME@REQUIREMENT."),
    concurrency: int = _CONCURRENCY,
    fetch_limit: Optional[int] = _FETCH_LIMIT,
    registry_url: str = _REGISTRY,
    index_dir: Optional[Path] = _INDEX_DIR,
    archive_url: str = _ARCHIVE_URL,
    archive_dir: Optional[Path] = _ARCHIVE_DIR,
    work_dir: Path = _WORK_DIR,
    retry_cap: int = _RETRY_CAP,
    store: str = _STORE,
    store_user: Optional[str] = _STORE_USER,
    store_password: Optional[str] = _STORE_PASSWORD,
    store_database: Optional[str] = _STORE_DATABASE,
    flush_every: int = _STORE_FLUSH,
    processes: Optional[int] = _PROCESSES,
    force: bool = _FORCE,
    prerelease: bool = _PRERELEASE,
    verbose: bool = _VERBOSE,
) -> None:
    """Analyse packages and their dependency closure, then ingest them into the graph store."""

    _configure_logging(verbose)
    registry, analysis, store_config = _build_configs(
        concurrency=concurrency,
        fetch_limit=fetch_limit,
        registry_url=registry_url,
        index_dir=index_dir,
        archive_url=archive_url,
        archive_dir=archive_dir,
        work_dir=work_dir,
        retry_cap=retry_cap,
        store=store,
        store_user=store_user,
        store_password=store_password,
        store_database=store_database,
        flush_every=flush_every,
        force=force,
        prerelease=prerelease,
    )
    typer.echo(f"Analysing {len(packages)} requested packages...")
    _analyse(
        requests=packages,
        packages=(),
        index=RegistryIndex(registry),
        registry=registry,
        analysis=analysis,
        store_config=store_config,
        processes=processes,
    )


@app.command("analyze-ecosystem")
def analyze_ecosystem(
    index_dir: Path = typer.Option(..., help="Local registry index mirror listing every package."),
    limit: Optional[int] = typer.Option(None, help="Analyse at most this many package versions (useful for dry runs)."),
    concurrency: int = _CONCURRENCY,
    fetch_limit: Optional[int] = _FETCH_LIMIT,
    archive_url: str = _ARCHIVE_URL,
    archive_dir: Optional[Path] = _ARCHIVE_DIR,
    work_dir: Path = _WORK_DIR,
    retry_cap: int = _RETRY_CAP,
    store: str = _STORE,
    store_user: Optional[str] = _STORE_USER,
    store_password: Optional[str] = _STORE_PASSWORD,
    store_database: Optional[str] = _STORE_DATABASE,
    flush_every: int = _STORE_FLUSH,
    processes: Optional[int] = _PROCESSES,
    force: bool = _FORCE,
    verbose: bool = _VERBOSE,
) -> None:
    """Analyse every published version of every package in a local index mirror."""

    _configure_logging(verbose)
    registry, analysis, store_config = _build_configs(
        concurrency=concurrency,
        fetch_limit=fetch_limit,
        registry_url=DEFAULT_INDEX_URL,
        index_dir=index_dir,
        archive_url=archive_url,
        archive_dir=archive_dir,
        work_dir=work_dir,
        retry_cap=retry_cap,
        store=store,
        store_user=store_user,
        store_password=store_password,
        store_database=store_database,
        flush_every=flush_every,
        force=force,
        prerelease=True,
    )
    index = RegistryIndex(registry)
    versions = list(index.iter_package_versions(limit=limit))
    if not versions:
        raise typer.BadParameter(f"No packages found under {index_dir}")
    typer.echo(f"Analysing {len(versions)} package versions...")
    _analyse(
        requests=(),
        packages=versions,
        index=index,
        registry=registry,
        analysis=analysis,
        store_config=store_config,
        processes=processes,
    )


def _load_store_graph(store: Path) -> nx.MultiDiGraph:
    candidate = store.expanduser().resolve()
    if not candidate.exists():
        raise typer.BadParameter(f"Graph store file not found: {candidate}")
    try:
        return load_graph(candidate)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command("reachable")
def reachable(
    function: str = typer.Argument(..., help="Function node id, demangled name or glob pattern."),
    store: Path = typer.Option(..., help="Graph store JSON file written by `analyze --store`."),
    top: int = typer.Option(50, help="Number of reachable functions to print."),
) -> None:
    """List the functions reachable from a function over CALLS edges."""

    graph = _load_store_graph(store)
    if not find_functions(graph, function) and function not in graph:
        typer.secho(f"No function matches {function}", fg=typer.colors.YELLOW)
        raise typer.Exit(code=1)

    reached = reachable_functions(graph, function)
    typer.echo(f"Reachable functions: {len(reached)}")
    for entry in reached[:top]:
        suffix = f" [{entry.kind}]" if entry.placeholder else ""
        typer.echo(f"  - {entry.label} ({entry.package_version}){suffix}")
    if len(reached) > top:
        typer.echo(f"    ... (+{len(reached) - top} more)")


@app.command("callers")
def callers(
    function: str = typer.Argument(..., help="Function node id, demangled name or glob pattern."),
    store: Path = typer.Option(..., help="Graph store JSON file written by `analyze --store`."),
) -> None:
    """List the package versions whose code transitively calls a function."""

    graph = _load_store_graph(store)
    if not find_functions(graph, function) and function not in graph:
        typer.secho(f"No function matches {function}", fg=typer.colors.YELLOW)
        raise typer.Exit(code=1)

    packages = packages_calling_into(graph, function)
    typer.echo(f"Package versions calling into {function}: {len(packages)}")
    for package in packages:
        typer.echo(f"  - {package}")


@app.command("unresolved")
def unresolved(
    store: Path = typer.Option(..., help="Graph store JSON file written by `analyze --store`."),
    package: List[str] = typer.Option([], help="Limit the summary to these NAME@VERSION keys."),
    top: int = typer.Option(15, help="Number of most frequent external targets to print."),
) -> None:
    """Summarise calls that stayed External or Indirect."""

    graph = _load_store_graph(store)
    summary = unresolved_calls(graph, packages=package or None)
    typer.echo(f"External calls: {summary.external}")
    typer.echo(f"Indirect calls: {summary.indirect}")
    for target, count in summary.external_targets.most_common(top):
        typer.echo(f"  - {target}: {count}")


def run() -> None:
    """Entry point used by ``python -m crate_callgraph.cli``."""

    app()


if __name__ == "__main__":
    run()
