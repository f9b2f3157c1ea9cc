"""Asynchronous scheduler driving every package version through the analysis stages."""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from crate_callgraph.analysis.call_graph import build_module_graph, link_package
from crate_callgraph.analysis.merger import ExportIndex, merge
from crate_callgraph.analysis.model import AnalysisBatch, DependencyEdge, PackageVersion
from crate_callgraph.config import AnalysisConfig
from crate_callgraph.data.archive import ArchiveFetcher, find_artifacts
from crate_callgraph.data.registry_index import RegistryIndex
from crate_callgraph.errors import ConfigError, CrateGraphError, IRError
from crate_callgraph.io.graph_store import GraphStore
from crate_callgraph.io.ir_loader import load
from crate_callgraph.pipelines.planning import Plan, PlannedPackage, Planner, RequestFailure

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MAX_EXIT_CODE = 124


class JobState(str, enum.Enum):
    QUEUED = "Queued"
    FETCHING = "Fetching"
    EXTRACTING = "Extracting"
    LOADING = "Loading"
    BUILDING = "Building"
    MERGING = "Merging"
    INGESTING = "Ingesting"
    INGESTED = "Ingested"
    FAILED = "Failed"
    SKIPPED = "Skipped"


_STAGE_ORDER = [
    JobState.QUEUED,
    JobState.FETCHING,
    JobState.EXTRACTING,
    JobState.LOADING,
    JobState.BUILDING,
    JobState.MERGING,
    JobState.INGESTING,
    JobState.INGESTED,
]
TERMINAL_STATES = frozenset({JobState.INGESTED, JobState.FAILED, JobState.SKIPPED})
RETRYABLE_STATES = frozenset({JobState.FETCHING, JobState.INGESTING})


class IllegalTransition(RuntimeError):
    pass


@dataclass(slots=True)
class AnalysisJob:
    """Per package version unit of work and its lifecycle."""

    package: PackageVersion
    checksum: str = ""
    dependencies: Tuple[DependencyEdge, ...] = ()
    state: JobState = JobState.QUEUED
    reason: Optional[str] = None
    attempts: Dict[JobState, int] = field(default_factory=dict)
    history: List[JobState] = field(default_factory=lambda: [JobState.QUEUED])
    counts: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_plan(cls, item: PlannedPackage) -> "AnalysisJob":
        return cls(package=item.package, checksum=item.checksum, dependencies=item.dependencies)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: JobState) -> None:
        if self.is_terminal:
            raise IllegalTransition(f"{self.package} is already {self.state.value}")
        if state not in TERMINAL_STATES or state is JobState.INGESTED:
            if _STAGE_ORDER.index(state) <= _STAGE_ORDER.index(self.state):
                raise IllegalTransition(f"{self.package}: {self.state.value} -> {state.value}")
        LOGGER.debug("%s: %s -> %s", self.package, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, reason: str) -> None:
        self.advance(JobState.FAILED)
        self.reason = reason

    def skip(self, reason: str) -> None:
        self.advance(JobState.SKIPPED)
        self.reason = reason


@dataclass
class RunReport:
    jobs: List[AnalysisJob]
    request_failures: List[RequestFailure] = field(default_factory=list)

    def _in(self, state: JobState) -> List[AnalysisJob]:
        return [job for job in self.jobs if job.state is state]

    @property
    def ingested(self) -> List[AnalysisJob]:
        return self._in(JobState.INGESTED)

    @property
    def failed(self) -> List[AnalysisJob]:
        return self._in(JobState.FAILED)

    @property
    def skipped(self) -> List[AnalysisJob]:
        return self._in(JobState.SKIPPED)

    @property
    def failure_count(self) -> int:
        return len(self.failed) + len(self.request_failures)

    @property
    def exit_code(self) -> int:
        return min(self.failure_count, MAX_EXIT_CODE)

    def job(self, package: PackageVersion) -> AnalysisJob:
        for job in self.jobs:
            if job.package == package:
                return job
        raise KeyError(package.key)

    def failure_reasons(self) -> List[Tuple[str, str]]:
        reasons = [(failure.request, f"{failure.error.category}: {failure.error.message}") for failure in self.request_failures]
        reasons.extend((job.package.key, job.reason or "") for job in self.failed)
        return reasons


def _describe_error(exc: CrateGraphError) -> str:
    return f"{exc.category}: {exc.message}"


class Scheduler:
    """
    Run analysis jobs with bounded concurrency.

    Up to ``config.concurrency`` jobs progress at once and at most ``config.effective_fetch_limit``
    archive downloads run simultaneously. Finished batches pass through a bounded queue to a single
    ingestion consumer, so producers wait whenever ingestion falls behind.
    A ``ConfigError`` raised by a job, such as an unreachable graph store, skips every job not yet
    finished and is raised again once the workers are done.
    """

    def __init__(
        self,
        index: RegistryIndex,
        fetcher: ArchiveFetcher,
        store: GraphStore,
        config: AnalysisConfig,
        *,
        exports: Optional[ExportIndex] = None,
        executor: Optional[Executor] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        self.index = index
        self.fetcher = fetcher
        self.store = store
        self.config = config
        self.exports = exports if exports is not None else ExportIndex()
        self.executor = executor
        self.stop = stop
        self._jobs: Dict[PackageVersion, AnalysisJob] = {}
        self._fetch_slots: Optional[asyncio.Semaphore] = None
        self._ingest_queue: Optional[asyncio.Queue] = None
        self._fatal: Optional[ConfigError] = None

    def plan(self, requests: Sequence[str] = (), packages: Iterable[PackageVersion] = ()) -> Plan:
        planner = Planner(
            self.index,
            include_prerelease=self.config.include_prerelease,
            retry_cap=self.config.retry_cap,
            backoff=self.config.backoff_delay,
        )
        return planner.plan(requests, packages)

    async def run(self, requests: Sequence[str] = (), packages: Iterable[PackageVersion] = ()) -> RunReport:
        """Plan the dependency closure of the requested packages, then analyze it."""

        self.config.validate()
        plan = await asyncio.to_thread(self.plan, list(requests), list(packages))
        return await self.execute(plan)

    async def execute(self, plan: Plan) -> RunReport:
        self._jobs = {}
        self._fatal = None
        pending: asyncio.Queue = asyncio.Queue()
        for item in plan.order:
            job = AnalysisJob.from_plan(item)
            self._jobs[job.package] = job
            if item.error is not None:
                job.fail(_describe_error(item.error))
            else:
                pending.put_nowait(job)

        self._fetch_slots = asyncio.Semaphore(self.config.effective_fetch_limit)
        self._ingest_queue = asyncio.Queue(maxsize=self.config.buffer_size)
        self.config.paths.ensure()

        consumer = asyncio.create_task(self._ingest_loop())
        workers = [
            asyncio.create_task(self._worker(pending))
            for _ in range(max(1, min(self.config.concurrency, pending.qsize())))
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            await self._ingest_queue.put(None)
            await consumer
        if self._fatal is not None:
            raise self._fatal

        report = RunReport(jobs=list(self._jobs.values()), request_failures=list(plan.failures))
        LOGGER.info(
            "Run finished: %d ingested, %d failed, %d skipped",
            len(report.ingested),
            report.failure_count,
            len(report.skipped),
        )
        return report

    async def _worker(self, pending: asyncio.Queue) -> None:
        while True:
            try:
                job = pending.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._run_job(job)

    @property
    def _halted(self) -> bool:
        return self._fatal is not None or (self.stop is not None and self.stop.is_set())

    def _stopping(self, job: AnalysisJob) -> bool:
        if self._halted:
            job.skip("cancelled")
            return True
        return False

    async def _run_job(self, job: AnalysisJob) -> None:
        try:
            await self._process(job)
        except asyncio.CancelledError:
            if not job.is_terminal:
                job.skip("cancelled")
            raise
        except IRError as exc:
            job.skip(_describe_error(exc))
            LOGGER.warning("Skipped %s: %s", job.package, job.reason)
        except ConfigError as exc:
            # store connectivity lost mid-run; remaining jobs are skipped
            job.fail(_describe_error(exc))
            if self._fatal is None:
                self._fatal = exc
                LOGGER.error("Aborting run: %s", exc)
        except CrateGraphError as exc:
            job.fail(_describe_error(exc))
            LOGGER.warning("Failed %s: %s", job.package, job.reason)
        except Exception as exc:
            LOGGER.exception("Unexpected error while analyzing %s", job.package)
            job.fail(f"internal: {exc}")
        finally:
            await asyncio.to_thread(self.fetcher.cleanup, job.package)

    async def _process(self, job: AnalysisJob) -> None:
        package = job.package
        if self._stopping(job):
            return

        if not self.config.force and await asyncio.to_thread(self.store.is_ingested, package):
            table = await asyncio.to_thread(self.store.load_exports, package)
            if table is not None:
                self.exports.publish(package, table)
            job.advance(JobState.INGESTED)
            job.reason = "already ingested"
            LOGGER.info("%s is already ingested; nothing to do", package)
            return

        job.advance(JobState.FETCHING)
        archive = await self._retrying(job, JobState.FETCHING, functools.partial(self._download, job))
        if self._stopping(job):
            return

        job.advance(JobState.EXTRACTING)
        directory = await asyncio.to_thread(self.fetcher.extract, package, archive)
        artifacts = await asyncio.to_thread(find_artifacts, directory)
        if self._stopping(job):
            return
        if not artifacts:
            job.skip("no IR artifacts")
            LOGGER.info("Skipped %s: archive holds no IR artifacts", package)
            return

        job.advance(JobState.LOADING)
        modules = await self._in_executor([functools.partial(load, path) for path in artifacts])
        if self._stopping(job):
            return

        job.advance(JobState.BUILDING)
        prefixes = tuple(self.config.blocked_symbol_prefixes)
        module_graphs = await self._in_executor(
            [functools.partial(build_module_graph, package, module, blocked_prefixes=prefixes) for module in modules]
        )
        (package_graph,) = await self._in_executor([functools.partial(link_package, package, module_graphs)])
        if self._stopping(job):
            return

        job.advance(JobState.MERGING)
        await self._await_dependencies(job)
        batch, stats = merge(package_graph, job.dependencies, self.exports)
        for missing in stats.missing_dependencies:
            LOGGER.warning("%s: dependency %s has no exports; its calls stay External", package, missing)

        job.advance(JobState.INGESTING)
        await self._submit(job, batch)
        job.counts = batch.counts()
        job.advance(JobState.INGESTED)
        LOGGER.info(
            "Ingested %s: %d functions, %d direct, %d external, %d indirect",
            package,
            job.counts["functions"],
            job.counts["Direct"],
            job.counts["External"],
            job.counts["Indirect"],
        )

    async def _download(self, job: AnalysisJob) -> Path:
        assert self._fetch_slots is not None
        async with self._fetch_slots:
            return await asyncio.to_thread(self.fetcher.download, job.package, job.checksum)

    async def _in_executor(self, calls: List[Callable[[], T]]) -> List[T]:
        loop = asyncio.get_running_loop()
        return list(await asyncio.gather(*(loop.run_in_executor(self.executor, call) for call in calls)))

    async def _retrying(self, job: AnalysisJob, state: JobState, attempt: Callable[[], Awaitable[T]]) -> T:
        """Run ``attempt`` until it succeeds, fails terminally or exhausts the retry cap for ``state``."""

        assert state in RETRYABLE_STATES
        while True:
            count = job.attempts.get(state, 0) + 1
            job.attempts[state] = count
            try:
                return await attempt()
            except CrateGraphError as exc:
                if not exc.retryable or count >= self.config.retry_cap:
                    if exc.retryable:
                        exc.message = f"{exc.message} (gave up after {count} attempts)"
                    raise
                delay = self.config.backoff_delay(count)
                LOGGER.warning(
                    "%s: %s attempt %d/%d failed (%s); retrying in %.2fs",
                    job.package,
                    state.value,
                    count,
                    self.config.retry_cap,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)

    def _settled(self, package: PackageVersion) -> bool:
        job = self._jobs.get(package)
        return job is None or job.is_terminal

    async def _await_dependencies(self, job: AnalysisJob) -> None:
        targets = sorted({edge.target for edge in job.dependencies})
        waiting = [target for target in targets if not self._settled(target)]
        attempt = 0
        while waiting and attempt < self.config.dependency_wait_attempts:
            if self._halted:
                break
            attempt += 1
            LOGGER.debug("%s waiting for %s (attempt %d)", job.package, ", ".join(map(str, waiting)), attempt)
            await asyncio.sleep(self.config.dependency_wait_interval)
            waiting = [target for target in waiting if not self._settled(target)]

        for target in targets:
            dependency = self._jobs.get(target)
            if dependency is None or dependency.state is JobState.INGESTED:
                continue
            if dependency.is_terminal:
                LOGGER.warning(
                    "%s: dependency %s ended %s (%s); its calls stay External",
                    job.package,
                    target,
                    dependency.state.value,
                    dependency.reason,
                )
            else:
                LOGGER.warning("%s: dependency %s did not settle in time; its calls stay External", job.package, target)

    async def _submit(self, job: AnalysisJob, batch: AnalysisBatch) -> None:
        assert self._ingest_queue is not None
        done: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._ingest_queue.put((job, batch, done))
        # a cancelled producer must not interrupt a transaction already handed to the consumer
        await asyncio.shield(done)

    async def _ingest_loop(self) -> None:
        assert self._ingest_queue is not None
        while True:
            item = await self._ingest_queue.get()
            if item is None:
                return
            job, batch, done = item
            try:
                await self._retrying(
                    job,
                    JobState.INGESTING,
                    functools.partial(asyncio.to_thread, self.store.upsert, batch),
                )
            except Exception as exc:
                if not done.done():
                    done.set_exception(exc)
                continue
            self.exports.publish(batch.package, batch.exports)
            if not done.done():
                done.set_result(None)


__all__ = [
    "AnalysisJob",
    "IllegalTransition",
    "JobState",
    "MAX_EXIT_CODE",
    "RunReport",
    "Scheduler",
    "TERMINAL_STATES",
]
