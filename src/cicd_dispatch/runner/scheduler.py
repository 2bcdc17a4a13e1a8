"""
Pipeline Runner

Executes the job DAGs of a dispatch decision: dependency ordering, bounded
parallelism, retry with exponential backoff for transient failures, shared
results for deduplicated jobs, build-cache reuse and supersede cancellation.
"""

import asyncio
import copy
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..config.loader import DispatchConfig
from ..config.settings import DispatchSettings
from ..domain.models import (
    DispatchDecision,
    Job,
    JobKind,
    JobStatus,
    PipelineType,
    RunResult,
)
from ..errors import JobError, PermanentJobError, classify_failure
from ..executors.base import JobContext
from ..executors.registry import ExecutorRegistry
from ..utils.json_logger import create_job_logger
from .cache import BuildCache, SingleFlight
from .dag import JobGraph
from .supersede import RunHandle, RunRegistry

logger = logging.getLogger(__name__)

CACHEABLE_KINDS = frozenset({JobKind.TEST, JobKind.LINT, JobKind.BUILD})
FAILED_UPSTREAM = frozenset({JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED})


@dataclass
class RunOutcome:
    """Final job states and results of one run."""

    run_id: str
    ref: str
    jobs: Dict[str, Job] = field(default_factory=dict)
    results: Dict[str, RunResult] = field(default_factory=dict)
    superseded: bool = False
    superseded_by: Optional[str] = None

    def entries(self, pipeline_id: str) -> List[Tuple[Job, RunResult]]:
        return [
            (
                job,
                self.results.get(job_id)
                or RunResult(job_id=job_id, status=job.status, attempts=job.attempt_count),
            )
            for job_id, job in self.jobs.items()
            if job.pipeline_id == pipeline_id
        ]


@dataclass
class _Attempt:
    """What one (possibly shared) execution produced."""

    status: JobStatus
    attempts: int
    executed_by: str
    logs_ref: Optional[str] = None
    error: Optional[str] = None


class PipelineRunner:
    def __init__(
        self,
        settings: DispatchSettings,
        executors: ExecutorRegistry,
        cache: Optional[BuildCache] = None,
        registry: Optional[RunRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        config: Optional[DispatchConfig] = None,
    ):
        self.settings = settings
        self.executors = executors
        self.cache = cache or BuildCache()
        self.registry = registry or RunRegistry(settings.supersede_policy)
        self.sleep = sleep
        self.config = config

    async def execute(
        self, decision: DispatchDecision, ref: str, run_id: Optional[str] = None
    ) -> RunOutcome:
        """Run every job of ``decision``. Job failures never raise."""
        run_id = run_id or uuid.uuid4().hex[:12]
        handle = self.registry.begin(ref, run_id)
        try:
            return await self._execute(decision, handle)
        finally:
            self.registry.finish(handle)

    async def _execute(self, decision: DispatchDecision, handle: RunHandle) -> RunOutcome:
        jobs: Dict[str, Job] = {job.id: copy.deepcopy(job) for job in decision.all_jobs()}
        graph = JobGraph(jobs.values())
        graph.validate()
        order = [job_id for wave in graph.topological_order() for job_id in wave]

        pipeline_types = {sel.pipeline_id: sel.type for sel in decision.selected_pipelines}
        shared_keys: Dict[str, int] = {}
        for job in jobs.values():
            key = job.shares_result_of or job.id
            shared_keys[key] = shared_keys.get(key, 0) + 1

        outcome = RunOutcome(run_id=handle.run_id, ref=handle.ref, jobs=jobs)
        flight = SingleFlight()
        running: Dict[str, asyncio.Task] = {}
        started: Dict[str, float] = {}
        cancel_waiter: Optional[asyncio.Task] = asyncio.create_task(handle.wait_superseded())
        supersede_handled = False

        logger.info(
            f"Run {handle.run_id} starting {len(jobs)} jobs on {handle.ref}",
            extra={"run_id": handle.run_id, "event_id": decision.event_id},
        )

        try:
            while True:
                self._propagate_skips(order, jobs, outcome)

                if handle.superseded and not supersede_handled:
                    supersede_handled = True
                    await self._cancel_run(handle, jobs, running, outcome, started)

                if not handle.superseded:
                    slots = self.settings.max_concurrency - len(running)
                    for job_id in order:
                        if slots <= 0:
                            break
                        job = jobs[job_id]
                        if job.status != JobStatus.QUEUED or job_id in running:
                            continue
                        if not all(
                            jobs[dep].status == JobStatus.SUCCEEDED for dep in job.dependencies
                        ):
                            continue
                        job.transition(JobStatus.RUNNING)
                        started[job_id] = time.monotonic()
                        running[job_id] = asyncio.create_task(
                            self._run_job(
                                job,
                                handle,
                                pipeline_types[job.pipeline_id],
                                flight,
                                shared_keys.get(job.shares_result_of or job.id, 1) > 1,
                            )
                        )
                        slots -= 1

                if not running:
                    break

                waitables: Set[asyncio.Future] = set(running.values())
                if cancel_waiter is not None and not supersede_handled:
                    waitables.add(cancel_waiter)
                done, _ = await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)

                for job_id, task in list(running.items()):
                    if task in done:
                        del running[job_id]
                        self._collect(jobs[job_id], task, outcome, started)
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()
            for task in running.values():
                task.cancel()

        outcome.superseded = handle.superseded
        outcome.superseded_by = handle.superseded_by
        counts = Counter(r.status.value for r in outcome.results.values())
        logger.info(
            f"Run {handle.run_id} finished: "
            + ", ".join(f"{status}={n}" for status, n in sorted(counts.items())),
            extra={"run_id": handle.run_id},
        )
        return outcome

    def _propagate_skips(
        self, order: List[str], jobs: Dict[str, Job], outcome: RunOutcome
    ) -> None:
        """Queued jobs downstream of a failed, skipped or cancelled job are skipped."""
        for job_id in order:
            job = jobs[job_id]
            if job.status != JobStatus.QUEUED:
                continue
            blocked = sorted(
                dep for dep in job.dependencies if jobs[dep].status in FAILED_UPSTREAM
            )
            if blocked:
                job.transition(JobStatus.SKIPPED)
                outcome.results[job_id] = RunResult(
                    job_id=job_id,
                    status=JobStatus.SKIPPED,
                    error=f"dependency {blocked[0]} {jobs[blocked[0]].status.value}",
                )
                logger.info(
                    f"Skipping {job_id}: dependency {blocked[0]} did not succeed",
                    extra={"run_id": outcome.run_id, "job_id": job_id},
                )

    async def _cancel_run(
        self,
        handle: RunHandle,
        jobs: Dict[str, Job],
        running: Dict[str, asyncio.Task],
        outcome: RunOutcome,
        started: Dict[str, float],
    ) -> None:
        logger.warning(
            f"Run {handle.run_id} superseded by {handle.superseded_by}; cancelling",
            extra={"run_id": handle.run_id},
        )
        for job_id, job in jobs.items():
            if job.status == JobStatus.QUEUED:
                job.transition(JobStatus.CANCELLED)
                outcome.results[job_id] = RunResult(
                    job_id=job_id,
                    status=JobStatus.CANCELLED,
                    attempts=job.attempt_count,
                    error=f"superseded by run {handle.superseded_by}",
                )

        in_flight = []
        for job_id, task in running.items():
            if jobs[job_id].status == JobStatus.RETRYING:
                task.cancel()
            else:
                in_flight.append(task)

        grace = self.settings.grace_period_seconds
        if grace > 0 and in_flight:
            done, _ = await asyncio.wait(in_flight, timeout=grace)
            for job_id, task in list(running.items()):
                if task in done:
                    del running[job_id]
                    self._collect(jobs[job_id], task, outcome, started)

        for task in running.values():
            task.cancel()

    def _collect(
        self, job: Job, task: asyncio.Task, outcome: RunOutcome, started: Dict[str, float]
    ) -> None:
        duration = time.monotonic() - started.get(job.id, time.monotonic())
        if task.cancelled():
            if not job.is_terminal:
                job.transition(JobStatus.CANCELLED)
            outcome.results[job.id] = RunResult(
                job_id=job.id,
                status=job.status,
                duration=duration,
                attempts=job.attempt_count,
                error="cancelled",
            )
            logger.info(
                f"Job {job.id} cancelled", extra={"run_id": outcome.run_id, "job_id": job.id}
            )
            return

        attempt = task.result()
        outcome.results[job.id] = RunResult(
            job_id=job.id,
            status=job.status,
            duration=duration,
            attempts=job.attempt_count,
            logs_ref=attempt.logs_ref,
            error=attempt.error,
        )
        log = logger.info if job.status == JobStatus.SUCCEEDED else logger.error
        log(
            f"Job {job.id} {job.status.value} after {job.attempt_count} attempt(s)"
            + (f": {attempt.error}" if attempt.error else ""),
            extra={"run_id": outcome.run_id, "job_id": job.id, "pipeline_id": job.pipeline_id},
        )

    async def _run_job(
        self,
        job: Job,
        handle: RunHandle,
        pipeline_type: PipelineType,
        flight: SingleFlight,
        shared: bool,
    ) -> _Attempt:
        if not shared:
            return await self._attempts(job, handle, pipeline_type)

        key = job.shares_result_of or job.id
        attempt = await flight.do(key, lambda: self._attempts(job, handle, pipeline_type))
        if attempt.executed_by != job.id:
            # Follower: copy the shared result
            job.attempt_count = attempt.attempts
            job.transition(attempt.status)
            logger.info(
                f"Job {job.id} shares result of {attempt.executed_by}",
                extra={"run_id": handle.run_id, "job_id": job.id},
            )
        return attempt

    def _context(self, job: Job, handle: RunHandle) -> JobContext:
        context = JobContext(run_id=handle.run_id, ref=handle.ref)
        if self.config is None:
            return context
        component = self.config.component(job.component_id)
        context.workdir = component.effective_root or "."
        context.image = self.config.images.get(job.component_id)
        stacks = self.config.stacks.get(job.component_id)
        if stacks and job.stack:
            context.stack = next((s for s in stacks if s.language == job.stack), None)
        try:
            context.prompt = self.config.pipeline(job.pipeline_id).prompt
        except KeyError:
            context.prompt = None
        return context

    async def _prepare(self, job: Job, executor, context: JobContext) -> None:
        if job.kind not in CACHEABLE_KINDS or not job.stack:
            return
        lockfile_hash = context.stack.lockfile_hash if context.stack else None
        key = (job.component_id, job.stack, lockfile_hash)
        context.prepared = await self.cache.get_or_populate(
            key, lambda: executor.prepare(job, context)
        )

    async def _attempts(
        self, job: Job, handle: RunHandle, pipeline_type: PipelineType
    ) -> _Attempt:
        """Execute ``job`` with retries. The job is Running on entry."""
        context = self._context(job, handle)
        retry_max = self.settings.retry_max
        job_logger = create_job_logger(job.id, handle.run_id, job.pipeline_id)

        for attempt in range(1, retry_max + 1):
            job.attempt_count = attempt
            context.attempt = attempt
            logs_ref = None
            try:
                executor = self.executors.for_job(job, pipeline_type)
                await self._prepare(job, executor, context)
                result = await executor.execute(job, context)
                logs_ref = result.logs_ref
                if result.ok:
                    job.transition(JobStatus.SUCCEEDED)
                    return _Attempt(JobStatus.SUCCEEDED, attempt, job.id, logs_ref)
                error_class = classify_failure(result.output)
                error: JobError = error_class(
                    f"exit code {result.exit_code}: {(result.output or '').strip()[-300:]}",
                    logs_ref,
                )
            except JobError as e:
                error = e
                logs_ref = e.logs_ref
            except Exception as e:
                job_logger.exception(f"Executor crashed on {job.id}")
                error = PermanentJobError(f"{type(e).__name__}: {e}")

            if error.retryable and attempt < retry_max:
                delay = self.settings.backoff_delay(attempt - 1)
                job.transition(JobStatus.RETRYING)
                job_logger.warning(
                    f"Job {job.id} attempt {attempt} failed transiently ({error}); "
                    f"retrying in {delay:.1f}s"
                )
                await self.sleep(delay)
                job.transition(JobStatus.RUNNING)
                continue

            job.transition(JobStatus.FAILED)
            return _Attempt(JobStatus.FAILED, attempt, job.id, logs_ref, str(error))

        raise AssertionError("unreachable")  # pragma: no cover
