"""
Unit tests for the pipeline runner.

Tests core execution behaviour including:
- Dependency ordering and failure containment
- Retry with backoff for transient failures
- Bounded parallelism
- Shared results and build cache reuse
- Supersede cancellation
"""

import asyncio

import pytest

from cicd_dispatch.aggregator import PipelineStatus, aggregate
from cicd_dispatch.config.settings import DispatchSettings
from cicd_dispatch.dispatcher import dispatch
from cicd_dispatch.domain.models import EventType, JobKind, JobStatus
from cicd_dispatch.errors import PermanentJobError, TransientJobError
from cicd_dispatch.executors import ExecutionOutcome, ExecutorRegistry, SimulatedExecutor
from cicd_dispatch.runner.cache import BuildCache
from cicd_dispatch.runner.scheduler import PipelineRunner
from cicd_dispatch.runner.supersede import RunRegistry

REF = "refs/heads/main"


def _runner(executor, settings=None, **kwargs):
    return PipelineRunner(
        settings or DispatchSettings(), ExecutorRegistry.simulated(executor), **kwargs
    )


class TestExecution:
    @pytest.mark.asyncio
    async def test_dependencies_run_in_order(self, make_job, make_decision):
        executor = SimulatedExecutor()
        decision = make_decision(
            (
                "ci",
                [
                    make_job("deploy", JobKind.DEPLOY, deps=("build",)),
                    make_job("build", deps=("test",)),
                    make_job("test", JobKind.TEST),
                ],
            )
        )

        outcome = await _runner(executor).execute(decision, REF)

        assert executor.calls == ["ci/test", "ci/build", "ci/deploy"]
        assert all(job.status == JobStatus.SUCCEEDED for job in outcome.jobs.values())
        assert aggregate("ci", outcome.entries("ci")) == PipelineStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_permanent_failure_skips_dependents(self, make_job, make_decision, no_sleep):
        executor = SimulatedExecutor(
            {"ci/build": [ExecutionOutcome(exit_code=1, output="AssertionError: boom")]}
        )
        decision = make_decision(
            ("ci", [make_job("build"), make_job("deploy", JobKind.DEPLOY, deps=("build",))])
        )

        outcome = await _runner(executor, sleep=no_sleep).execute(decision, REF)

        assert outcome.jobs["ci/build"].status == JobStatus.FAILED
        assert outcome.jobs["ci/build"].attempt_count == 1
        assert outcome.jobs["ci/deploy"].status == JobStatus.SKIPPED
        assert "ci/build" in outcome.results["ci/deploy"].error
        assert executor.calls == ["ci/build"]
        assert aggregate("ci", outcome.entries("ci")) == PipelineStatus.FAILED

    @pytest.mark.asyncio
    async def test_independent_branch_continues(self, make_job, make_decision):
        executor = SimulatedExecutor({"ci/a": [PermanentJobError("compile error")]})
        decision = make_decision(
            (
                "ci",
                [
                    make_job("a"),
                    make_job("a-next", deps=("a",)),
                    make_job("b"),
                    make_job("b-next", deps=("b",)),
                ],
            )
        )

        outcome = await _runner(executor).execute(decision, REF)

        assert outcome.jobs["ci/a-next"].status == JobStatus.SKIPPED
        assert outcome.jobs["ci/b"].status == JobStatus.SUCCEEDED
        assert outcome.jobs["ci/b-next"].status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_decision_jobs_are_not_mutated(self, make_job, make_decision):
        job = make_job("build")
        await _runner(SimulatedExecutor()).execute(make_decision(("ci", [job])), REF)
        assert job.status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_executor_crash_is_a_permanent_failure(self, make_job, make_decision):
        executor = SimulatedExecutor({"ci/build": [KeyError("boom")]})
        outcome = await _runner(executor).execute(
            make_decision(("ci", [make_job("build")])), REF
        )

        result = outcome.results["ci/build"]
        assert result.status == JobStatus.FAILED
        assert result.attempts == 1
        assert "KeyError" in result.error


class TestRetry:
    @pytest.mark.asyncio
    async def test_transient_failures_then_success(
        self, make_job, make_decision, no_sleep, sleeps
    ):
        executor = SimulatedExecutor(
            {
                "ci/build": [
                    TransientJobError("ECONNRESET"),
                    ExecutionOutcome(exit_code=1, output="Connection reset by peer"),
                    ExecutionOutcome(exit_code=0),
                ]
            }
        )
        settings = DispatchSettings(retry_max=3, retry_backoff_base_seconds=2.0)

        outcome = await _runner(executor, settings, sleep=no_sleep).execute(
            make_decision(("ci", [make_job("build")])), REF
        )

        job = outcome.jobs["ci/build"]
        assert job.status == JobStatus.SUCCEEDED
        assert job.attempt_count == 3
        assert outcome.results["ci/build"].attempts == 3
        assert sleeps == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_job, make_decision, no_sleep, sleeps):
        executor = SimulatedExecutor({"ci/build": [TransientJobError("HTTP 503")]})
        settings = DispatchSettings(retry_max=3)

        outcome = await _runner(executor, settings, sleep=no_sleep).execute(
            make_decision(("ci", [make_job("build")])), REF
        )

        assert outcome.jobs["ci/build"].status == JobStatus.FAILED
        assert outcome.jobs["ci/build"].attempt_count == 3
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(
        self, make_job, make_decision, no_sleep, sleeps
    ):
        executor = SimulatedExecutor(
            {"ci/test": [ExecutionOutcome(exit_code=1, output="2 failed, 10 passed")]}
        )

        outcome = await _runner(executor, sleep=no_sleep).execute(
            make_decision(("ci", [make_job("test", JobKind.TEST)])), REF
        )

        assert outcome.jobs["ci/test"].attempt_count == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_assertion_failure_mentioning_timeout_is_not_retried(
        self, make_job, make_decision, no_sleep, sleeps
    ):
        output = (
            "FAILED tests/test_client.py::test_request_timeout - AssertionError: "
            "assert 1 == 2\n1 failed"
        )
        executor = SimulatedExecutor({"ci/test": [ExecutionOutcome(exit_code=1, output=output)]})

        outcome = await _runner(executor, sleep=no_sleep).execute(
            make_decision(("ci", [make_job("test", JobKind.TEST)])), REF
        )

        assert outcome.jobs["ci/test"].status == JobStatus.FAILED
        assert outcome.jobs["ci/test"].attempt_count == 1
        assert sleeps == []

    def test_backoff_is_capped(self):
        settings = DispatchSettings(retry_backoff_base_seconds=2, retry_backoff_max_seconds=5)
        assert [settings.backoff_delay(i) for i in range(4)] == [2, 4, 5, 5]


class _CountingExecutor:
    def __init__(self):
        self.active = 0
        self.peak = 0

    async def prepare(self, job, context):
        return None

    async def execute(self, job, context):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return ExecutionOutcome(exit_code=0)


class TestConcurrency:
    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_max_concurrency_is_respected(self, make_job, make_decision):
        executor = _CountingExecutor()
        runner = PipelineRunner(
            DispatchSettings(max_concurrency=2), ExecutorRegistry(default=executor)
        )
        jobs = [make_job(f"job{i}", JobKind.LINT) for i in range(6)]

        outcome = await runner.execute(make_decision(("ci", jobs)), REF)

        assert executor.peak == 2
        assert all(job.status == JobStatus.SUCCEEDED for job in outcome.jobs.values())

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_shared_job_executes_once(self, make_job, make_decision):
        executor = SimulatedExecutor(delay=0.01)
        leader = make_job("build")
        follower = make_job("build", pipeline_id="preview", shares_result_of="ci/build")

        outcome = await _runner(executor).execute(
            make_decision(("ci", [leader]), ("preview", [follower])), REF
        )

        assert executor.calls == ["ci/build"]
        assert outcome.jobs["ci/build"].status == JobStatus.SUCCEEDED
        assert outcome.jobs["preview/build"].status == JobStatus.SUCCEEDED
        assert outcome.results["preview/build"].attempts == 1

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_shared_failure_fails_both(self, make_job, make_decision):
        executor = SimulatedExecutor({"ci/build": [PermanentJobError("compile error")]})
        leader = make_job("build")
        follower = make_job("build", pipeline_id="preview", shares_result_of="ci/build")

        outcome = await _runner(executor).execute(
            make_decision(("ci", [leader]), ("preview", [follower])), REF
        )

        assert outcome.jobs["preview/build"].status == JobStatus.FAILED

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_build_cache_prepared_once_per_stack(self, make_job, make_decision):
        executor = SimulatedExecutor(delay=0.01)
        cache = BuildCache()
        jobs = [
            make_job("test", JobKind.TEST, stack="node"),
            make_job("lint", JobKind.LINT, stack="node"),
            make_job("build", JobKind.BUILD, stack="node", deps=("test",)),
        ]

        await _runner(executor, cache=cache).execute(make_decision(("ci", jobs)), REF)

        assert len(executor.prepared) == 1
        assert cache.populations == 1
        assert cache.hits == 2


class TestDispatchToRun:
    @pytest.mark.asyncio
    async def test_pull_request_run(self, config, make_event):
        decision = dispatch(
            make_event(type=EventType.PULL_REQUEST, changed_files=["frontend/a.ts"]), config
        )
        executor = SimulatedExecutor()

        outcome = await PipelineRunner(
            config.settings, ExecutorRegistry.simulated(executor), config=config
        ).execute(decision, "refs/pull/7/merge")

        assert "preview/build-node@frontend" not in executor.calls
        assert outcome.jobs["preview/deploy-preview@frontend"].status == JobStatus.SUCCEEDED
        assert aggregate("preview", outcome.entries("preview")) == PipelineStatus.SUCCESS


class TestSupersede:
    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_newer_run_cancels_older(self, make_job, make_decision):
        registry = RunRegistry("cancel")
        decision = make_decision(
            ("ci", [make_job("build"), make_job("deploy", JobKind.DEPLOY, deps=("build",))])
        )
        slow = SimulatedExecutor(delay=30)
        first = asyncio.create_task(
            _runner(slow, registry=registry).execute(decision, REF, run_id="r1")
        )
        await asyncio.sleep(0.05)
        assert slow.calls == ["ci/build"]

        second = await _runner(SimulatedExecutor(), registry=registry).execute(
            decision, REF, run_id="r2"
        )
        superseded = await first

        assert superseded.superseded
        assert superseded.superseded_by == "r2"
        assert superseded.jobs["ci/build"].status == JobStatus.CANCELLED
        assert superseded.jobs["ci/deploy"].status == JobStatus.CANCELLED
        assert (
            aggregate("ci", superseded.entries("ci"), superseded=True)
            == PipelineStatus.CANCELLED
        )
        assert all(job.status == JobStatus.SUCCEEDED for job in second.jobs.values())

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_grace_period_lets_running_job_finish(self, make_job, make_decision):
        registry = RunRegistry("cancel")
        settings = DispatchSettings(grace_period_seconds=5)
        decision = make_decision(
            ("ci", [make_job("build"), make_job("deploy", JobKind.DEPLOY, deps=("build",))])
        )
        first = asyncio.create_task(
            _runner(SimulatedExecutor(delay=0.1), settings, registry=registry).execute(
                decision, REF, run_id="r1"
            )
        )
        await asyncio.sleep(0.02)

        await _runner(SimulatedExecutor(), settings, registry=registry).execute(
            decision, REF, run_id="r2"
        )
        superseded = await first

        assert superseded.jobs["ci/build"].status == JobStatus.SUCCEEDED
        assert superseded.jobs["ci/deploy"].status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_allow_parallel_runs_both(self, make_job, make_decision):
        registry = RunRegistry("allow-parallel")
        decision = make_decision(("ci", [make_job("build")]))
        first = asyncio.create_task(
            _runner(SimulatedExecutor(delay=0.05), registry=registry).execute(
                decision, REF, run_id="r1"
            )
        )
        await asyncio.sleep(0.01)
        second = await _runner(SimulatedExecutor(), registry=registry).execute(
            decision, REF, run_id="r2"
        )

        assert not (await first).superseded
        assert second.jobs["ci/build"].status == JobStatus.SUCCEEDED
