"""
Unit tests for result aggregation and run reports.
"""

import json

import pytest

from cicd_dispatch.aggregator import PipelineStatus, RunReport, aggregate, build_report, run_status
from cicd_dispatch.domain.models import JobStatus, RunResult
from cicd_dispatch.errors import ValidationError
from cicd_dispatch.runner.scheduler import RunOutcome

S, F, K, C = JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED


@pytest.fixture
def entries(make_job):
    """Build (job, result) pairs from (status, required) tuples."""

    def _entries(*specs):
        pairs = []
        for index, (status, required) in enumerate(specs):
            job = make_job(f"job{index}", required=required)
            pairs.append((job, RunResult(job_id=job.id, status=status)))
        return pairs

    return _entries


class TestAggregate:
    @pytest.mark.parametrize(
        "specs,superseded,expected",
        [
            ([(S, True), (S, True)], False, PipelineStatus.SUCCESS),
            ([(S, True), (F, True)], False, PipelineStatus.FAILED),
            ([(S, True), (K, True)], False, PipelineStatus.FAILED),
            ([(S, True), (F, False)], False, PipelineStatus.DEGRADED),
            ([(S, True), (K, False)], False, PipelineStatus.DEGRADED),
            ([(S, True), (C, True)], True, PipelineStatus.CANCELLED),
            ([(F, True), (C, True)], True, PipelineStatus.FAILED),
            ([(S, True), (C, True)], False, PipelineStatus.FAILED),
            ([(S, True), (C, False)], True, PipelineStatus.DEGRADED),
            ([], False, PipelineStatus.SUCCESS),
        ],
    )
    def test_rules(self, entries, specs, superseded, expected):
        assert aggregate("ci", entries(*specs), superseded) == expected

    def test_run_status_is_worst_pipeline(self):
        assert (
            run_status([PipelineStatus.SUCCESS, PipelineStatus.DEGRADED])
            == PipelineStatus.DEGRADED
        )
        assert (
            run_status([PipelineStatus.CANCELLED, PipelineStatus.FAILED])
            == PipelineStatus.FAILED
        )
        assert run_status([]) == PipelineStatus.SUCCESS


class TestRunReport:
    @pytest.fixture
    def report(self, make_job, make_decision):
        build = make_job("build", component_id="web", stack="node")
        lint = make_job("lint", component_id="api", required=False)
        decision = make_decision(("ci", [build, lint]))
        build.status, lint.status = S, F
        outcome = RunOutcome(
            run_id="run-1",
            ref="refs/heads/main",
            jobs={build.id: build, lint.id: lint},
            results={
                build.id: RunResult(build.id, S, duration=1.23456, attempts=1),
                lint.id: RunResult(lint.id, F, attempts=1, error="exit code 1"),
            },
        )
        return build_report(decision, outcome)

    def test_build_report(self, report):
        assert report.status == "Degraded"
        assert report.pipeline("ci").status == "Degraded"
        assert report.components == {"api": ["ci/lint"], "web": ["ci/build"]}
        build = report.pipeline("ci").jobs[0]
        assert build.duration == 1.235
        assert build.stack == "node"

    def test_round_trip(self, report, tmp_path):
        path = tmp_path / "reports" / "run.json"
        report.write(path)

        loaded = RunReport.load(path)

        assert loaded == report
        assert json.loads(path.read_text())["run_id"] == "run-1"

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            RunReport.load(tmp_path / "missing.json")

    def test_load_malformed(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"run_id": "x", "unexpected": 1}')
        with pytest.raises(ValidationError, match="Malformed"):
            RunReport.load(path)
