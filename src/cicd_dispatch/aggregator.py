#!/usr/bin/env python3
"""
Result Aggregator

Reduces job results to one status per pipeline and per run, and builds the
component-grouped run report consumed by the CLI and the GitHub reporter.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .domain.models import DispatchDecision, Job, JobStatus, RunResult
from .errors import ValidationError

logger = logging.getLogger(__name__)


class PipelineStatus(str, Enum):
    SUCCESS = "Success"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def severity(self) -> int:
        return {"Success": 0, "Degraded": 1, "Cancelled": 2, "Failed": 3}[self.value]


def aggregate(
    pipeline_id: str,
    entries: Iterable[Tuple[Job, RunResult]],
    superseded: bool = False,
) -> PipelineStatus:
    """Pipeline status from its jobs' results. First matching rule wins."""
    entries = list(entries)
    required = [result.status for job, result in entries if job.required]
    optional = [result.status for job, result in entries if not job.required]

    if JobStatus.FAILED in required:
        status = PipelineStatus.FAILED
    elif superseded and any(
        s not in (JobStatus.SUCCEEDED, JobStatus.FAILED) for s in required
    ):
        status = PipelineStatus.CANCELLED
    elif any(s in (JobStatus.SKIPPED, JobStatus.CANCELLED) for s in required):
        status = PipelineStatus.FAILED
    elif any(s != JobStatus.SUCCEEDED for s in optional):
        status = PipelineStatus.DEGRADED
    else:
        status = PipelineStatus.SUCCESS

    logger.debug(f"Pipeline {pipeline_id} aggregated to {status.value}")
    return status


def run_status(statuses: Iterable[PipelineStatus]) -> PipelineStatus:
    """Worst pipeline status of a run; an empty run is a success."""
    return max(statuses, key=lambda s: s.severity, default=PipelineStatus.SUCCESS)


@dataclass
class JobSummary:
    id: str
    pipeline_id: str
    component_id: str
    kind: str
    status: str
    stack: Optional[str] = None
    required: bool = True
    attempts: int = 0
    duration: float = 0.0
    error: Optional[str] = None
    logs_ref: Optional[str] = None
    shares_result_of: Optional[str] = None


@dataclass
class PipelineSummary:
    id: str
    type: str
    priority: str
    status: str
    reason: str
    jobs: List[JobSummary] = field(default_factory=list)


@dataclass
class RunReport:
    """Serializable summary of one dispatch-and-run."""

    run_id: str
    event_id: str
    ref: str
    status: str
    superseded: bool = False
    pipelines: List[PipelineSummary] = field(default_factory=list)
    components: Dict[str, List[str]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    trail: List[str] = field(default_factory=list)

    def pipeline(self, pipeline_id: str) -> PipelineSummary:
        for pipeline in self.pipelines:
            if pipeline.id == pipeline_id:
                return pipeline
        raise KeyError(pipeline_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def write(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(), encoding="utf-8")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunReport":
        try:
            pipelines = [
                PipelineSummary(
                    **{k: v for k, v in p.items() if k != "jobs"},
                    jobs=[JobSummary(**j) for j in p.get("jobs", [])],
                )
                for p in data.get("pipelines", [])
            ]
            return cls(**{**data, "pipelines": pipelines})
        except TypeError as e:
            raise ValidationError("Malformed run report", [str(e)]) from e

    @classmethod
    def load(cls, path: Path) -> "RunReport":
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"Report file not found: {path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Report file is not valid JSON: {path}", [str(e)]) from e
        return cls.from_dict(data)


def build_report(decision: DispatchDecision, outcome) -> RunReport:
    """Combine a decision and its run outcome into a RunReport."""
    pipelines = []
    components: Dict[str, List[str]] = {}

    for selection in decision.selected_pipelines:
        entries = outcome.entries(selection.pipeline_id)
        status = aggregate(selection.pipeline_id, entries, outcome.superseded)
        jobs = []
        for job, result in entries:
            jobs.append(
                JobSummary(
                    id=job.id,
                    pipeline_id=job.pipeline_id,
                    component_id=job.component_id,
                    kind=job.kind.value,
                    status=result.status.value,
                    stack=job.stack,
                    required=job.required,
                    attempts=result.attempts,
                    duration=round(result.duration, 3),
                    error=result.error,
                    logs_ref=result.logs_ref,
                    shares_result_of=job.shares_result_of,
                )
            )
            components.setdefault(job.component_id, []).append(job.id)
        pipelines.append(
            PipelineSummary(
                id=selection.pipeline_id,
                type=selection.type.value,
                priority=selection.priority.value,
                status=status.value,
                reason=selection.reason,
                jobs=jobs,
            )
        )

    overall = run_status(PipelineStatus(p.status) for p in pipelines)
    return RunReport(
        run_id=outcome.run_id,
        event_id=decision.event_id,
        ref=outcome.ref,
        status=overall.value,
        superseded=outcome.superseded,
        pipelines=pipelines,
        components={k: sorted(v) for k, v in sorted(components.items())},
        warnings=list(decision.warnings),
        trail=list(decision.trail),
    )
