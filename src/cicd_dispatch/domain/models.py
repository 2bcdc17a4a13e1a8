"""
Core domain types for the dispatch engine.

Configuration types (components, pipelines, templates) and events are frozen
once created. ``Job`` is the only mutable type: it is created by the
dispatcher and mutated exclusively by the pipeline runner through
``Job.transition``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple, Union

from ..utils.globs import literal_prefix

INFRASTRUCTURE = "infrastructure"


class EventType(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    TAG = "tag"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class PipelineType(str, Enum):
    CI = "ci"
    RELEASE = "release"
    MAINTENANCE = "maintenance"
    EVOLUTION = "evolution"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Higher rank runs first."""
        return {"critical": 4, "high": 3, "medium": 2, "low": 1}[self.value]


class Capability(str, Enum):
    TEST = "test"
    BUILD = "build"
    DEPLOY = "deploy"


class JobKind(str, Enum):
    TEST = "test"
    LINT = "lint"
    BUILD = "build"
    DEPLOY = "deploy"
    PUBLISH = "publish"

    @property
    def required_capability(self) -> Optional[Capability]:
        """Component capability a job of this kind needs (lint needs none)."""
        return {
            "test": Capability.TEST,
            "build": Capability.BUILD,
            "deploy": Capability.DEPLOY,
            "publish": Capability.DEPLOY,
        }.get(self.value)


class JobStatus(str, Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"
    RETRYING = "Retrying"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)

_ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {
        JobStatus.SUCCEEDED,
        JobStatus.FAILED,
        JobStatus.RETRYING,
        JobStatus.CANCELLED,
    },
    JobStatus.RETRYING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
}


def freeze_pairs(
    value: Union[Mapping[str, str], Iterable[Tuple[str, str]]]
) -> Tuple[Tuple[str, str], ...]:
    """Sorted, hashable key/value pairs from a mapping or pair iterable."""
    items = value.items() if isinstance(value, Mapping) else value
    return tuple(sorted((str(k), str(v)) for k, v in items))


@dataclass(frozen=True)
class Event:
    """A repository event. Immutable once created."""

    id: str
    type: EventType
    ref: str
    changed_files: FrozenSet[str] = frozenset()
    labels: FrozenSet[str] = frozenset()
    actor: str = ""
    timestamp: str = ""
    schedule: Optional[str] = None
    inputs: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "inputs", freeze_pairs(self.inputs))

    @staticmethod
    def compute_id(
        type: EventType,
        ref: str,
        changed_files,
        labels,
        actor: str,
        timestamp: str,
        schedule: Optional[str] = None,
        inputs: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Derive a stable id from the event content."""
        canonical = json.dumps(
            {
                "type": EventType(type).value,
                "ref": ref,
                "changed_files": sorted(changed_files),
                "labels": sorted(labels),
                "actor": actor,
                "timestamp": timestamp,
                "schedule": schedule,
                "inputs": dict(freeze_pairs(inputs or ())),
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class Component:
    """A logical, independently buildable/testable/deployable unit."""

    id: str
    path_patterns: Tuple[str, ...]
    languages: FrozenSet[str] = frozenset()
    capabilities: FrozenSet[Capability] = frozenset(Capability)
    root: str = ""

    @property
    def effective_root(self) -> str:
        """Directory probed for stack signature files."""
        if self.root:
            return self.root.strip("/")
        if not self.path_patterns:
            return ""
        prefix = literal_prefix(self.path_patterns[0])
        return prefix.rsplit("/", 1)[0] if "/" in prefix else ""


@dataclass(frozen=True)
class StackInfo:
    """Language / package manager / build tool signature of a component."""

    language: str
    package_manager: Optional[str] = None
    build_tool: Optional[str] = None
    lockfile_hash: Optional[str] = None


class UnknownStack:
    """Sentinel for a component whose stack could not be resolved."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "Unknown"

    def __bool__(self) -> bool:
        return False


UNKNOWN = UnknownStack()

StackResolution = Union[Tuple[StackInfo, ...], UnknownStack]


@dataclass(frozen=True)
class ComponentSelector:
    """Which components a job template applies to. All criteria must match."""

    ids: Tuple[str, ...] = ("*",)
    languages: FrozenSet[str] = frozenset()
    capabilities: FrozenSet[Capability] = frozenset()

    def matches(self, component: Component, stacks: StackResolution = UNKNOWN) -> bool:
        # "*" covers configured components; infrastructure must be named
        if component.id not in self.ids and (
            "*" not in self.ids or component.id == INFRASTRUCTURE
        ):
            return False
        if self.languages:
            known = set(component.languages)
            if stacks:
                known.update(s.language for s in stacks)
            if not known & self.languages:
                return False
        return self.capabilities <= component.capabilities


@dataclass(frozen=True)
class TriggerRule:
    """Predicate over an event. Empty criteria match anything."""

    events: FrozenSet[EventType]
    refs: Tuple[str, ...] = ()
    schedules: Tuple[str, ...] = ()
    inputs: Tuple[Tuple[str, str], ...] = ()
    labels: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "inputs", freeze_pairs(self.inputs))


_PER_STACK_KINDS = frozenset({JobKind.TEST, JobKind.LINT, JobKind.BUILD})


@dataclass(frozen=True)
class JobTemplate:
    """Template instantiated into one job per matching component (and stack)."""

    id: str
    kind: JobKind
    component_selector: ComponentSelector = ComponentSelector()
    depends_on: FrozenSet[str] = frozenset()
    variant: Optional[str] = None
    per_stack: Optional[bool] = None
    required: bool = True
    optional: bool = False
    tags: FrozenSet[str] = frozenset()

    @property
    def instantiate_per_stack(self) -> bool:
        if self.per_stack is not None:
            return self.per_stack
        return self.kind in _PER_STACK_KINDS


@dataclass(frozen=True)
class Pipeline:
    """Trigger-activated template for a category of work."""

    id: str
    type: PipelineType
    trigger_rules: Tuple[TriggerRule, ...]
    job_templates: Tuple[JobTemplate, ...]
    priority: Priority = Priority.MEDIUM
    prompt: Optional[str] = None
    description: str = ""

    def template(self, template_id: str) -> JobTemplate:
        for template in self.job_templates:
            if template.id == template_id:
                return template
        raise KeyError(template_id)


@dataclass
class Job:
    """Concrete instantiation of a JobTemplate for one component in one run."""

    id: str
    pipeline_id: str
    component_id: str
    kind: JobKind
    status: JobStatus = JobStatus.QUEUED
    dependencies: FrozenSet[str] = frozenset()
    attempt_count: int = 0
    template_id: str = ""
    stack: Optional[str] = None
    variant: Optional[str] = None
    required: bool = True
    execution_key: str = ""
    shares_result_of: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: JobStatus) -> None:
        """Move to ``status``, enforcing the job state machine."""
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise RuntimeError(
                f"Illegal job transition for {self.id}: "
                f"{self.status.value} -> {status.value}"
            )
        self.status = status


@dataclass(frozen=True)
class PipelineSelection:
    """One selected pipeline with the reason it was selected and its jobs."""

    pipeline_id: str
    type: PipelineType
    priority: Priority
    reason: str
    jobs: Tuple[Job, ...]


@dataclass(frozen=True)
class DispatchDecision:
    """Deterministic mapping of one event to pipelines and jobs."""

    event_id: str
    selected_pipelines: Tuple[PipelineSelection, ...] = ()
    warnings: Tuple[str, ...] = ()
    trail: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.selected_pipelines

    def all_jobs(self) -> Tuple[Job, ...]:
        return tuple(job for sel in self.selected_pipelines for job in sel.jobs)

    def selection(self, pipeline_id: str) -> PipelineSelection:
        for sel in self.selected_pipelines:
            if sel.pipeline_id == pipeline_id:
                return sel
        raise KeyError(pipeline_id)


@dataclass(frozen=True)
class RunResult:
    """Terminal record of one job execution."""

    job_id: str
    status: JobStatus
    duration: float = 0.0
    attempts: int = 0
    logs_ref: Optional[str] = None
    error: Optional[str] = None


__all__ = [
    "INFRASTRUCTURE",
    "EventType",
    "PipelineType",
    "Priority",
    "Capability",
    "JobKind",
    "JobStatus",
    "TERMINAL_STATUSES",
    "Event",
    "Component",
    "StackInfo",
    "UnknownStack",
    "UNKNOWN",
    "StackResolution",
    "ComponentSelector",
    "TriggerRule",
    "JobTemplate",
    "Pipeline",
    "Job",
    "PipelineSelection",
    "DispatchDecision",
    "RunResult",
]
