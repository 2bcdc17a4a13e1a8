"""Domain model for events, components, pipelines and jobs."""

from .models import (
    INFRASTRUCTURE,
    UNKNOWN,
    Capability,
    Component,
    ComponentSelector,
    DispatchDecision,
    Event,
    EventType,
    Job,
    JobKind,
    JobStatus,
    JobTemplate,
    Pipeline,
    PipelineSelection,
    PipelineType,
    Priority,
    RunResult,
    StackInfo,
    TriggerRule,
)

__all__ = [
    "INFRASTRUCTURE",
    "UNKNOWN",
    "Capability",
    "Component",
    "ComponentSelector",
    "DispatchDecision",
    "Event",
    "EventType",
    "Job",
    "JobKind",
    "JobStatus",
    "JobTemplate",
    "Pipeline",
    "PipelineSelection",
    "PipelineType",
    "Priority",
    "RunResult",
    "StackInfo",
    "TriggerRule",
]
