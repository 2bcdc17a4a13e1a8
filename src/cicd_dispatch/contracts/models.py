from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from ..domain.models import (
    DispatchDecision,
    Event,
    EventType,
    Job,
    JobKind,
    PipelineSelection,
    PipelineType,
    Priority,
)
from ..errors import ValidationError


class EventPayload(BaseModel):
    """Event ingestion document."""

    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = Field(default=None, min_length=1)
    type: EventType
    ref: str = Field(..., min_length=1)
    changed_files: List[str] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)
    actor: str = ""
    timestamp: datetime
    schedule: Optional[str] = None
    inputs: Dict[str, str] = Field(default_factory=dict)

    def to_event(self) -> Event:
        timestamp = self.timestamp.isoformat()
        event_id = self.id or Event.compute_id(
            self.type,
            self.ref,
            self.changed_files,
            self.labels,
            self.actor,
            timestamp,
            self.schedule,
            self.inputs,
        )
        return Event(
            id=event_id,
            type=self.type,
            ref=self.ref,
            changed_files=frozenset(self.changed_files),
            labels=frozenset(self.labels),
            actor=self.actor,
            timestamp=timestamp,
            schedule=self.schedule,
            inputs=dict(self.inputs),
        )


class JobDocument(BaseModel):
    id: str
    component_id: str
    kind: JobKind
    depends_on: List[str] = Field(default_factory=list)
    template_id: str = ""
    stack: Optional[str] = None
    variant: Optional[str] = None
    required: bool = True
    execution_key: str = ""
    shares_result_of: Optional[str] = None


class PipelineDocument(BaseModel):
    id: str
    type: PipelineType
    priority: Priority
    reason: str
    jobs: List[JobDocument]


class DispatchDecisionDocument(BaseModel):
    """Dispatch decision output document."""

    event_id: str
    pipelines: List[PipelineDocument] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    trail: List[str] = Field(default_factory=list)

    @classmethod
    def from_decision(cls, decision: DispatchDecision) -> "DispatchDecisionDocument":
        return cls(
            event_id=decision.event_id,
            pipelines=[
                PipelineDocument(
                    id=sel.pipeline_id,
                    type=sel.type,
                    priority=sel.priority,
                    reason=sel.reason,
                    jobs=[
                        JobDocument(
                            id=job.id,
                            component_id=job.component_id,
                            kind=job.kind,
                            depends_on=sorted(job.dependencies),
                            template_id=job.template_id,
                            stack=job.stack,
                            variant=job.variant,
                            required=job.required,
                            execution_key=job.execution_key,
                            shares_result_of=job.shares_result_of,
                        )
                        for job in sel.jobs
                    ],
                )
                for sel in decision.selected_pipelines
            ],
            warnings=list(decision.warnings),
            trail=list(decision.trail),
        )

    def to_decision(self) -> DispatchDecision:
        return DispatchDecision(
            event_id=self.event_id,
            selected_pipelines=tuple(
                PipelineSelection(
                    pipeline_id=p.id,
                    type=p.type,
                    priority=p.priority,
                    reason=p.reason,
                    jobs=tuple(
                        Job(
                            id=j.id,
                            pipeline_id=p.id,
                            component_id=j.component_id,
                            kind=j.kind,
                            dependencies=frozenset(j.depends_on),
                            template_id=j.template_id,
                            stack=j.stack,
                            variant=j.variant,
                            required=j.required,
                            execution_key=j.execution_key,
                            shares_result_of=j.shares_result_of,
                        )
                        for j in p.jobs
                    ),
                )
                for p in self.pipelines
            ),
            warnings=tuple(self.warnings),
            trail=tuple(self.trail),
        )


def parse_event(data: Union[str, bytes, Mapping[str, Any]]) -> Event:
    """Parse an ingestion document into an Event or raise ValidationError."""
    try:
        if isinstance(data, (str, bytes)):
            payload = EventPayload.model_validate_json(data)
        else:
            payload = EventPayload.model_validate(dict(data))
    except pydantic.ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError("Malformed event", problems) from e
    return payload.to_event()


def load_event(path: Path) -> Event:
    if not path.exists():
        raise ValidationError(f"Event file not found: {path}")
    return parse_event(path.read_text(encoding="utf-8"))


def decision_to_json(decision: DispatchDecision, indent: Optional[int] = 2) -> str:
    return DispatchDecisionDocument.from_decision(decision).model_dump_json(indent=indent)


def decision_from_json(text: Union[str, bytes]) -> DispatchDecision:
    try:
        document = DispatchDecisionDocument.model_validate_json(text)
    except pydantic.ValidationError as e:
        raise ValidationError("Malformed dispatch decision", [str(e)]) from e
    return document.to_decision()


def decision_to_dict(decision: DispatchDecision) -> Dict[str, Any]:
    return json.loads(decision_to_json(decision, indent=None))


__all__ = [
    "EventPayload",
    "JobDocument",
    "PipelineDocument",
    "DispatchDecisionDocument",
    "parse_event",
    "load_event",
    "decision_to_json",
    "decision_from_json",
    "decision_to_dict",
]
