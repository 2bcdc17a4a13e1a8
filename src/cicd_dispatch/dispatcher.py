#!/usr/bin/env python3
"""
CI/CD Dispatcher

Turns one repository event into a ``DispatchDecision``: which pipelines run,
and which concrete jobs each of them instantiates. ``dispatch`` is a pure
function of (event, config); the ``Dispatcher`` wrapper adds the per-event
state machine and the append-only audit record.
"""

import logging
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .audit import AuditLog
from .change_detector import detect, explain
from .config.loader import DispatchConfig, LabelRule
from .domain.models import (
    UNKNOWN,
    DispatchDecision,
    Event,
    EventType,
    Job,
    JobKind,
    JobTemplate,
    Pipeline,
    PipelineSelection,
)
from .errors import DispatchAmbiguityWarning, ValidationError
from .runner.dag import JobGraph, topological_order
from .triggers import describe_rule, matching_rule

logger = logging.getLogger(__name__)

# Events without a change set rebuild every component
FULL_RUN_EVENTS = frozenset({EventType.TAG, EventType.SCHEDULE, EventType.MANUAL})

# Kinds that need a resolved toolchain; others run generically on unknown stacks
STACK_BOUND_KINDS = frozenset({JobKind.TEST, JobKind.BUILD})


class DispatchState(str, Enum):
    IDLE = "Idle"
    EVALUATING = "Evaluating"
    DISPATCHED = "Dispatched"
    COMPLETE = "Complete"


_NEXT_STATE = {
    DispatchState.IDLE: DispatchState.EVALUATING,
    DispatchState.EVALUATING: DispatchState.DISPATCHED,
    DispatchState.DISPATCHED: DispatchState.COMPLETE,
}


def execution_key(
    kind: str, component_id: str, stack: Optional[str], variant: Optional[str]
) -> str:
    """Pipeline-independent identity of a job's work."""
    return f"{kind}:{component_id}:{stack or '-'}:{variant or '-'}"


def validate_event(event: Event, config: DispatchConfig) -> None:
    problems = []
    if not event.id:
        problems.append("event id is empty")
    if not event.ref:
        problems.append("event ref is empty")
    if not isinstance(event.type, EventType):
        problems.append(f"unknown event type {event.type!r}")
    for path in sorted(event.changed_files):
        if not path or path.startswith("/") or ".." in path.split("/"):
            problems.append(f"changed file '{path}' is not a repository-relative path")
    if event.type == EventType.SCHEDULE and not event.schedule:
        problems.append("schedule event carries no schedule name")
    if not config.pipelines:
        problems.append("no pipelines configured")
    if not config.components:
        problems.append("no components configured")
    for component in config.components:
        if component.id not in config.stacks:
            problems.append(f"component '{component.id}' has no resolved stack entry")
    if problems:
        raise ValidationError("Cannot dispatch event", problems)


@dataclass
class _Instantiation:
    jobs: List[Job] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _active_label_rules(event: Event, config: DispatchConfig) -> Tuple[LabelRule, ...]:
    return tuple(rule for rule in config.label_rules if rule.label in event.labels)


def _removed_templates(
    pipeline: Pipeline, rules: Tuple[LabelRule, ...], notes: List[str]
) -> Set[str]:
    """Templates suppressed by a label, plus everything depending on them."""
    removed: Set[str] = set()
    order = topological_order({t.id: t.depends_on for t in pipeline.job_templates})
    for wave in order:
        for template_id in wave:
            template = pipeline.template(template_id)
            for rule in rules:
                if any(f.matches(template.kind, template.variant, template.id) for f in rule.suppress):
                    removed.add(template_id)
                    notes.append(
                        f"{pipeline.id}/{template_id}: suppressed by label '{rule.label}'"
                    )
                    break
            else:
                blocked = sorted(template.depends_on & removed)
                if blocked:
                    removed.add(template_id)
                    notes.append(
                        f"{pipeline.id}/{template_id}: removed, depends on suppressed "
                        f"{', '.join(blocked)}"
                    )
    return removed


def _instantiate(
    pipeline: Pipeline, event: Event, config: DispatchConfig, affected: Set[str]
) -> _Instantiation:
    result = _Instantiation()
    rules = _active_label_rules(event, config)
    removed = _removed_templates(pipeline, rules, result.notes)

    # (template_id, component_id) -> [(job_id, stack)]
    created: Dict[Tuple[str, str], List[Tuple[str, Optional[str]]]] = {}
    drafts: List[Tuple[JobTemplate, str, Optional[str], str]] = []

    for template in pipeline.job_templates:
        if template.id in removed:
            continue
        if template.optional:
            forcing = [r.label for r in rules if r.forces(template)]
            if not forcing:
                result.notes.append(
                    f"{pipeline.id}/{template.id}: optional, not forced by any label"
                )
                continue
            result.notes.append(
                f"{pipeline.id}/{template.id}: forced by label '{forcing[0]}'"
            )

        capability = template.kind.required_capability
        for component_id in sorted(affected):
            component = config.component(component_id)
            stacks = config.stacks.get(component_id, UNKNOWN)
            if not template.component_selector.matches(component, stacks):
                continue
            if capability is not None and capability not in component.capabilities:
                continue

            if not template.instantiate_per_stack:
                job_id = f"{pipeline.id}/{template.id}@{component_id}"
                drafts.append((template, component_id, None, job_id))
                created.setdefault((template.id, component_id), []).append((job_id, None))
                continue

            if not stacks:
                if template.kind in STACK_BOUND_KINDS:
                    message = (
                        f"{pipeline.id}/{template.id}: component '{component_id}' has an "
                        f"unknown stack; stack-specific job omitted"
                    )
                    result.warnings.append(message)
                    result.notes.append(message)
                    continue
                # Unknown stack: fall back to one generic job for the component
                job_id = f"{pipeline.id}/{template.id}@{component_id}"
                result.notes.append(f"{job_id}: unknown stack, running stack-agnostic")
                drafts.append((template, component_id, None, job_id))
                created.setdefault((template.id, component_id), []).append((job_id, None))
                continue

            languages = template.component_selector.languages
            for stack in stacks:
                if languages and stack.language not in languages:
                    continue
                job_id = f"{pipeline.id}/{template.id}-{stack.language}@{component_id}"
                drafts.append((template, component_id, stack.language, job_id))
                created.setdefault((template.id, component_id), []).append(
                    (job_id, stack.language)
                )

    for template, component_id, stack, job_id in drafts:
        dependencies: Set[str] = set()
        for dep_id in sorted(template.depends_on):
            candidates = created.get((dep_id, component_id), [])
            if not candidates:
                result.notes.append(
                    f"{job_id}: dependency '{dep_id}' not instantiated for "
                    f"'{component_id}'; edge dropped"
                )
                continue
            same_stack = [jid for jid, s in candidates if stack is not None and s == stack]
            dependencies.update(same_stack or [jid for jid, _ in candidates])

        result.jobs.append(
            Job(
                id=job_id,
                pipeline_id=pipeline.id,
                component_id=component_id,
                kind=template.kind,
                dependencies=frozenset(dependencies),
                template_id=template.id,
                stack=stack,
                variant=template.variant,
                required=template.required,
                execution_key=execution_key(
                    template.kind.value, component_id, stack, template.variant
                ),
            )
        )

    JobGraph(result.jobs).validate()
    return result


def dispatch(event: Event, config: DispatchConfig) -> DispatchDecision:
    """Compute the dispatch decision for ``event``. Pure: no I/O, no state."""
    validate_event(event, config)

    trail: List[str] = []
    warnings: List[str] = []

    if event.changed_files:
        affected = detect(event.changed_files, config.components, config.shared_patterns)
        for path, ids in explain(
            event.changed_files, config.components, config.shared_patterns
        ).items():
            trail.append(f"path {path} -> {', '.join(ids)}")
    elif event.type in FULL_RUN_EVENTS:
        affected = {c.id for c in config.components}
        trail.append(f"{event.type.value} event without changes: all components affected")
    else:
        affected = set()
        trail.append("no changed files: no components affected")

    trail.append("affected components: " + (", ".join(sorted(affected)) or "<none>"))

    candidates = []
    for index, pipeline in enumerate(config.pipelines):
        rule = matching_rule(pipeline, event)
        if rule is None:
            trail.append(f"pipeline {pipeline.id}: no trigger rule matches")
            continue
        inst = _instantiate(pipeline, event, config, affected)
        trail.extend(inst.notes)
        warnings.extend(inst.warnings)
        if not inst.jobs:
            trail.append(f"pipeline {pipeline.id}: triggered but resolved zero jobs; excluded")
            continue
        components = sorted({job.component_id for job in inst.jobs})
        reason = f"{describe_rule(rule)}; components: {', '.join(components)}"
        trail.append(f"pipeline {pipeline.id}: selected ({len(inst.jobs)} jobs)")
        candidates.append((index, pipeline, reason, inst.jobs))

    candidates.sort(key=lambda c: (-c[1].priority.rank, c[0]))

    leaders: Dict[str, Job] = {}
    selections = []
    for _, pipeline, reason, jobs in candidates:
        for job in jobs:
            leader = leaders.get(job.execution_key)
            if leader is not None and leader.pipeline_id != pipeline.id:
                job.shares_result_of = leader.id
                trail.append(f"{job.id}: shares result of {leader.id}")
            else:
                leaders.setdefault(job.execution_key, job)
        selections.append(
            PipelineSelection(
                pipeline_id=pipeline.id,
                type=pipeline.type,
                priority=pipeline.priority,
                reason=reason,
                jobs=tuple(jobs),
            )
        )

    if not selections and event.type != EventType.SCHEDULE:
        warnings.append(
            f"{DispatchAmbiguityWarning.__name__}: no pipeline selected for "
            f"{event.type.value} event on {event.ref}"
        )

    return DispatchDecision(
        event_id=event.id,
        selected_pipelines=tuple(selections),
        warnings=tuple(warnings),
        trail=tuple(trail),
    )


class Dispatcher:
    """Per-event dispatcher: Idle -> Evaluating -> Dispatched -> Complete."""

    def __init__(self, config: DispatchConfig, audit_log: Optional[AuditLog] = None):
        self.config = config
        self.audit_log = audit_log
        self.state = DispatchState.IDLE
        self.decision: Optional[DispatchDecision] = None

    def _advance(self, expected: DispatchState) -> None:
        if self.state != expected:
            raise RuntimeError(
                f"Dispatcher is {self.state.value}, expected {expected.value}"
            )
        self.state = _NEXT_STATE[expected]

    def evaluate(self, event: Event) -> DispatchDecision:
        self._advance(DispatchState.IDLE)
        decision = dispatch(event, self.config)
        self.decision = decision
        self._advance(DispatchState.EVALUATING)

        for warning in decision.warnings:
            logger.warning(warning, extra={"event_id": event.id})
        if not decision.selected_pipelines and event.type != EventType.SCHEDULE:
            warnings.warn(
                f"No pipeline selected for {event.type.value} event on {event.ref}",
                DispatchAmbiguityWarning,
                stacklevel=2,
            )
        logger.info(
            f"Dispatched event {event.id}: "
            f"{len(decision.selected_pipelines)} pipelines, {len(decision.all_jobs())} jobs",
            extra={"event_id": event.id},
        )
        return decision

    def record(self, event: Event) -> None:
        """Durably record the decision, then mark dispatch complete."""
        if self.decision is None:
            raise RuntimeError("No decision to record")
        if self.audit_log is not None:
            from .contracts.models import decision_to_dict

            self.audit_log.record(
                action="dispatch",
                resource="event",
                resource_id=event.id,
                actor=event.actor,
                details={
                    "event_type": event.type.value,
                    "ref": event.ref,
                    "decision": decision_to_dict(self.decision),
                },
            )
        self._advance(DispatchState.DISPATCHED)

    def run(self, event: Event) -> DispatchDecision:
        decision = self.evaluate(event)
        self.record(event)
        return decision
