"""Trigger rule evaluation: which pipelines an event activates."""

from typing import Optional

from .domain.models import Event, EventType, Pipeline, TriggerRule
from .utils.globs import ref_matches


def rule_matches(rule: TriggerRule, event: Event) -> bool:
    if event.type not in rule.events:
        return False
    if rule.refs and not any(ref_matches(event.ref, p) for p in rule.refs):
        return False
    if rule.schedules and event.type == EventType.SCHEDULE:
        if event.schedule not in rule.schedules:
            return False
    given = dict(event.inputs)
    for key, expected in rule.inputs:
        if given.get(key) != expected:
            return False
    if rule.labels and not set(rule.labels) & event.labels:
        return False
    return True


def describe_rule(rule: TriggerRule) -> str:
    parts = ["on " + "|".join(sorted(e.value for e in rule.events))]
    if rule.refs:
        parts.append("ref in [" + ", ".join(rule.refs) + "]")
    if rule.schedules:
        parts.append("schedule in [" + ", ".join(rule.schedules) + "]")
    if rule.inputs:
        parts.append(
            "inputs " + ", ".join(f"{k}={v}" for k, v in rule.inputs)
        )
    if rule.labels:
        parts.append("label any of [" + ", ".join(rule.labels) + "]")
    return " ".join(parts)


def matching_rule(pipeline: Pipeline, event: Event) -> Optional[TriggerRule]:
    """First trigger rule of ``pipeline`` that matches ``event``."""
    for rule in pipeline.trigger_rules:
        if rule_matches(rule, event):
            return rule
    return None
