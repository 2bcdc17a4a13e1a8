#!/usr/bin/env python3
"""
Dispatch Config Loader

Loads component and pipeline definitions from the dispatch YAML file,
validates them against the bundled JSON Schema and resolves component stacks
once at load time. The result is read-only for the lifetime of the process.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import jsonschema
import yaml

from ..domain.models import (
    INFRASTRUCTURE,
    Capability,
    Component,
    ComponentSelector,
    EventType,
    JobKind,
    JobTemplate,
    Pipeline,
    PipelineType,
    Priority,
    StackResolution,
    TriggerRule,
)
from ..errors import ValidationError
from ..runner.dag import find_cycle
from ..stack_resolver import StackResolver
from .settings import DispatchSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(".ci/dispatch.yaml")
SCHEMA_PATH = Path(__file__).resolve().parent.parent / "schemas" / "dispatch_config.schema.json"


@dataclass(frozen=True)
class JobFilter:
    """Matches jobs by kind, variant and/or template id."""

    kind: Optional[JobKind] = None
    variant: Optional[str] = None
    template: Optional[str] = None

    def matches(self, kind: JobKind, variant: Optional[str], template_id: str) -> bool:
        if self.kind is not None and kind != self.kind:
            return False
        if self.variant is not None and variant != self.variant:
            return False
        if self.template is not None and template_id != self.template:
            return False
        return True


@dataclass(frozen=True)
class LabelRule:
    """Label-driven gating: suppress job kinds or force optional templates."""

    label: str
    suppress: Tuple[JobFilter, ...] = ()
    force_tags: Tuple[str, ...] = ()
    force_templates: Tuple[str, ...] = ()

    def forces(self, template: JobTemplate) -> bool:
        return template.id in self.force_templates or bool(
            set(self.force_tags) & template.tags
        )


DEFAULT_LABEL_RULES: Tuple[LabelRule, ...] = (
    LabelRule(
        label="skip-preview",
        suppress=(JobFilter(kind=JobKind.DEPLOY, variant="preview"),),
    ),
    LabelRule(label="test:full", force_tags=("comprehensive",)),
)


@dataclass(frozen=True)
class DispatchConfig:
    """Everything dispatch() needs besides the event."""

    components: Tuple[Component, ...]
    pipelines: Tuple[Pipeline, ...]
    shared_patterns: Tuple[str, ...] = ()
    label_rules: Tuple[LabelRule, ...] = DEFAULT_LABEL_RULES
    stacks: Dict[str, StackResolution] = field(default_factory=dict)
    settings: DispatchSettings = field(default_factory=DispatchSettings)
    commands: Dict[str, Dict[str, str]] = field(default_factory=dict)
    images: Dict[str, str] = field(default_factory=dict)
    repo_root: str = "."

    def component(self, component_id: str) -> Component:
        for component in self.components:
            if component.id == component_id:
                return component
        if component_id == INFRASTRUCTURE:
            return Component(id=INFRASTRUCTURE, path_patterns=(), capabilities=frozenset())
        raise KeyError(component_id)

    def pipeline(self, pipeline_id: str) -> Pipeline:
        for pipeline in self.pipelines:
            if pipeline.id == pipeline_id:
                return pipeline
        raise KeyError(pipeline_id)


def _load_schema() -> Dict[str, Any]:
    with SCHEMA_PATH.open("r", encoding="utf-8") as f:
        return json.load(f)


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ValidationError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Config file is not valid YAML: {path}", [str(e)]) from e
    if not isinstance(data, dict):
        raise ValidationError(f"Config file must contain a mapping: {path}")
    return data


def validate_schema(data: Mapping[str, Any]) -> None:
    """Validate raw config data against the bundled JSON Schema."""
    validator = jsonschema.Draft7Validator(_load_schema())
    problems = [
        f"{'/'.join(str(p) for p in error.absolute_path) or '<root>'}: {error.message}"
        for error in sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    ]
    if problems:
        raise ValidationError("Config does not match schema", problems)


def _parse_component(raw: Mapping[str, Any]) -> Component:
    capabilities = raw.get("capabilities")
    return Component(
        id=raw["id"],
        path_patterns=tuple(raw.get("paths", ())),
        languages=frozenset(raw.get("languages", ())),
        capabilities=(
            frozenset(Capability(c) for c in capabilities)
            if capabilities is not None
            else frozenset(Capability)
        ),
        root=raw.get("root", ""),
    )


def _parse_trigger(raw: Mapping[str, Any]) -> TriggerRule:
    return TriggerRule(
        events=frozenset(EventType(e) for e in raw["events"]),
        refs=tuple(raw.get("refs", ())),
        schedules=tuple(raw.get("schedules", ())),
        inputs={str(k): str(v) for k, v in (raw.get("inputs") or {}).items()},
        labels=tuple(raw.get("labels", ())),
    )


def _parse_template(raw: Mapping[str, Any]) -> JobTemplate:
    select = raw.get("select") or {}
    return JobTemplate(
        id=raw["id"],
        kind=JobKind(raw["kind"]),
        component_selector=ComponentSelector(
            ids=tuple(select.get("components", ("*",))),
            languages=frozenset(select.get("languages", ())),
            capabilities=frozenset(Capability(c) for c in select.get("capabilities", ())),
        ),
        depends_on=frozenset(raw.get("depends_on", ())),
        variant=raw.get("variant"),
        per_stack=raw.get("per_stack"),
        required=bool(raw.get("required", True)),
        optional=bool(raw.get("optional", False)),
        tags=frozenset(raw.get("tags", ())),
    )


def _parse_pipeline(raw: Mapping[str, Any]) -> Pipeline:
    return Pipeline(
        id=raw["id"],
        type=PipelineType(raw["type"]),
        trigger_rules=tuple(_parse_trigger(t) for t in raw.get("triggers", ())),
        job_templates=tuple(_parse_template(j) for j in raw.get("jobs", ())),
        priority=Priority(raw.get("priority", "medium")),
        prompt=raw.get("prompt"),
        description=raw.get("description", ""),
    )


def _parse_label_rules(raw: Optional[Mapping[str, Any]]) -> Tuple[LabelRule, ...]:
    if raw is None:
        return DEFAULT_LABEL_RULES
    rules = []
    for label, body in sorted(raw.items()):
        body = body or {}
        rules.append(
            LabelRule(
                label=label,
                suppress=tuple(
                    JobFilter(
                        kind=JobKind(f["kind"]) if f.get("kind") else None,
                        variant=f.get("variant"),
                        template=f.get("template"),
                    )
                    for f in body.get("suppress", ())
                ),
                force_tags=tuple(body.get("force_tags", ())),
                force_templates=tuple(body.get("force_templates", ())),
            )
        )
    return tuple(rules)


def _semantic_problems(
    components: Tuple[Component, ...], pipelines: Tuple[Pipeline, ...]
) -> List[str]:
    problems = []

    seen = set()
    for component in components:
        if component.id == INFRASTRUCTURE:
            problems.append(f"component id '{INFRASTRUCTURE}' is reserved")
        if component.id in seen:
            problems.append(f"duplicate component id '{component.id}'")
        seen.add(component.id)
        if not component.path_patterns:
            problems.append(f"component '{component.id}' has no path patterns")

    known_components = seen | {INFRASTRUCTURE, "*"}
    pipeline_ids = set()
    for pipeline in pipelines:
        if pipeline.id in pipeline_ids:
            problems.append(f"duplicate pipeline id '{pipeline.id}'")
        pipeline_ids.add(pipeline.id)
        if not pipeline.trigger_rules:
            problems.append(f"pipeline '{pipeline.id}' has no triggers")

        template_ids = [t.id for t in pipeline.job_templates]
        for template_id in sorted({t for t in template_ids if template_ids.count(t) > 1}):
            problems.append(f"pipeline '{pipeline.id}' has duplicate job '{template_id}'")

        for template in pipeline.job_templates:
            for dep in sorted(template.depends_on):
                if dep not in template_ids:
                    problems.append(
                        f"job '{pipeline.id}/{template.id}' depends on unknown job '{dep}'"
                    )
            for selected in template.component_selector.ids:
                if selected not in known_components:
                    problems.append(
                        f"job '{pipeline.id}/{template.id}' selects unknown component '{selected}'"
                    )

        cycle = find_cycle({t.id: t.depends_on for t in pipeline.job_templates})
        if cycle:
            problems.append(
                f"pipeline '{pipeline.id}' has a dependency cycle: {' -> '.join(cycle)}"
            )

    return problems


def parse_config(
    data: Mapping[str, Any],
    repo_root: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> DispatchConfig:
    """Validate and parse raw config data into a DispatchConfig."""
    validate_schema(data)

    components = tuple(_parse_component(c) for c in data.get("components", ()))
    pipelines = tuple(_parse_pipeline(p) for p in data.get("pipelines", ()))

    problems = _semantic_problems(components, pipelines)
    if problems:
        raise ValidationError("Invalid dispatch configuration", problems)

    settings = DispatchSettings.from_mapping(data.get("settings"), env=env)
    root = Path(repo_root) if repo_root is not None else Path.cwd()
    stacks = StackResolver(root).resolve_all(components)

    logger.info(
        f"Loaded {len(components)} components and {len(pipelines)} pipelines "
        f"(repo root {root})"
    )

    return DispatchConfig(
        components=components,
        pipelines=pipelines,
        shared_patterns=tuple(data.get("shared_patterns", ())),
        label_rules=_parse_label_rules(data.get("labels")),
        stacks=stacks,
        settings=settings,
        commands={
            str(lang): {str(k): str(v) for k, v in (cmds or {}).items()}
            for lang, cmds in (data.get("commands") or {}).items()
        },
        images={c["id"]: c["image"] for c in data.get("components", ()) if c.get("image")},
        repo_root=str(root),
    )


def load_config(
    path: Optional[Path] = None,
    repo_root: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> DispatchConfig:
    """Load the dispatch config file. Any problem raises ValidationError."""
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    data = _read_yaml(config_path)
    return parse_config(data, repo_root=repo_root, env=os.environ if env is None else env)
