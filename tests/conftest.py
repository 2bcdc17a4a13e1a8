"""
Shared test configuration for the dispatch engine.

Provides:
- a sample repository checkout (node frontend, python backend)
- the matching dispatch config, as raw data, YAML file and parsed config
- event factories and a recording no-op sleep for retry tests
"""

import copy
import json
from pathlib import Path
from typing import Any, Dict, List

import pytest
import yaml

from cicd_dispatch.config.loader import parse_config
from cicd_dispatch.domain.models import (
    DispatchDecision,
    Event,
    EventType,
    Job,
    JobKind,
    PipelineSelection,
    PipelineType,
    Priority,
)

SAMPLE_CONFIG: Dict[str, Any] = {
    "settings": {"max_concurrency": 4, "retry_backoff_base_seconds": 2},
    "shared_patterns": ["shared/**"],
    "components": [
        {"id": "frontend", "paths": ["frontend/**"], "image": "ghcr.io/acme/frontend"},
        {"id": "backend", "paths": ["backend/**"], "image": "ghcr.io/acme/backend"},
    ],
    "pipelines": [
        {
            "id": "ci",
            "type": "ci",
            "priority": "high",
            "triggers": [{"events": ["push", "pull_request"]}],
            "jobs": [
                {"id": "lint", "kind": "lint"},
                {"id": "test", "kind": "test"},
                {
                    "id": "test-e2e",
                    "kind": "test",
                    "optional": True,
                    "tags": ["comprehensive"],
                    "depends_on": ["test"],
                },
                {"id": "build", "kind": "build", "depends_on": ["test"]},
            ],
        },
        {
            "id": "preview",
            "type": "ci",
            "priority": "medium",
            "triggers": [{"events": ["pull_request"]}],
            "jobs": [
                {"id": "build", "kind": "build"},
                {
                    "id": "deploy-preview",
                    "kind": "deploy",
                    "variant": "preview",
                    "depends_on": ["build"],
                },
            ],
        },
        {
            "id": "release",
            "type": "release",
            "priority": "critical",
            "triggers": [{"events": ["tag"], "refs": ["v*"]}],
            "jobs": [
                {"id": "build", "kind": "build"},
                {"id": "publish", "kind": "publish", "depends_on": ["build"]},
            ],
        },
        {
            "id": "nightly",
            "type": "maintenance",
            "priority": "low",
            "triggers": [{"events": ["schedule"], "schedules": ["nightly"]}],
            "jobs": [{"id": "test", "kind": "test"}],
        },
    ],
}


@pytest.fixture
def repo_root(tmp_path: Path) -> Path:
    """Checkout with a node frontend and a python backend."""
    root = tmp_path / "repo"
    (root / "frontend").mkdir(parents=True)
    (root / "frontend" / "package.json").write_text('{"name": "frontend"}')
    (root / "frontend" / "package-lock.json").write_text('{"lockfileVersion": 3}')
    (root / "backend").mkdir()
    (root / "backend" / "pyproject.toml").write_text("[project]\nname = 'backend'\n")
    (root / "shared").mkdir()
    return root


@pytest.fixture
def config_data() -> Dict[str, Any]:
    return copy.deepcopy(SAMPLE_CONFIG)


@pytest.fixture
def config(config_data, repo_root):
    return parse_config(config_data, repo_root=repo_root, env={})


@pytest.fixture
def config_file(tmp_path: Path, config_data) -> Path:
    path = tmp_path / ".ci" / "dispatch.yaml"
    path.parent.mkdir(parents=True)
    path.write_text(yaml.safe_dump(config_data, sort_keys=False))
    return path


@pytest.fixture
def make_event():
    """Factory for events with sensible defaults."""

    def _make(
        type: EventType = EventType.PUSH,
        ref: str = "refs/heads/main",
        changed_files=(),
        labels=(),
        **kwargs,
    ) -> Event:
        return Event(
            id=kwargs.pop("id", "evt-1"),
            type=type,
            ref=ref,
            changed_files=frozenset(changed_files),
            labels=frozenset(labels),
            actor=kwargs.pop("actor", "dev"),
            timestamp=kwargs.pop("timestamp", "2024-05-01T12:00:00+00:00"),
            **kwargs,
        )

    return _make


@pytest.fixture
def write_event(tmp_path: Path):
    """Write an event ingestion document and return its path."""

    def _write(name: str = "event.json", **fields) -> Path:
        document = {
            "type": "push",
            "ref": "refs/heads/main",
            "changed_files": [],
            "labels": [],
            "actor": "dev",
            "timestamp": "2024-05-01T12:00:00Z",
        }
        document.update(fields)
        path = tmp_path / name
        path.write_text(json.dumps(document))
        return path

    return _write


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def no_sleep(sleeps):
    """Replacement for asyncio.sleep that records requested delays."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def make_job():
    """Factory for hand-built jobs: make_job("build", deps=("test",))."""

    def _make(
        name: str, kind: JobKind = JobKind.BUILD, deps=(), pipeline_id: str = "ci", **kwargs
    ) -> Job:
        return Job(
            id=f"{pipeline_id}/{name}",
            pipeline_id=pipeline_id,
            component_id=kwargs.pop("component_id", "app"),
            kind=kind,
            dependencies=frozenset(f"{pipeline_id}/{d}" for d in deps),
            template_id=name,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_decision():
    """Build a decision from (pipeline_id, jobs) pairs."""

    def _make(*selections) -> DispatchDecision:
        return DispatchDecision(
            event_id="evt-1",
            selected_pipelines=tuple(
                PipelineSelection(
                    pipeline_id=pipeline_id,
                    type=PipelineType.CI,
                    priority=Priority.HIGH,
                    reason="test",
                    jobs=tuple(jobs),
                )
                for pipeline_id, jobs in selections
            ),
        )

    return _make
