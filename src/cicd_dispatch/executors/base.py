"""
Protocol definitions for external job collaborators.

The runner never invokes build tools, registries or content generators
directly; it talks to objects implementing these protocols.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..domain.models import Job, StackInfo


@dataclass
class ExecutionOutcome:
    """Result of one execution attempt of a job."""

    exit_code: int
    output: str = ""
    logs_ref: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class JobContext:
    """Everything an executor needs besides the job itself."""

    run_id: str
    ref: str
    attempt: int = 1
    stack: Optional[StackInfo] = None
    workdir: str = "."
    prompt: Optional[str] = None
    image: Optional[str] = None
    prepared: Any = None


@dataclass
class ChangeSet:
    """Proposed file changes returned by a content generator."""

    files: Dict[str, str] = field(default_factory=dict)
    summary: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.files


@runtime_checkable
class JobExecutor(Protocol):
    """
    Executes jobs of one kind of work.

    ``prepare`` installs dependencies for a (component, stack) pair and its
    return value is cached by the runner. ``execute`` may return a non-zero
    ``ExecutionOutcome`` or raise ``TransientJobError`` / ``PermanentJobError``.
    """

    async def prepare(self, job: Job, context: JobContext) -> Any:
        ...

    async def execute(self, job: Job, context: JobContext) -> ExecutionOutcome:
        ...


@runtime_checkable
class RegistryClient(Protocol):
    """Pushes a built image to a container registry."""

    def push(self, image: str, tag: str) -> ExecutionOutcome:
        ...


@runtime_checkable
class ContentGenerator(Protocol):
    """Produces a change set from a prompt. Provider-agnostic."""

    def generate(self, prompt: str, context: Dict[str, Any]) -> ChangeSet:
        ...
