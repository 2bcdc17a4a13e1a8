"""
Executor routing.

Evolution pipelines go to the content-generator executor, deploy/publish jobs
to the registry executor, everything else to the per-language executor for
the job's stack (falling back to the default executor).
"""

import logging
from typing import Dict, Optional

from ..config.loader import DispatchConfig
from ..domain.models import Job, JobKind, PipelineType
from ..errors import PermanentJobError
from .base import ContentGenerator, JobExecutor
from .containers import DockerRegistryClient, RegistryExecutor
from .evolution import EvolutionExecutor
from .process import CommandExecutor, ProcessRunner
from .simulated import SimulatedExecutor

logger = logging.getLogger(__name__)


class ExecutorRegistry:
    def __init__(
        self,
        default: Optional[JobExecutor] = None,
        registry: Optional[JobExecutor] = None,
        evolution: Optional[JobExecutor] = None,
        languages: Optional[Dict[str, JobExecutor]] = None,
    ):
        self.default = default
        self.registry = registry
        self.evolution = evolution
        self.languages = dict(languages or {})

    def for_job(self, job: Job, pipeline_type: PipelineType) -> JobExecutor:
        if pipeline_type == PipelineType.EVOLUTION:
            executor = self.evolution
            role = "evolution"
        elif job.kind in (JobKind.DEPLOY, JobKind.PUBLISH):
            executor = self.registry
            role = "registry"
        else:
            executor = self.languages.get(job.stack or "", self.default)
            role = f"language '{job.stack}'"
        if executor is None:
            raise PermanentJobError(f"No {role} executor available for job {job.id}")
        return executor

    @classmethod
    def simulated(cls, executor: Optional[SimulatedExecutor] = None) -> "ExecutorRegistry":
        """Route every job to one simulated executor."""
        executor = executor or SimulatedExecutor()
        return cls(default=executor, registry=executor, evolution=executor)

    @classmethod
    def from_config(
        cls,
        config: DispatchConfig,
        generator: Optional[ContentGenerator] = None,
        dry_run: bool = False,
    ) -> "ExecutorRegistry":
        runner = ProcessRunner(dry_run=dry_run)
        return cls(
            default=CommandExecutor(config.commands, runner, config.repo_root),
            registry=RegistryExecutor(DockerRegistryClient(runner)),
            evolution=(
                EvolutionExecutor(generator, config.repo_root) if generator is not None else None
            ),
        )
