from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional

from ..domain.models import Job
from ..errors import PermanentJobError
from .base import ExecutionOutcome, JobContext, RegistryClient
from .process import ProcessRunner

logger = logging.getLogger(__name__)


def image_tag(ref: str, variant: Optional[str] = None) -> str:
    """Docker-safe tag derived from a git ref, e.g. refs/tags/v1.2 -> v1.2."""
    name = re.sub(r"^refs/(heads|tags|pull)/", "", ref)
    tag = re.sub(r"[^A-Za-z0-9_.-]", "-", name).strip(".-") or "latest"
    if variant:
        tag = f"{variant}-{tag}"
    return tag[:128]


class DockerRegistryClient:
    """Pushes images with the docker CLI."""

    def __init__(self, runner: ProcessRunner) -> None:
        self.runner = runner

    def push(self, image: str, tag: str) -> ExecutionOutcome:
        target = f"{image}:{tag}"
        tagged = self.runner.run(["docker", "tag", image, target])
        if not tagged.ok:
            return ExecutionOutcome(exit_code=tagged.code, output=tagged.output)
        res = self.runner.run(["docker", "push", target])
        return ExecutionOutcome(
            exit_code=res.code, output=res.output, artifacts=[target] if res.ok else []
        )


class RegistryExecutor:
    """Runs deploy and publish jobs by pushing the component image."""

    def __init__(self, client: RegistryClient) -> None:
        self.client = client

    async def prepare(self, job: Job, context: JobContext) -> Any:
        return None

    async def execute(self, job: Job, context: JobContext) -> ExecutionOutcome:
        if not context.image:
            raise PermanentJobError(f"No image configured for component '{job.component_id}'")
        tag = image_tag(context.ref, job.variant)
        logger.info(f"Pushing {context.image}:{tag} for {job.id}")
        return await asyncio.to_thread(self.client.push, context.image, tag)
