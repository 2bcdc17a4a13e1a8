"""
Evolution executor.

Evolution pipelines ask a content generator for a change set and write it
into the component's directory. Review and merge happen outside the engine.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict

from ..domain.models import Job
from ..errors import PermanentJobError
from .base import ChangeSet, ContentGenerator, ExecutionOutcome, JobContext

logger = logging.getLogger(__name__)


class EvolutionExecutor:
    def __init__(self, generator: ContentGenerator, repo_root: str = ".", apply: bool = True):
        self.generator = generator
        self.repo_root = Path(repo_root)
        self.apply = apply

    async def prepare(self, job: Job, context: JobContext) -> Any:
        return None

    def _context(self, job: Job, context: JobContext) -> Dict[str, Any]:
        return {
            "job_id": job.id,
            "component_id": job.component_id,
            "kind": job.kind.value,
            "stack": job.stack,
            "ref": context.ref,
            "workdir": context.workdir,
        }

    def _write(self, changes: ChangeSet, workdir: str) -> list:
        base = (self.repo_root / workdir).resolve()
        written = []
        for rel_path, content in sorted(changes.files.items()):
            target = (base / rel_path).resolve()
            if base != target and base not in target.parents:
                raise PermanentJobError(f"Generated path escapes component root: {rel_path}")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            written.append(str(target.relative_to(self.repo_root.resolve())))
        return written

    async def execute(self, job: Job, context: JobContext) -> ExecutionOutcome:
        if not context.prompt:
            raise PermanentJobError(f"Evolution job {job.id} has no prompt")

        changes = await asyncio.to_thread(
            self.generator.generate, context.prompt, self._context(job, context)
        )
        if changes.is_empty:
            logger.info(f"Content generator proposed no changes for {job.id}")
            return ExecutionOutcome(exit_code=0, output=changes.summary or "no changes")

        artifacts = self._write(changes, context.workdir) if self.apply else sorted(changes.files)
        logger.info(f"Evolution job {job.id} produced {len(artifacts)} files")
        return ExecutionOutcome(exit_code=0, output=changes.summary, artifacts=artifacts)
