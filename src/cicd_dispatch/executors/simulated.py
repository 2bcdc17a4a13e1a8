import asyncio
import logging
from typing import Any, Dict, List, Optional

from ..domain.models import Job
from .base import ExecutionOutcome, JobContext

logger = logging.getLogger(__name__)


class SimulatedExecutor:
    """Executor that runs nothing and reports success.

    ``outcomes`` maps a job id to a scripted sequence of results, one per
    attempt: an ``ExecutionOutcome`` is returned, an exception is raised. The
    last entry repeats once the sequence is exhausted.
    """

    def __init__(
        self,
        outcomes: Optional[Dict[str, List[Any]]] = None,
        delay: float = 0.0,
    ):
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.delay = delay
        self.calls: List[str] = []
        self.prepared: List[str] = []

    async def prepare(self, job: Job, context: JobContext) -> Any:
        self.prepared.append(job.id)
        return f"prepared:{job.component_id}:{job.stack}"

    async def execute(self, job: Job, context: JobContext) -> ExecutionOutcome:
        self.calls.append(job.id)
        if self.delay:
            await asyncio.sleep(self.delay)

        script = self.outcomes.get(job.id)
        if not script:
            logger.info(f"[SIMULATED] {job.id} attempt {context.attempt}")
            return ExecutionOutcome(exit_code=0, output=f"[SIMULATED] {job.id}")

        result = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(result, BaseException):
            raise result
        return result
