"""
Supersede handling.

One in-flight run per ref. Under the ``cancel`` policy a new run for a ref
signals the previous run to cancel; under ``allow-parallel`` both proceed.
"""

import asyncio
import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class RunHandle:
    """Cancellation handle shared between a run and the registry."""

    def __init__(self, run_id: str, ref: str):
        self.run_id = run_id
        self.ref = ref
        self.superseded_by: Optional[str] = None
        self._cancelled = asyncio.Event()

    @property
    def superseded(self) -> bool:
        return self._cancelled.is_set()

    def supersede(self, by_run_id: str) -> None:
        if self.superseded:
            return
        self.superseded_by = by_run_id
        self._cancelled.set()

    async def wait_superseded(self) -> None:
        await self._cancelled.wait()


class RunRegistry:
    def __init__(self, policy: str = "cancel"):
        self.policy = policy
        self._active: Dict[str, List[RunHandle]] = {}

    def begin(self, ref: str, run_id: str) -> RunHandle:
        handle = RunHandle(run_id, ref)
        active = self._active.setdefault(ref, [])
        if self.policy == "cancel":
            for previous in active:
                logger.info(
                    f"Run {run_id} supersedes run {previous.run_id} on {ref}",
                    extra={"run_id": previous.run_id},
                )
                previous.supersede(run_id)
            active.clear()
        active.append(handle)
        return handle

    def finish(self, handle: RunHandle) -> None:
        active = self._active.get(handle.ref, [])
        if handle in active:
            active.remove(handle)
        if not active:
            self._active.pop(handle.ref, None)

    def active(self, ref: str) -> List[RunHandle]:
        return list(self._active.get(ref, []))
