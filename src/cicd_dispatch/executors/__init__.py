"""
Job executors: protocols for external collaborators plus thin adapters.
"""

from .base import (
    ChangeSet,
    ContentGenerator,
    ExecutionOutcome,
    JobContext,
    JobExecutor,
    RegistryClient,
)
from .containers import DockerRegistryClient, RegistryExecutor
from .evolution import EvolutionExecutor
from .process import CommandExecutor, ProcessRunner
from .registry import ExecutorRegistry
from .simulated import SimulatedExecutor

__all__ = [
    "ChangeSet",
    "ContentGenerator",
    "ExecutionOutcome",
    "JobContext",
    "JobExecutor",
    "RegistryClient",
    "DockerRegistryClient",
    "RegistryExecutor",
    "EvolutionExecutor",
    "CommandExecutor",
    "ProcessRunner",
    "ExecutorRegistry",
    "SimulatedExecutor",
]
