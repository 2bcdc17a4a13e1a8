"""Process execution for command-based job executors."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ..domain.models import Job, JobKind
from ..errors import PermanentJobError, classify_failure
from .base import ExecutionOutcome, JobContext

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of executing a command."""

    code: int
    stdout: str
    stderr: str
    duration_s: float
    argv: List[str]
    cwd: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class ProcessRunner:
    """Runs external processes with timeout and dry-run support."""

    def __init__(self, dry_run: bool = False, timeout_s: float = 1800.0) -> None:
        self.dry_run = dry_run
        self.timeout_s = timeout_s

    def run(
        self,
        argv: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """Execute a command and return structured results. Never raises."""
        cmd = list(argv)
        cmd_str = " ".join(map(shlex.quote, cmd))
        logger.info(f"{'[DRY RUN] ' if self.dry_run else ''}Running: {cmd_str}")
        start = time.time()

        if self.dry_run:
            return CommandResult(
                code=0,
                stdout=f"[DRY RUN] Would execute: {cmd_str}",
                stderr="",
                duration_s=0.0,
                argv=cmd,
                cwd=cwd,
            )

        proc_env = os.environ.copy()
        if env:
            proc_env.update(env)

        try:
            completed = subprocess.run(
                cmd,
                cwd=cwd,
                env=proc_env,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                shell=False,
            )
        except subprocess.TimeoutExpired as exc:
            stdout = exc.stdout.decode() if isinstance(exc.stdout, bytes) else exc.stdout
            return CommandResult(
                code=-1,
                stdout=stdout or "",
                stderr=f"Command timed out after {self.timeout_s} seconds",
                duration_s=time.time() - start,
                argv=cmd,
                cwd=cwd,
            )
        except FileNotFoundError:
            return CommandResult(
                code=127,
                stdout="",
                stderr=f"Command not found: {cmd[0]}",
                duration_s=time.time() - start,
                argv=cmd,
                cwd=cwd,
            )

        return CommandResult(
            code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration_s=time.time() - start,
            argv=cmd,
            cwd=cwd,
        )


# Fallback commands per language and job kind; the config's ``commands``
# block overrides them and the "default" entry serves stack-agnostic jobs.
# ``{package_manager}`` and ``{build_tool}`` are substituted from the stack.
DEFAULT_COMMANDS: Dict[str, Dict[str, str]] = {
    "node": {
        "install": "{package_manager} install",
        "test": "{package_manager} test",
        "lint": "{package_manager} run lint",
        "build": "{package_manager} run build",
    },
    "python": {
        "install": "pip install -e .",
        "test": "pytest",
        "lint": "ruff check .",
        "build": "python -m build",
    },
    "ruby": {
        "install": "bundle install",
        "test": "bundle exec rake test",
        "build": "bundle exec jekyll build",
    },
    "go": {
        "install": "go mod download",
        "test": "go test ./...",
        "lint": "go vet ./...",
        "build": "go build ./...",
    },
    "rust": {
        "install": "cargo fetch",
        "test": "cargo test",
        "lint": "cargo clippy",
        "build": "cargo build --release",
    },
    "java": {
        "install": "{build_tool} dependencies",
        "test": "{build_tool} test",
        "build": "{build_tool} package",
    },
}


class CommandExecutor:
    """Per-language executor that runs configured shell commands."""

    def __init__(
        self,
        commands: Optional[Mapping[str, Mapping[str, str]]] = None,
        runner: Optional[ProcessRunner] = None,
        repo_root: str = ".",
    ):
        self.commands: Dict[str, Dict[str, str]] = {
            lang: dict(cmds) for lang, cmds in DEFAULT_COMMANDS.items()
        }
        for lang, cmds in (commands or {}).items():
            self.commands.setdefault(lang, {}).update(cmds)
        self.runner = runner or ProcessRunner()
        self.repo_root = repo_root

    def command_for(self, language: Optional[str], action: str, context: JobContext) -> List[str]:
        template = self.commands.get(language or "default", {}).get(action)
        if template is None:
            raise PermanentJobError(
                f"No '{action}' command configured for stack '{language or 'none'}'"
            )
        stack = context.stack
        rendered = template.format(
            package_manager=(stack.package_manager if stack else None) or "",
            build_tool=(stack.build_tool if stack else None) or "",
        )
        return shlex.split(rendered)

    def _cwd(self, context: JobContext) -> str:
        return str(Path(self.repo_root) / context.workdir)

    async def prepare(self, job: Job, context: JobContext) -> Any:
        if job.stack is None or "install" not in self.commands.get(job.stack, {}):
            return None
        argv = self.command_for(job.stack, "install", context)
        result = await asyncio.to_thread(self.runner.run, argv, self._cwd(context))
        if not result.ok:
            error_class = classify_failure(result.output)
            raise error_class(
                f"Dependency install failed for {job.component_id}: {result.output[-500:]}"
            )
        return result.argv

    async def execute(self, job: Job, context: JobContext) -> ExecutionOutcome:
        if job.kind in (JobKind.DEPLOY, JobKind.PUBLISH):
            raise PermanentJobError(f"{job.kind.value} jobs are not run by command executors")
        argv = self.command_for(job.stack, job.kind.value, context)
        env = {"CICD_DISPATCH_RUN_ID": context.run_id, "CICD_DISPATCH_REF": context.ref}
        result = await asyncio.to_thread(self.runner.run, argv, self._cwd(context), env)
        return ExecutionOutcome(exit_code=result.code, output=result.output)
