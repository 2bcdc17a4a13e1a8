"""
Stack Resolver

Detects the language, package manager and build tool of a component from the
canonical signature files present in its root directory.
"""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .domain.models import UNKNOWN, Component, StackInfo, StackResolution

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StackSignature:
    """Files that identify a stack and how to pick its tools."""

    language: str
    manifests: Tuple[str, ...]
    lockfiles: Tuple[Tuple[str, str], ...] = ()
    default_package_manager: Optional[str] = None
    build_tool: Optional[str] = None
    build_tool_markers: Tuple[Tuple[str, str], ...] = ()


# Order matters: the first signature found for a language wins.
DEFAULT_SIGNATURES: Tuple[StackSignature, ...] = (
    StackSignature(
        language="node",
        manifests=("package.json",),
        lockfiles=(
            ("pnpm-lock.yaml", "pnpm"),
            ("yarn.lock", "yarn"),
            ("bun.lockb", "bun"),
            ("package-lock.json", "npm"),
        ),
        default_package_manager="npm",
        build_tool="npm",
        build_tool_markers=(
            ("next.config.js", "next"),
            ("vite.config.ts", "vite"),
            ("vite.config.js", "vite"),
            ("tsconfig.json", "tsc"),
        ),
    ),
    StackSignature(
        language="python",
        manifests=("pyproject.toml", "setup.py", "setup.cfg", "requirements.txt"),
        lockfiles=(
            ("poetry.lock", "poetry"),
            ("uv.lock", "uv"),
            ("Pipfile.lock", "pipenv"),
            ("requirements.txt", "pip"),
        ),
        default_package_manager="pip",
        build_tool="setuptools",
        build_tool_markers=(("poetry.lock", "poetry"), ("uv.lock", "uv")),
    ),
    StackSignature(
        language="ruby",
        manifests=("Gemfile",),
        lockfiles=(("Gemfile.lock", "bundler"),),
        default_package_manager="bundler",
        build_tool="rake",
        build_tool_markers=(("_config.yml", "jekyll"),),
    ),
    StackSignature(
        language="go",
        manifests=("go.mod",),
        lockfiles=(("go.sum", "go"),),
        default_package_manager="go",
        build_tool="go",
    ),
    StackSignature(
        language="rust",
        manifests=("Cargo.toml",),
        lockfiles=(("Cargo.lock", "cargo"),),
        default_package_manager="cargo",
        build_tool="cargo",
    ),
    StackSignature(
        language="java",
        manifests=("pom.xml",),
        default_package_manager="maven",
        build_tool="maven",
    ),
    StackSignature(
        language="java",
        manifests=("build.gradle", "build.gradle.kts"),
        lockfiles=(("gradle.lockfile", "gradle"),),
        default_package_manager="gradle",
        build_tool="gradle",
    ),
)


def hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()[:16]


class StackResolver:
    """Resolves component stacks against a repository checkout."""

    def __init__(
        self,
        repo_root: Path,
        signatures: Sequence[StackSignature] = DEFAULT_SIGNATURES,
    ):
        self.repo_root = Path(repo_root)
        self.signatures = tuple(signatures)

    def resolve(self, component: Component) -> StackResolution:
        """Return every stack detected for ``component`` or ``UNKNOWN``.

        Languages declared on the component are honoured even when no
        signature file is present.
        """
        root = self.repo_root / component.effective_root
        stacks: List[StackInfo] = []
        seen = set()

        for signature in self.signatures:
            if signature.language in seen:
                continue
            if self._first_existing(root, signature.manifests) is None:
                continue
            stacks.append(self._stack_from_signature(root, signature))
            seen.add(signature.language)

        for signature in self.signatures:
            if signature.language in component.languages and signature.language not in seen:
                stacks.append(self._stack_from_signature(root, signature))
                seen.add(signature.language)

        for language in sorted(component.languages - seen):
            stacks.append(StackInfo(language=language))

        if not stacks:
            logger.warning(
                f"No stack signature found for component '{component.id}' in {root}"
            )
            return UNKNOWN
        return tuple(stacks)

    def resolve_all(
        self, components: Iterable[Component]
    ) -> Dict[str, StackResolution]:
        return {component.id: self.resolve(component) for component in components}

    def _stack_from_signature(self, root: Path, signature: StackSignature) -> StackInfo:
        package_manager = signature.default_package_manager
        lockfile_hash = None
        for lockfile, manager in signature.lockfiles:
            path = root / lockfile
            if path.is_file():
                package_manager = manager
                lockfile_hash = hash_file(path)
                break

        build_tool = signature.build_tool
        for marker, tool in signature.build_tool_markers:
            if (root / marker).is_file():
                build_tool = tool
                break

        return StackInfo(
            language=signature.language,
            package_manager=package_manager,
            build_tool=build_tool,
            lockfile_hash=lockfile_hash,
        )

    @staticmethod
    def _first_existing(root: Path, names: Iterable[str]) -> Optional[Path]:
        for name in names:
            candidate = root / name
            if candidate.is_file():
                return candidate
        return None
