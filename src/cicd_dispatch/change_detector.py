"""
Change Detector

Maps a set of changed file paths to the logical components they affect.
"""

import logging
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from .domain.models import INFRASTRUCTURE, Component
from .utils.globs import glob_match, normalize_path, specificity

logger = logging.getLogger(__name__)


def _best_matches(path: str, components: Sequence[Component]) -> List[str]:
    """Components whose most specific matching pattern ties for best."""
    best_score = -1
    winners: List[str] = []
    for component in components:
        scores = [
            specificity(pattern)
            for pattern in component.path_patterns
            if glob_match(path, pattern)
        ]
        if not scores:
            continue
        score = max(scores)
        if score > best_score:
            best_score = score
            winners = [component.id]
        elif score == best_score:
            winners.append(component.id)
    return winners


def explain(
    changed_files: Iterable[str],
    components: Sequence[Component],
    shared_patterns: Sequence[str] = (),
) -> Dict[str, Tuple[str, ...]]:
    """Map each changed path to the component ids it marks affected."""
    all_ids = tuple(c.id for c in components)
    mapping: Dict[str, Tuple[str, ...]] = {}
    for raw in sorted(set(changed_files)):
        path = normalize_path(raw)
        if any(glob_match(path, pattern) for pattern in shared_patterns):
            mapping[path] = all_ids
            continue
        winners = _best_matches(path, components)
        mapping[path] = tuple(winners) if winners else (INFRASTRUCTURE,)
    return mapping


def detect(
    changed_files: Iterable[str],
    components: Sequence[Component],
    shared_patterns: Sequence[str] = (),
) -> Set[str]:
    """Return the ids of components affected by ``changed_files``.

    A path matching a shared/global pattern marks every component affected.
    Otherwise the component owning the most specific matching pattern (longest
    literal prefix) wins. Paths matching nothing map to the ``infrastructure``
    pseudo-component.
    """
    affected: Set[str] = set()
    for path, ids in explain(changed_files, components, shared_patterns).items():
        logger.debug(f"{path} -> {', '.join(ids)}")
        affected.update(ids)
    return affected
