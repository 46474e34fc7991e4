"""
Active-branch resolution over the parentUuid graph.

Rewinding and re-prompting forks the log: the new turn points at an older
record while the abandoned turns stay on disk. The branch on screen is the
path from the newest leaf back to the root.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Set

from ..core.models import Record

logger = logging.getLogger(__name__)


def resolve_active_branch(
    records: Sequence[Record],
    resume_at: Optional[str] = None,
) -> List[Record]:
    """
    Return the records of the currently active branch, in log order.

    Args:
        records: Full log, in file order
        resume_at: Record id to truncate the branch at (rewind pointer)

    Returns:
        Subsequence of ``records``. Falls back to the whole log when
        ``resume_at`` is unknown.
    """
    if not records:
        return []

    first_seen: Dict[str, Record] = {}
    for record in records:
        if record.id and record.id not in first_seen:
            first_seen[record.id] = record

    if resume_at and resume_at not in first_seen:
        logger.debug(f"Resume point {resume_at} not in log, keeping full log")
        return list(records)

    # Sets keep duplicate writes of one id from counting as two children
    children: Dict[str, Set[str]] = defaultdict(set)
    for record_id, record in first_seen.items():
        if record.parent_id:
            children[record.parent_id].add(record_id)

    has_branching = any(len(kids) > 1 for kids in children.values())

    if not has_branching:
        if not resume_at:
            return _dedupe(records)
        for idx, record in enumerate(records):
            if record.id == resume_at:
                return _dedupe(records[: idx + 1])

    leaf = _find_leaf(records, children)
    if leaf is None:
        return list(records)

    active = _ancestor_chain(leaf, first_seen)

    if resume_at:
        if resume_at in active:
            active = _ancestor_chain(resume_at, first_seen)
        else:
            logger.debug(f"Resume point {resume_at} is on an abandoned branch, ignoring")

    return _select(records, active)


def _find_leaf(records: Sequence[Record], children: Dict[str, Set[str]]) -> Optional[str]:
    """Newest record with an id that nothing points at."""
    fallback = None
    for record in reversed(records):
        if not record.id:
            continue
        if fallback is None:
            fallback = record.id
        if record.id not in children:
            return record.id
    return fallback


def _ancestor_chain(leaf: str, first_seen: Dict[str, Record]) -> Set[str]:
    chain: Set[str] = set()
    current: Optional[str] = leaf
    while current and current in first_seen and current not in chain:
        chain.add(current)
        current = first_seen[current].parent_id
    return chain


def _dedupe(records: Sequence[Record]) -> List[Record]:
    """Drop repeated writes of an id, keeping the first."""
    seen: Set[str] = set()
    kept: List[Record] = []
    for record in records:
        if record.id:
            if record.id in seen:
                continue
            seen.add(record.id)
        kept.append(record)
    return kept


def _select(records: Sequence[Record], active: Set[str]) -> List[Record]:
    """Keep active records plus unanchored ones sandwiched between two of them."""
    selected: List[Record] = []
    pending: List[Record] = []
    emitted: Set[str] = set()
    prev_active = False

    for record in records:
        if not record.id:
            if prev_active:
                pending.append(record)
            continue

        if record.id in emitted:
            continue

        is_active = record.id in active
        if is_active and prev_active:
            selected.extend(pending)
        pending = []
        if is_active:
            selected.append(record)
            emitted.add(record.id)
        prev_active = is_active

    return selected
