"""Merge decision and transactional merge execution.

A group is merged automatically only when every open candidate edge inside
it is APPROVED or clears the auto-merge threshold.  Anything else is left
untouched for human review.  Merges run one group at a time inside a single
repository transaction; a failure at any step rolls the whole group back.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from dealsift.dedup.errors import MergeConflictError, MergeError
from dealsift.dedup.models import CandidateStatus, DedupGroup
from dealsift.dedup.repository import DedupRepository

logger = structlog.get_logger(__name__)

SYSTEM_RESOLVER = "system"


@dataclass
class MergeResult:
    merged: int = 0
    needs_review: int = 0
    errors: list[str] = field(default_factory=list)
    timed_out: bool = False


def is_auto_mergeable(group: DedupGroup, auto_merge_threshold: float) -> bool:
    """True when every internal edge is human-approved or scores high enough.

    A reviewer-rejected pair anywhere inside the group always blocks.
    """
    if not group.edges or group.rejected_edges:
        return False
    return all(
        edge.status is CandidateStatus.APPROVED or edge.score >= auto_merge_threshold
        for edge in group.edges
    )


def execute_merge(
    repository: DedupRepository,
    group: DedupGroup,
    *,
    resolved_by: str = SYSTEM_RESOLVER,
) -> None:
    """Merge *group* into its canonical listing in one transaction.

    Steps, all-or-nothing:
      1. Re-fetch and lock every member listing.
      2. Reassign foreign references from non-canonical members.
      3. Mark non-canonical members as superseded by the canonical.
      4. Mark every candidate edge inside the group as MERGED.

    Raises:
        MergeConflictError: If a member vanished or was already superseded,
            or an edge was resolved by someone else in the meantime.
        MergeError: If any other step failed; nothing was written.
    """
    try:
        with repository.transaction():
            members = {l.id: l for l in repository.lock_listings(group.member_ids)}
            missing = [m for m in group.member_ids if m not in members]
            if missing:
                msg = f"Listings no longer exist: {missing}"
                raise MergeConflictError(msg, {"canonical_id": group.canonical_id})
            superseded = [m for m in group.member_ids if members[m].is_superseded]
            if superseded:
                msg = f"Listings already superseded: {superseded}"
                raise MergeConflictError(msg, {"canonical_id": group.canonical_id})

            for member_id in group.non_canonical_ids:
                repository.reassign_references(member_id, group.canonical_id)
            for member_id in group.non_canonical_ids:
                repository.mark_superseded(member_id, group.canonical_id)

            updated = repository.update_status(
                [edge.id for edge in group.edges],
                CandidateStatus.MERGED,
                resolved_by,
            )
            if updated != len(group.edges):
                msg = (
                    f"{len(group.edges) - updated} candidate(s) in group "
                    f"{group.canonical_id} were resolved concurrently"
                )
                raise MergeConflictError(msg, {"member_ids": group.member_ids})
    except MergeError:
        raise
    except Exception as exc:
        msg = f"Merge into {group.canonical_id} failed: {exc}"
        raise MergeError(msg, {"member_ids": group.member_ids}) from exc


def merge_groups(
    repository: DedupRepository,
    groups: Sequence[DedupGroup],
    auto_merge_threshold: float,
    *,
    deadline: float | None = None,
) -> MergeResult:
    """Apply the auto-merge gate and executor to each group, serially.

    Groups needing review are counted and left alone.  A failed merge is
    recorded in ``errors`` and the remaining groups still run.
    """
    result = MergeResult()

    for group in groups:
        if not is_auto_mergeable(group, auto_merge_threshold):
            result.needs_review += 1
            continue

        if deadline is not None and time.monotonic() >= deadline:
            result.timed_out = True
            logger.warning("merge_phase_timed_out", merged=result.merged)
            break

        try:
            execute_merge(repository, group)
        except MergeError as exc:
            logger.warning(
                "group_merge_failed",
                canonical_id=group.canonical_id,
                members=group.member_ids,
                error=exc.message,
            )
            result.errors.append(exc.message)
            continue

        result.merged += 1
        logger.info(
            "group_merged",
            canonical_id=group.canonical_id,
            superseded=group.non_canonical_ids,
        )

    return result
