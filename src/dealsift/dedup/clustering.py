"""Cluster builder: transitive grouping of candidate edges.

A-B at 0.65 and B-C at 0.70 yield one group {A, B, C} even when A-C was
never compared, which lets blocking skip exhaustive comparison while still
following chains of evidence.  Must run on the complete edge set, after all
candidates for the run have been persisted.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence

from dealsift.dedup.models import CandidateStatus, DedupCandidate, DedupGroup, Listing


class UnionFind:
    """Disjoint-set forest with path compression and union by size."""

    def __init__(self) -> None:
        self._parent: dict[str, str] = {}
        self._size: dict[str, int] = {}

    def add(self, item: str) -> None:
        if item not in self._parent:
            self._parent[item] = item
            self._size[item] = 1

    def find(self, item: str) -> str:
        self.add(item)
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        if self._size[root_a] < self._size[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        self._size[root_a] += self._size[root_b]

    def components(self) -> list[set[str]]:
        groups: dict[str, set[str]] = defaultdict(set)
        for item in self._parent:
            groups[self.find(item)].add(item)
        return list(groups.values())


def is_cluster_edge(candidate: DedupCandidate, review_threshold: float) -> bool:
    """APPROVED edges always link; PENDING edges link at or above the threshold."""
    if candidate.status is CandidateStatus.APPROVED:
        return True
    return candidate.status is CandidateStatus.PENDING and candidate.score >= review_threshold


def completeness(listing: Listing) -> int:
    """Count of populated financial/location fields used to pick the canonical."""
    return sum(
        value is not None
        for value in (listing.revenue, listing.ebitda, listing.asking_price, listing.address)
    )


def choose_canonical(members: Iterable[Listing]) -> Listing:
    """Most complete listing, then most recently seen, then lowest id."""
    ranked = sorted(members, key=lambda l: l.id)
    ranked.sort(key=lambda l: (completeness(l), l.last_seen), reverse=True)
    return ranked[0]


def build_groups(
    candidates: Sequence[DedupCandidate],
    listings_by_id: Mapping[str, Listing],
    review_threshold: float,
) -> list[DedupGroup]:
    """Compute duplicate groups from open candidates.

    Candidates referring to an unknown or already superseded listing are
    ignored.  Each group carries every open candidate between its members
    (including edges below *review_threshold*) and every REJECTED one, so
    the merge gate can see them.  REJECTED candidates never link listings.
    Groups are returned sorted by canonical id.
    """
    def known(c: DedupCandidate) -> bool:
        for listing_id in (c.listing_a_id, c.listing_b_id):
            listing = listings_by_id.get(listing_id)
            if listing is None or listing.is_superseded:
                return False
        return True

    open_edges = [c for c in candidates if c.status.is_open and known(c)]
    rejected = [c for c in candidates if c.status is CandidateStatus.REJECTED and known(c)]

    forest = UnionFind()
    for c in open_edges:
        if is_cluster_edge(c, review_threshold):
            forest.union(c.listing_a_id, c.listing_b_id)

    groups: list[DedupGroup] = []
    root_of: dict[str, DedupGroup] = {}
    for component in forest.components():
        if len(component) < 2:
            continue
        canonical = choose_canonical(listings_by_id[i] for i in component)
        others = sorted(i for i in component if i != canonical.id)
        group = DedupGroup(canonical_id=canonical.id, member_ids=[canonical.id, *others])
        groups.append(group)
        for member in component:
            root_of[member] = group

    for c in open_edges:
        group = root_of.get(c.listing_a_id)
        if group is not None and root_of.get(c.listing_b_id) is group:
            group.edges.append(c)
    for c in rejected:
        group = root_of.get(c.listing_a_id)
        if group is not None and root_of.get(c.listing_b_id) is group:
            group.rejected_edges.append(c)

    groups.sort(key=lambda g: g.canonical_id)
    return groups
