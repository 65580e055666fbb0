"""Spatial conflict grouping of proposals by the cells they write."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from packages.gridworld_core.world.models import ProposalResult


Cell = tuple[int, int]


@dataclass
class GroupingResult:
    accepted: list[ProposalResult] = field(default_factory=list)
    conflict_groups: list[list[ProposalResult]] = field(default_factory=list)
    contested_cells: list[Cell] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "accepted": len(self.accepted),
            "conflict_groups": len(self.conflict_groups),
            "contested_cells": len(self.contested_cells),
        }


def bucket_by_cell(proposals: Sequence[ProposalResult]) -> dict[Cell, list[ProposalResult]]:
    """Map each written cell to the proposals writing it, in encounter order."""
    buckets: dict[Cell, list[ProposalResult]] = {}
    for proposal in proposals:
        for cell in proposal.target_cells():
            buckets.setdefault(cell, []).append(proposal)
    return buckets


def group_proposals(proposals: Sequence[ProposalResult]) -> GroupingResult:
    """Split proposals into uncontested ones and per-cell conflict groups.

    Grouping is per cell and not transitive: a proposal writing two contested
    cells lands in both groups, and a proposal with one contested and one
    uncontested cell is also accepted through the uncontested one.
    """
    result = GroupingResult()
    accepted_ids: set[int] = set()
    for cell, bucket in bucket_by_cell(proposals).items():
        if len(bucket) > 1:
            result.conflict_groups.append(list(bucket))
            result.contested_cells.append(cell)
            continue
        proposal = bucket[0]
        if id(proposal) in accepted_ids:
            continue
        accepted_ids.add(id(proposal))
        result.accepted.append(proposal)
    return result


def group_proposals_transitive(proposals: Sequence[ProposalResult]) -> GroupingResult:
    """Union-find variant: proposals linked through any shared cell form one group.

    A proposal in a group is never also accepted on its own.
    """
    parent = list(range(len(proposals)))

    def find(index: int) -> int:
        while parent[index] != index:
            parent[index] = parent[parent[index]]
            index = parent[index]
        return index

    owners: dict[Cell, int] = {}
    contested: dict[Cell, None] = {}
    for index, proposal in enumerate(proposals):
        for cell in proposal.target_cells():
            if cell in owners:
                contested.setdefault(cell, None)
                parent[find(index)] = find(owners[cell])
            else:
                owners[cell] = index

    members: dict[int, list[int]] = {}
    for index, proposal in enumerate(proposals):
        if proposal.target_cells():
            members.setdefault(find(index), []).append(index)

    result = GroupingResult(contested_cells=list(contested))
    for indices in members.values():
        if len(indices) > 1:
            result.conflict_groups.append([proposals[i] for i in indices])
        else:
            result.accepted.append(proposals[indices[0]])
    return result
