"""Agent invariant check: every known agent stays in exactly one cell."""

from __future__ import annotations

from typing import Iterable

from packages.gridworld_core.world.agents import agent_locations, scan_agents
from packages.gridworld_core.world.grid import apply_world_changes
from packages.gridworld_core.world.models import (
    AgentConflictReport,
    DuplicatedAgent,
    Grid,
    Location,
    MissingAgent,
    WorldChange,
)


def original_agent_locations(grid: Grid) -> dict[str, Location]:
    # Keyed by name; a name already duplicated on the prior grid keeps its last cell.
    return {sighting.name: sighting.location for sighting in scan_agents(grid)}


def detect_agent_conflicts(prior_grid: Grid, changes: Iterable[WorldChange]) -> AgentConflictReport:
    """Simulate ``changes`` on ``prior_grid`` and report duplicated or vanished agents.

    Agents appearing for the first time are never reported.
    """
    original = original_agent_locations(prior_grid)
    hypothetical = apply_world_changes(prior_grid, changes)
    new_locations = agent_locations(hypothetical)

    duplicated = [
        DuplicatedAgent(name=name, locations=locations)
        for name, locations in new_locations.items()
        if len(locations) > 1
    ]
    missing = [
        MissingAgent(name=name, original_location=location)
        for name, location in original.items()
        if name not in new_locations
    ]
    return AgentConflictReport(duplicated_agents=duplicated, missing_agents=missing)
