"""Agent projection derived from the grid.

The grid is the source of truth for which agents exist, where they stand and
what state they are in. ``Agent`` records only add a color and the private
history accumulated across turns.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .grid import get_agent_name
from .models import Agent, AgentHistoryEntry, Grid, Location


DEFAULT_AGENT_COLOR = "red"


@dataclass(frozen=True)
class AgentSighting:
    name: str
    state: str
    location: Location


@dataclass(frozen=True)
class HistoryAppend:
    """A pending private-history entry, applied once the turn's fan-out is done."""

    name: str
    action: str
    agent_state: str
    location: Location


def scan_agents(grid: Grid) -> list[AgentSighting]:
    sightings: list[AgentSighting] = []
    for row_index, row in enumerate(grid):
        for col_index, cell in enumerate(row):
            name = get_agent_name(cell)
            if name is not None:
                sightings.append(
                    AgentSighting(name=name, state=cell, location=Location(row=row_index, col=col_index))
                )
    return sightings


def agent_locations(grid: Grid) -> dict[str, list[Location]]:
    locations: dict[str, list[Location]] = {}
    for sighting in scan_agents(grid):
        locations.setdefault(sighting.name, []).append(sighting.location)
    return locations


def derive_agents(grid: Grid, existing_agents: Iterable[Agent]) -> list[Agent]:
    """Refresh the agent list from ``grid``.

    Agents still on the grid keep their color and history; agents no longer on
    the grid are dropped; names seen for the first time are appended in grid
    order. A name present in several cells resolves to its first cell in
    row-major order.
    """
    first_seen: dict[str, AgentSighting] = {}
    for sighting in scan_agents(grid):
        first_seen.setdefault(sighting.name, sighting)

    refreshed: list[Agent] = []
    known: set[str] = set()
    for agent in existing_agents:
        sighting = first_seen.get(agent.name)
        if sighting is None or agent.name in known:
            continue
        known.add(agent.name)
        refreshed.append(
            agent.model_copy(
                update={"current_state": sighting.state, "location": sighting.location},
                deep=True,
            )
        )

    for name, sighting in first_seen.items():
        if name in known:
            continue
        known.add(name)
        refreshed.append(
            Agent(
                name=name,
                color=DEFAULT_AGENT_COLOR,
                current_state=sighting.state,
                location=sighting.location,
                private_history=[],
            )
        )
    return refreshed


def history_append_for(agent: Agent, action: str) -> HistoryAppend:
    return HistoryAppend(
        name=agent.name,
        action=action,
        agent_state=agent.current_state,
        location=agent.location,
    )


def append_history(agents: Iterable[Agent], appends: Iterable[HistoryAppend]) -> list[Agent]:
    by_name: dict[str, list[HistoryAppend]] = {}
    for item in appends:
        by_name.setdefault(item.name, []).append(item)

    updated: list[Agent] = []
    for agent in agents:
        pending = by_name.get(agent.name)
        if not pending:
            updated.append(agent)
            continue
        history = list(agent.private_history)
        history.extend(
            AgentHistoryEntry(action=item.action, agent_state=item.agent_state, location=item.location)
            for item in pending
        )
        updated.append(agent.model_copy(update={"private_history": history}, deep=True))
    return updated
