"""Grid and agent model for the gridworld."""

from .agents import HistoryAppend, append_history, derive_agents, scan_agents
from .grid import (
    DEFAULT_GRID_COLS,
    DEFAULT_GRID_ROWS,
    apply_world_changes,
    describe_world,
    get_agent_name,
    initialize_empty_world,
)
from .models import Agent, GameState, Location, ProposalResult, TurnState, WorldChange

__all__ = [
    "HistoryAppend",
    "append_history",
    "derive_agents",
    "scan_agents",
    "DEFAULT_GRID_COLS",
    "DEFAULT_GRID_ROWS",
    "apply_world_changes",
    "describe_world",
    "get_agent_name",
    "initialize_empty_world",
    "Agent",
    "GameState",
    "Location",
    "ProposalResult",
    "TurnState",
    "WorldChange",
]
