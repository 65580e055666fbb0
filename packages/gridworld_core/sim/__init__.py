"""Turn resolution pipeline for the gridworld."""

from .conflicts import GroupingResult, group_proposals, group_proposals_transitive
from .engine import TurnEngine, TurnOutcome, TurnReport, merge_proposals
from .errors import (
    EmptyHistoryError,
    MissingCredentialError,
    ScenarioGenerationError,
    SessionNotFoundError,
    TurnEngineError,
    TurnFailedError,
    TurnInProgressError,
)
from .oracle import Narration, OracleClient
from .session import SessionStore, build_initial_game_state, get_session_store
from .validator import detect_agent_conflicts

__all__ = [
    "GroupingResult",
    "group_proposals",
    "group_proposals_transitive",
    "TurnEngine",
    "TurnOutcome",
    "TurnReport",
    "merge_proposals",
    "EmptyHistoryError",
    "MissingCredentialError",
    "ScenarioGenerationError",
    "SessionNotFoundError",
    "TurnEngineError",
    "TurnFailedError",
    "TurnInProgressError",
    "Narration",
    "OracleClient",
    "SessionStore",
    "build_initial_game_state",
    "get_session_store",
    "detect_agent_conflicts",
]
