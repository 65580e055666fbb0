"""In-memory gridworld sessions with one turn in flight per session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
import logging
import threading
import uuid

from packages.gridworld_core.world.agents import derive_agents
from packages.gridworld_core.world.grid import clone_grid, set_cell
from packages.gridworld_core.world.models import GameState, Grid, TurnState

from .engine import TurnEngine, TurnOutcome
from .errors import EmptyHistoryError, SessionNotFoundError, TurnInProgressError


logger = logging.getLogger("gridworld_core.sim.session")

INITIAL_TURN_DESCRIPTION = "Initial scenario setup"


def build_initial_game_state(grid: Grid, world_description: str) -> GameState:
    """Seed a game state with a single turn holding ``grid``."""
    world = clone_grid(grid)
    return GameState(
        world_description=world_description,
        history=[TurnState(world=world, description=INITIAL_TURN_DESCRIPTION)],
        agents=derive_agents(world, []),
    )


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class GameSession:
    session_id: str
    game_state: GameState
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)
    last_report: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turn_count": len(self.game_state.history),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_report": self.last_report,
            "gameState": self.game_state.to_wire(),
        }


class SessionStore:
    """Holds sessions in process memory.

    A session id is marked busy for the whole duration of ``advance``; a second
    advance on the same id raises ``TurnInProgressError`` instead of queueing.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, GameSession] = {}
        self._busy: set[str] = set()
        self._lock = threading.RLock()

    def create(self, game_state: GameState) -> GameSession:
        if game_state.latest_turn() is None:
            raise EmptyHistoryError("A session needs at least one turn", stage="precondition")
        session = GameSession(session_id=str(uuid.uuid4()), game_state=game_state.model_copy(deep=True))
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("[SESSION] Created session %s with %d agent(s)", session.session_id, len(game_state.agents))
        return session

    def get(self, session_id: str) -> GameSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def delete(self, session_id: str) -> None:
        with self._lock:
            if session_id in self._busy:
                raise TurnInProgressError(f"Session {session_id} is advancing a turn", stage="precondition")
            if self._sessions.pop(session_id, None) is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")
        logger.info("[SESSION] Deleted session %s", session_id)

    def set_cell(self, session_id: str, row: int, col: int, content: str) -> GameSession:
        """Rewrite one cell of the latest turn and refresh the agents."""
        with self._lock:
            if session_id in self._busy:
                raise TurnInProgressError(f"Session {session_id} is advancing a turn", stage="precondition")
            session = self.get(session_id)
            state = session.game_state
            latest = state.latest_turn()
            world = set_cell(latest.world, row, col, content)
            edited = TurnState(world=world, description=latest.description)
            session.game_state = state.model_copy(
                update={"history": [*state.history[:-1], edited], "agents": derive_agents(world, state.agents)},
                deep=True,
            )
            session.updated_at = _utc_now()
        logger.info("[SESSION] Session %s cell (%d,%d) set to %r", session_id, row, col, content)
        return session

    async def advance(
        self,
        session_id: str,
        engine: TurnEngine,
        api_key: Optional[str],
        *,
        agent_actions: Mapping[str, str] | None = None,
    ) -> TurnOutcome:
        with self._lock:
            session = self.get(session_id)
            if session_id in self._busy:
                raise TurnInProgressError(f"Session {session_id} is already advancing a turn", stage="precondition")
            self._busy.add(session_id)
            game_state = session.game_state
        try:
            outcome = await engine.advance_turn(
                game_state,
                api_key,
                agent_actions=agent_actions,
                session_id=session_id,
            )
            with self._lock:
                session.game_state = outcome.game_state
                session.last_report = outcome.report.as_dict()
                session.updated_at = _utc_now()
        finally:
            with self._lock:
                self._busy.discard(session_id)
        return outcome

    def is_busy(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._busy

    def reset(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._busy.clear()


_STORE = SessionStore()


def get_session_store() -> SessionStore:
    return _STORE


def reset_sessions_for_tests() -> None:
    _STORE.reset()
