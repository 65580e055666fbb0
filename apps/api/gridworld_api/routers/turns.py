"""Turn resolution and session endpoints."""

from __future__ import annotations

from typing import Any, Optional
import asyncio
import logging

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field, model_validator

from packages.gridworld_core.sim.session import build_initial_game_state, get_session_store
from packages.gridworld_core.world.grid import is_rectangular
from packages.gridworld_core.world.models import GameState, Grid

from ..services.oracle_runtime import oracle_client, turn_engine


logger = logging.getLogger("gridworld_api.turns")
router = APIRouter(prefix="/api/v1", tags=["turns"])


class AdvanceTurnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    game_state: GameState = Field(alias="gameState")
    agent_actions: Optional[dict[str, str]] = Field(default=None, alias="agentActions")


class AdvanceSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent_actions: Optional[dict[str, str]] = Field(default=None, alias="agentActions")


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    game_state: Optional[GameState] = Field(default=None, alias="gameState")
    grid: Optional[Grid] = None
    world_description: str = Field(default="", alias="worldDescription", max_length=4000)

    @model_validator(mode="after")
    def _one_source(self) -> "CreateSessionRequest":
        if (self.game_state is None) == (self.grid is None):
            raise ValueError("provide exactly one of gameState or grid")
        if self.grid is not None and (not self.grid or not self.grid[0] or not is_rectangular(self.grid)):
            raise ValueError("grid must be a non-empty rectangle")
        return self


class SetCellRequest(BaseModel):
    content: str = Field(default="", max_length=2000)


def _require_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    prefix = "bearer "
    if not authorization.lower().startswith(prefix):
        raise HTTPException(status_code=401, detail="Authorization must be Bearer token")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return token


def _session_payload(session: Any) -> dict[str, Any]:
    return {"ok": True, "session": session.to_dict()}


@router.post("/turns/advance")
async def advance_turn(
    req: AdvanceTurnRequest,
    authorization: Optional[str] = Header(default=None),
) -> dict:
    api_key = _require_bearer_token(authorization)
    logger.info(
        "[TURN] Stateless advance: turns=%d agents=%d",
        len(req.game_state.history),
        len(req.game_state.agents),
    )
    outcome = await turn_engine().advance_turn(req.game_state, api_key, agent_actions=req.agent_actions)
    return {
        "ok": True,
        "gameState": outcome.game_state.to_wire(),
        "report": outcome.report.as_dict(),
    }


@router.post("/sessions")
def create_session(req: CreateSessionRequest) -> dict:
    if req.game_state is not None:
        game_state = req.game_state
    else:
        game_state = build_initial_game_state(req.grid or [], req.world_description)
    session = get_session_store().create(game_state)
    return _session_payload(session)


@router.get("/sessions/{session_id}")
def get_session(session_id: str) -> dict:
    return _session_payload(get_session_store().get(session_id))


@router.post("/sessions/{session_id}/advance")
async def advance_session(
    session_id: str,
    req: Optional[AdvanceSessionRequest] = None,
    authorization: Optional[str] = Header(default=None),
) -> dict:
    api_key = _require_bearer_token(authorization)
    store = get_session_store()
    outcome = await store.advance(
        session_id,
        turn_engine(),
        api_key,
        agent_actions=req.agent_actions if req else None,
    )
    return {
        "ok": True,
        "session_id": session_id,
        "gameState": outcome.game_state.to_wire(),
        "report": outcome.report.as_dict(),
    }


@router.put("/sessions/{session_id}/cells/{row}/{col}")
def set_session_cell(session_id: str, row: int, col: int, req: SetCellRequest) -> dict:
    session = get_session_store().set_cell(session_id, row, col, req.content)
    return _session_payload(session)


@router.post("/sessions/{session_id}/story")
async def tell_session_story(
    session_id: str,
    authorization: Optional[str] = Header(default=None),
) -> dict:
    api_key = _require_bearer_token(authorization)
    session = get_session_store().get(session_id)
    story = await asyncio.to_thread(
        oracle_client().tell_story,
        game_state=session.game_state,
        api_key=api_key,
        session_id=session_id,
    )
    return {"ok": True, "session_id": session_id, "story": story}


@router.delete("/sessions/{session_id}")
def delete_session(session_id: str) -> dict:
    get_session_store().delete(session_id)
    return {"ok": True, "session_id": session_id}
