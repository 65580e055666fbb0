"""Scenario generation endpoints."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel, Field

from packages.gridworld_core.sim.session import build_initial_game_state, get_session_store
from packages.gridworld_core.world.grid import DEFAULT_GRID_COLS, DEFAULT_GRID_ROWS

from ..services.oracle_runtime import oracle_client


logger = logging.getLogger("gridworld_api.scenarios")

router = APIRouter(prefix="/api/v1/scenarios", tags=["scenarios"])


class GenerateScenarioRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    rows: int = Field(default=DEFAULT_GRID_ROWS, ge=2, le=40)
    cols: int = Field(default=DEFAULT_GRID_COLS, ge=2, le=40)
    create_session: bool = False


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


@router.post("/generate")
async def generate_scenario(
    req: GenerateScenarioRequest,
    authorization: Optional[str] = Header(default=None),
) -> dict:
    api_key = _require_bearer_token(authorization)
    scenario = await asyncio.to_thread(
        oracle_client().generate_scenario,
        user_description=req.prompt,
        api_key=api_key,
        rows=req.rows,
        cols=req.cols,
    )
    game_state = build_initial_game_state(scenario.grid, scenario.world_description)
    logger.info(
        "[SCENARIO] Generated %dx%d world with %d agent(s)",
        len(scenario.grid),
        len(scenario.grid[0]),
        len(game_state.agents),
    )
    payload = {"ok": True, "gameState": game_state.to_wire()}
    if req.create_session:
        session = get_session_store().create(game_state)
        payload["session_id"] = session.session_id
    return payload
