"""LLM control-plane endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from packages.gridworld_core.llm.policy import DEFAULT_TASK_POLICIES, normalize_policy_row

from ..storage.llm_control import get_policy, list_call_logs, list_policies, upsert_policy


router = APIRouter(prefix="/api/v1/llm", tags=["llm"])


class UpsertPolicyRequest(BaseModel):
    model_tier: str = Field(pattern="^(strong|fast|cheap|heuristic)$")
    max_input_tokens: int = Field(ge=1, le=200000)
    max_output_tokens: int = Field(ge=1, le=64000)
    temperature: float = Field(ge=0.0, le=2.0)
    timeout_ms: int = Field(ge=100, le=120000)
    retry_limit: int = Field(ge=0, le=10)


def _require_known_task(task_name: str) -> str:
    if task_name not in DEFAULT_TASK_POLICIES:
        raise HTTPException(status_code=404, detail=f"Unknown oracle task: {task_name}")
    return task_name


@router.get("/policies")
def get_policies() -> dict:
    policies = [p.as_dict() for p in list_policies()]
    return {"count": len(policies), "policies": policies}


@router.get("/policies/{task_name}")
def get_policy_by_task(task_name: str) -> dict:
    policy = get_policy(_require_known_task(task_name))
    return {"task_name": task_name, "policy": policy.as_dict()}


@router.put("/policies/{task_name}")
def put_policy(task_name: str, req: UpsertPolicyRequest) -> dict:
    normalized = normalize_policy_row(
        _require_known_task(task_name),
        {
            "model_tier": req.model_tier,
            "max_input_tokens": req.max_input_tokens,
            "max_output_tokens": req.max_output_tokens,
            "temperature": req.temperature,
            "timeout_ms": req.timeout_ms,
            "retry_limit": req.retry_limit,
        },
    )
    saved = upsert_policy(normalized)
    return {"ok": True, "policy": saved.as_dict()}


@router.get("/logs")
def get_logs(
    limit: int = Query(default=50, ge=1, le=500),
    task_name: Optional[str] = Query(default=None),
    session_id: Optional[str] = Query(default=None),
) -> dict:
    rows = list_call_logs(limit=limit, task_name=task_name, session_id=session_id)
    return {"count": len(rows), "logs": rows}
