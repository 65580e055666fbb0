"""LLM control-plane helpers for gridworld oracle tasks."""

from .policy import (
    ALLOWED_MODEL_TIERS,
    DEFAULT_TASK_POLICIES,
    TaskPolicy,
    default_policy_for_task,
    resolve_fallback_chain,
)
from .providers import DEFAULT_MODEL_BY_TIER, default_model_for_tier, execute_tier_model
from .task_runner import PolicyTaskRunner, TaskExecutionResult

__all__ = [
    "ALLOWED_MODEL_TIERS",
    "DEFAULT_TASK_POLICIES",
    "TaskPolicy",
    "default_policy_for_task",
    "resolve_fallback_chain",
    "DEFAULT_MODEL_BY_TIER",
    "default_model_for_tier",
    "execute_tier_model",
    "PolicyTaskRunner",
    "TaskExecutionResult",
]
