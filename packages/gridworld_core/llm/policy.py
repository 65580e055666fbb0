"""LLM task policy primitives for gridworld oracle calls."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable, Sequence


ALLOWED_MODEL_TIERS = ("strong", "fast", "cheap", "heuristic")
FALLBACK_CHAIN_BY_TIER: dict[str, tuple[str, ...]] = {
    "strong": ("strong", "fast", "cheap", "heuristic"),
    "fast": ("fast", "cheap", "heuristic"),
    "cheap": ("cheap", "heuristic"),
    "heuristic": ("heuristic",),
}
ALLOWED_OUTPUT_FORMATS = ("json", "text")


@dataclass(frozen=True)
class TaskPolicy:
    task_name: str
    model_tier: str
    max_input_tokens: int
    max_output_tokens: int
    temperature: float
    timeout_ms: int
    retry_limit: int
    output_format: str = "json"

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["fallback_chain"] = list(resolve_fallback_chain(self.model_tier))
        return out


DEFAULT_TASK_POLICIES: dict[str, TaskPolicy] = {
    "agent_action": TaskPolicy(
        task_name="agent_action",
        model_tier="fast",
        max_input_tokens=6000,
        max_output_tokens=1000,
        temperature=0.7,
        timeout_ms=30000,
        retry_limit=1,
        output_format="text",
    ),
    "action_to_changes": TaskPolicy(
        task_name="action_to_changes",
        model_tier="fast",
        max_input_tokens=8000,
        max_output_tokens=1200,
        temperature=0.7,
        timeout_ms=30000,
        retry_limit=1,
    ),
    "environmental_actions": TaskPolicy(
        task_name="environmental_actions",
        model_tier="fast",
        max_input_tokens=8000,
        max_output_tokens=1600,
        temperature=0.7,
        timeout_ms=30000,
        retry_limit=1,
    ),
    "adjudicate_conflicts": TaskPolicy(
        task_name="adjudicate_conflicts",
        model_tier="strong",
        max_input_tokens=10000,
        max_output_tokens=1600,
        temperature=0.7,
        timeout_ms=45000,
        retry_limit=2,
    ),
    "resolve_agent_conflicts": TaskPolicy(
        task_name="resolve_agent_conflicts",
        model_tier="strong",
        max_input_tokens=10000,
        max_output_tokens=1200,
        temperature=0.3,
        timeout_ms=45000,
        retry_limit=2,
    ),
    "summarize_turn": TaskPolicy(
        task_name="summarize_turn",
        model_tier="cheap",
        max_input_tokens=4000,
        max_output_tokens=400,
        temperature=0.7,
        timeout_ms=20000,
        retry_limit=1,
        output_format="text",
    ),
    "generate_scenario": TaskPolicy(
        task_name="generate_scenario",
        model_tier="strong",
        max_input_tokens=4000,
        max_output_tokens=2000,
        temperature=0.8,
        timeout_ms=60000,
        retry_limit=1,
    ),
    "tell_story": TaskPolicy(
        task_name="tell_story",
        model_tier="fast",
        max_input_tokens=16000,
        max_output_tokens=1000,
        temperature=0.8,
        timeout_ms=45000,
        retry_limit=1,
        output_format="text",
    ),
}


def normalize_model_tier(value: str) -> str:
    tier = str(value or "").strip().lower()
    if tier not in ALLOWED_MODEL_TIERS:
        raise ValueError(f"Unsupported model tier: {value}")
    return tier


def normalize_output_format(value: str) -> str:
    fmt = str(value or "").strip().lower()
    if fmt not in ALLOWED_OUTPUT_FORMATS:
        raise ValueError(f"Unsupported output format: {value}")
    return fmt


def resolve_fallback_chain(model_tier: str) -> tuple[str, ...]:
    tier = normalize_model_tier(model_tier)
    return FALLBACK_CHAIN_BY_TIER[tier]


def default_policy_for_task(task_name: str) -> TaskPolicy:
    key = str(task_name).strip()
    if key in DEFAULT_TASK_POLICIES:
        return DEFAULT_TASK_POLICIES[key]
    return TaskPolicy(
        task_name=key or "unknown_task",
        model_tier="cheap",
        max_input_tokens=4000,
        max_output_tokens=800,
        temperature=0.5,
        timeout_ms=20000,
        retry_limit=1,
    )


def normalize_policy_row(task_name: str, row: dict[str, Any]) -> TaskPolicy:
    # The output format is owned by the call site, not by operators.
    fallback_format = default_policy_for_task(task_name).output_format
    return TaskPolicy(
        task_name=task_name,
        model_tier=normalize_model_tier(str(row.get("model_tier") or "cheap")),
        max_input_tokens=max(1, int(row.get("max_input_tokens") or 1)),
        max_output_tokens=max(1, int(row.get("max_output_tokens") or 1)),
        temperature=float(row.get("temperature") if row.get("temperature") is not None else 0.5),
        timeout_ms=max(100, int(row.get("timeout_ms") or 100)),
        retry_limit=max(0, int(row.get("retry_limit") or 0)),
        output_format=normalize_output_format(str(row.get("output_format") or fallback_format)),
    )


def estimate_token_count(text: str) -> int:
    # Cheap estimate that keeps routing deterministic and provider-agnostic.
    return max(1, len(text) // 4)


def fit_entries_to_budget(
    entries: Sequence[str],
    render: Callable[[Sequence[str]], str],
    max_input_tokens: int,
) -> tuple[list[str], int]:
    """Drop the oldest ``entries`` until ``render(kept)`` fits the token budget.

    Only the growing part of a prompt is shortened; whatever ``render`` puts
    around the entries is always sent. Returns the kept entries and how many
    were dropped.
    """
    kept = list(entries)
    dropped = 0
    while kept and estimate_token_count(render(kept)) > max_input_tokens:
        kept.pop(0)
        dropped += 1
    return kept, dropped
