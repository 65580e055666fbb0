"""Policy-aware oracle task runner with fallback and logging hooks."""

from __future__ import annotations

from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable
import json
import logging
import uuid

from pydantic import BaseModel

from .policy import (
    TaskPolicy,
    default_policy_for_task,
    estimate_token_count,
    resolve_fallback_chain,
)
from .providers import (
    ProviderExecutionError,
    ProviderExecutionResult,
    ProviderUnavailableError,
    _validate_output_schema,
    execute_tier_model,
)


logger = logging.getLogger("gridworld_core.llm.task_runner")

PolicyLookup = Callable[[str], TaskPolicy]
LogSink = Callable[[dict[str, Any]], None]
HeuristicFn = Callable[[dict[str, Any]], dict[str, Any]]
ProviderInvoker = Callable[..., ProviderExecutionResult]


@dataclass(frozen=True)
class TaskExecutionResult:
    task_name: str
    route: str
    used_tier: str
    output: dict[str, Any]
    prompt_tokens: int
    completion_tokens: int
    latency_ms: int
    over_budget: bool
    policy: dict[str, Any]
    error_code: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "route": self.route,
            "used_tier": self.used_tier,
            "output": self.output,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "latency_ms": self.latency_ms,
            "over_budget": self.over_budget,
            "policy": self.policy,
            "error_code": self.error_code,
        }


class PolicyTaskRunner:
    """Runs oracle tasks under explicit policy constraints.

    A task walks the fallback chain of its policy tier, retrying each tier up to
    ``retry_limit`` extra times on execution errors. A tier that is unavailable
    (bad configuration, missing credential) is skipped immediately. When every
    tier is exhausted the task's heuristic produces the documented default, so a
    caller never sees a provider exception.
    """

    def __init__(
        self,
        *,
        policy_lookup: PolicyLookup | None = None,
        log_sink: LogSink | None = None,
        provider_invoker: ProviderInvoker | None = None,
    ) -> None:
        self._policy_lookup = policy_lookup or default_policy_for_task
        self._log_sink = log_sink
        self._provider_invoker = provider_invoker or execute_tier_model

    def policy_for(self, task_name: str) -> TaskPolicy:
        policy = self._policy_lookup(task_name)
        if not isinstance(policy, TaskPolicy):
            policy = default_policy_for_task(task_name)
        return policy

    def run(
        self,
        *,
        task_name: str,
        session_id: str | None,
        agent_name: str | None,
        api_key: str | None,
        prompt_text: str,
        context: dict[str, Any],
        heuristic_fn: HeuristicFn,
        system_prompt: str | None = None,
        output_schema: type[BaseModel] | None = None,
    ) -> TaskExecutionResult:
        policy = self.policy_for(task_name)

        # Prompts are fitted to the budget where they are composed; never cut here.
        prompt_tokens = estimate_token_count(prompt_text)
        over_budget = prompt_tokens > policy.max_input_tokens
        if over_budget:
            logger.warning(
                "[LLM] %s prompt is ~%d tokens, over its %d token budget",
                task_name,
                prompt_tokens,
                policy.max_input_tokens,
            )
        last_error_code: str | None = None
        fallback_chain = resolve_fallback_chain(policy.model_tier)
        for tier in fallback_chain:
            if tier == "heuristic":
                break
            for _ in range(max(1, policy.retry_limit + 1)):
                start = perf_counter()
                try:
                    provider_result = self._provider_invoker(
                        tier=tier,
                        task_name=task_name,
                        api_key=api_key,
                        system_prompt=system_prompt,
                        prompt_text=prompt_text,
                        output_format=policy.output_format,
                        temperature=policy.temperature,
                        max_output_tokens=policy.max_output_tokens,
                        timeout_ms=policy.timeout_ms,
                    )
                    output = _validate_output_schema(task_name, dict(provider_result.output), output_schema)
                    latency_ms = int((perf_counter() - start) * 1000)
                    completion_tokens = int(
                        provider_result.completion_tokens
                        if provider_result.completion_tokens is not None
                        else max(1, len(json.dumps(output, separators=(",", ":"))) // 4)
                    )
                    result = TaskExecutionResult(
                        task_name=task_name,
                        route="provider",
                        used_tier=tier,
                        output=output,
                        prompt_tokens=int(provider_result.prompt_tokens or prompt_tokens),
                        completion_tokens=completion_tokens,
                        latency_ms=latency_ms,
                        over_budget=over_budget,
                        policy=policy.as_dict(),
                    )
                    self._emit_log(
                        session_id=session_id,
                        agent_name=agent_name,
                        task_name=task_name,
                        model_name=provider_result.model_name,
                        prompt_tokens=result.prompt_tokens,
                        completion_tokens=result.completion_tokens,
                        latency_ms=latency_ms,
                        success=True,
                        error_code=None,
                    )
                    return result
                except ProviderUnavailableError as exc:
                    latency_ms = int((perf_counter() - start) * 1000)
                    last_error_code = exc.error_code
                    logger.warning("[LLM] %s unavailable on tier '%s': %s", task_name, tier, exc)
                    self._emit_log(
                        session_id=session_id,
                        agent_name=agent_name,
                        task_name=task_name,
                        model_name=exc.model_name or f"{tier}:provider",
                        prompt_tokens=prompt_tokens,
                        completion_tokens=0,
                        latency_ms=latency_ms,
                        success=False,
                        error_code=exc.error_code,
                    )
                    break
                except ProviderExecutionError as exc:
                    latency_ms = int((perf_counter() - start) * 1000)
                    last_error_code = exc.error_code
                    logger.warning("[LLM] %s failed on tier '%s' (%s): %s", task_name, tier, exc.error_code, exc)
                    self._emit_log(
                        session_id=session_id,
                        agent_name=agent_name,
                        task_name=task_name,
                        model_name=exc.model_name or f"{tier}:provider",
                        prompt_tokens=prompt_tokens,
                        completion_tokens=0,
                        latency_ms=latency_ms,
                        success=False,
                        error_code=exc.error_code,
                    )
                    continue
                except Exception as exc:
                    latency_ms = int((perf_counter() - start) * 1000)
                    last_error_code = f"provider_exception:{exc.__class__.__name__}"
                    logger.exception("[LLM] %s raised unexpectedly on tier '%s'", task_name, tier)
                    self._emit_log(
                        session_id=session_id,
                        agent_name=agent_name,
                        task_name=task_name,
                        model_name=f"{tier}:provider",
                        prompt_tokens=prompt_tokens,
                        completion_tokens=0,
                        latency_ms=latency_ms,
                        success=False,
                        error_code=last_error_code,
                    )
                    continue

        start = perf_counter()
        output = heuristic_fn(context)
        latency_ms = int((perf_counter() - start) * 1000)
        completion_tokens = max(1, len(json.dumps(output, separators=(",", ":"))) // 4)
        result = TaskExecutionResult(
            task_name=task_name,
            route="heuristic",
            used_tier="heuristic",
            output=output,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            over_budget=over_budget,
            policy=policy.as_dict(),
            error_code=last_error_code,
        )
        logger.info("[LLM] %s fell back to heuristic (last error: %s)", task_name, last_error_code)
        self._emit_log(
            session_id=session_id,
            agent_name=agent_name,
            task_name=task_name,
            model_name="heuristic:local",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            success=True,
            error_code=None,
        )
        return result

    def _emit_log(
        self,
        *,
        session_id: str | None,
        agent_name: str | None,
        task_name: str,
        model_name: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int,
        success: bool,
        error_code: str | None,
    ) -> None:
        if not self._log_sink:
            return
        self._log_sink(
            {
                "id": str(uuid.uuid4()),
                "session_id": session_id,
                "agent_name": agent_name,
                "task_name": task_name,
                "model_name": model_name,
                "prompt_tokens": int(prompt_tokens),
                "completion_tokens": int(completion_tokens),
                "latency_ms": int(latency_ms),
                "success": bool(success),
                "error_code": error_code,
            }
        )
