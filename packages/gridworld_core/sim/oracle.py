"""Oracle call sites for the turn engine, each with a documented fallback."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Sequence
import logging

from pydantic import BaseModel

from packages.gridworld_core.llm.task_runner import PolicyTaskRunner, ProviderInvoker
from packages.gridworld_core.world.grid import DEFAULT_GRID_COLS, DEFAULT_GRID_ROWS, grid_shape
from packages.gridworld_core.world.models import (
    Agent,
    AgentConflictReport,
    EnvironmentalActions,
    GameState,
    Grid,
    ProposalResult,
    ScenarioPayload,
    TextOutput,
)

from . import prompts
from .errors import ScenarioGenerationError


logger = logging.getLogger("gridworld_core.sim.oracle")

PolicyLookup = Callable[[str], Any]
LogSink = Callable[[dict[str, Any]], None]

AGENT_ACTION_FALLBACK = "The agent hesitates, unsure of what to do next."
PROPOSAL_FALLBACK_EXPLANATION = "No changes were produced for this action (default)."
TURN_SUMMARY_FALLBACK = "No changes occurred this turn."
STORY_FALLBACK = "The tale remains untold..."


@dataclass(frozen=True)
class Narration:
    text: str
    narrated: bool


def _heuristic_agent_action(_: dict[str, Any]) -> dict[str, Any]:
    return {"text": AGENT_ACTION_FALLBACK}


def _heuristic_empty_proposal(context: dict[str, Any]) -> dict[str, Any]:
    explanation = str(context.get("fallback_explanation") or PROPOSAL_FALLBACK_EXPLANATION)
    return {"changes": [], "explanation": explanation}


def _heuristic_no_environment(_: dict[str, Any]) -> dict[str, Any]:
    return {"environmentalActions": []}


def _heuristic_turn_summary(_: dict[str, Any]) -> dict[str, Any]:
    return {"text": TURN_SUMMARY_FALLBACK}


def _heuristic_story(_: dict[str, Any]) -> dict[str, Any]:
    return {"text": STORY_FALLBACK}


def _heuristic_no_scenario(_: dict[str, Any]) -> dict[str, Any]:
    return {}


class OracleClient:
    """Facade over the policy task runner, one method per oracle call site.

    Every method is synchronous and blocking; the turn engine dispatches them
    off the event loop. Apart from scenario generation, no method raises on
    oracle failure: each returns its fallback value instead.
    """

    def __init__(
        self,
        *,
        policy_lookup: PolicyLookup | None = None,
        log_sink: LogSink | None = None,
        provider_invoker: ProviderInvoker | None = None,
    ) -> None:
        self._runner = PolicyTaskRunner(
            policy_lookup=policy_lookup,
            log_sink=log_sink,
            provider_invoker=provider_invoker,
        )

    def _input_budget(self, task_name: str) -> int:
        return int(self._runner.policy_for(task_name).max_input_tokens)

    def _run_task(
        self,
        *,
        task_name: str,
        api_key: str | None,
        prompt_text: str,
        heuristic_fn: Callable[[dict[str, Any]], dict[str, Any]],
        output_schema: type[BaseModel],
        system_prompt: str | None = None,
        session_id: str | None = None,
        agent_name: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> tuple[dict[str, Any], str]:
        result = self._runner.run(
            task_name=task_name,
            session_id=session_id,
            agent_name=agent_name,
            api_key=api_key,
            prompt_text=prompt_text,
            context=dict(context or {}),
            heuristic_fn=heuristic_fn,
            system_prompt=system_prompt,
            output_schema=output_schema,
        )
        return result.output, result.route

    def narrate_agent_action(
        self,
        *,
        agent: Agent,
        grid: Grid,
        world_description: str,
        api_key: str | None,
        session_id: str | None = None,
    ) -> Narration:
        """Narrate one agent's action; ``narrated`` is False for the fallback text."""
        output, route = self._run_task(
            task_name="agent_action",
            api_key=api_key,
            prompt_text=prompts.compose_agent_action_prompt(
                agent=agent,
                grid=grid,
                world_description=world_description,
                max_input_tokens=self._input_budget("agent_action"),
            ),
            system_prompt=prompts.AGENT_ACTION_SYSTEM_PROMPT,
            heuristic_fn=_heuristic_agent_action,
            output_schema=TextOutput,
            session_id=session_id,
            agent_name=agent.name,
        )
        return Narration(text=str(output["text"]), narrated=route == "provider")

    def translate_action(
        self,
        *,
        action: str,
        grid: Grid,
        world_description: str,
        api_key: str | None,
        session_id: str | None = None,
        agent_name: str | None = None,
    ) -> ProposalResult:
        output, _ = self._run_task(
            task_name="action_to_changes",
            api_key=api_key,
            prompt_text=prompts.compose_action_to_changes_prompt(
                action=action, grid=grid, world_description=world_description
            ),
            heuristic_fn=_heuristic_empty_proposal,
            output_schema=ProposalResult,
            session_id=session_id,
            agent_name=agent_name,
        )
        return ProposalResult.model_validate(output)

    def generate_environmental_actions(
        self,
        *,
        grid: Grid,
        world_description: str,
        api_key: str | None,
        session_id: str | None = None,
    ) -> list[ProposalResult]:
        output, _ = self._run_task(
            task_name="environmental_actions",
            api_key=api_key,
            prompt_text=prompts.compose_environmental_actions_prompt(
                grid=grid, world_description=world_description
            ),
            heuristic_fn=_heuristic_no_environment,
            output_schema=EnvironmentalActions,
            session_id=session_id,
        )
        return list(EnvironmentalActions.model_validate(output).environmental_actions)

    def adjudicate_conflicts(
        self,
        *,
        conflict_group: Sequence[ProposalResult],
        grid: Grid,
        world_description: str,
        api_key: str | None,
        session_id: str | None = None,
    ) -> ProposalResult:
        output, _ = self._run_task(
            task_name="adjudicate_conflicts",
            api_key=api_key,
            prompt_text=prompts.compose_adjudication_prompt(
                conflict_group=conflict_group, grid=grid, world_description=world_description
            ),
            system_prompt=prompts.JSON_SYSTEM_PROMPT,
            heuristic_fn=_heuristic_empty_proposal,
            output_schema=ProposalResult,
            session_id=session_id,
            context={"fallback_explanation": "The conflicting actions cancelled out (default)."},
        )
        return ProposalResult.model_validate(output)

    def resolve_agent_conflicts(
        self,
        *,
        report: AgentConflictReport,
        grid: Grid,
        world_description: str,
        api_key: str | None,
        session_id: str | None = None,
    ) -> ProposalResult | None:
        if not report.has_conflicts:
            return None
        output, _ = self._run_task(
            task_name="resolve_agent_conflicts",
            api_key=api_key,
            prompt_text=prompts.compose_agent_conflict_prompt(
                report=report, grid=grid, world_description=world_description
            ),
            system_prompt=prompts.RESOLVER_SYSTEM_PROMPT,
            heuristic_fn=_heuristic_empty_proposal,
            output_schema=ProposalResult,
            session_id=session_id,
            context={"fallback_explanation": "Agent conflicts were left unresolved (default)."},
        )
        return ProposalResult.model_validate(output)

    def summarize_turn(
        self,
        *,
        explanations: Sequence[str],
        world_description: str,
        api_key: str | None,
        session_id: str | None = None,
    ) -> str:
        output, _ = self._run_task(
            task_name="summarize_turn",
            api_key=api_key,
            prompt_text=prompts.compose_turn_summary_prompt(
                explanations=explanations, world_description=world_description
            ),
            heuristic_fn=_heuristic_turn_summary,
            output_schema=TextOutput,
            session_id=session_id,
        )
        return str(output["text"])

    def generate_scenario(
        self,
        *,
        user_description: str,
        api_key: str | None,
        rows: int = DEFAULT_GRID_ROWS,
        cols: int = DEFAULT_GRID_COLS,
    ) -> ScenarioPayload:
        output, route = self._run_task(
            task_name="generate_scenario",
            api_key=api_key,
            prompt_text=prompts.compose_scenario_prompt(user_description=user_description, rows=rows, cols=cols),
            system_prompt=prompts.SCENARIO_SYSTEM_PROMPT,
            heuristic_fn=_heuristic_no_scenario,
            output_schema=ScenarioPayload,
        )
        if route != "provider":
            logger.warning("[SCENARIO] No usable scenario for prompt of %d chars", len(user_description))
            raise ScenarioGenerationError("The oracle did not produce a usable scenario", stage="scenario")
        payload = ScenarioPayload.model_validate(output)
        shape = grid_shape(payload.grid)
        if shape != (rows, cols):
            logger.warning("[SCENARIO] Requested a %dx%d grid, got %dx%d", rows, cols, shape[0], shape[1])
            raise ScenarioGenerationError(
                f"The oracle returned a {shape[0]}x{shape[1]} grid instead of {rows}x{cols}",
                stage="scenario",
            )
        return payload

    def tell_story(
        self,
        *,
        game_state: GameState,
        api_key: str | None,
        session_id: str | None = None,
    ) -> str:
        output, _ = self._run_task(
            task_name="tell_story",
            api_key=api_key,
            prompt_text=prompts.compose_story_prompt(
                game_state=game_state,
                max_input_tokens=self._input_budget("tell_story"),
            ),
            system_prompt=prompts.STORY_SYSTEM_PROMPT,
            heuristic_fn=_heuristic_story,
            output_schema=TextOutput,
            session_id=session_id,
        )
        return str(output["text"])
