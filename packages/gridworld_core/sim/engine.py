"""Turn resolution engine: proposals in, one validated grid delta out."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Sequence
import asyncio
import logging

from packages.gridworld_core.world.agents import append_history, derive_agents, history_append_for
from packages.gridworld_core.world.grid import apply_world_changes, clone_grid
from packages.gridworld_core.world.models import (
    AgentConflictReport,
    GameState,
    Grid,
    ProposalResult,
    TurnState,
    WorldChange,
)

from .collector import AgentAction, collect_proposals, fallback_proposal, narrate_agent_actions
from .conflicts import GroupingResult, group_proposals
from .errors import EmptyHistoryError, TurnEngineError, TurnFailedError, require_api_key
from .oracle import OracleClient
from .validator import detect_agent_conflicts


logger = logging.getLogger("gridworld_core.sim.engine")

GroupingFn = Callable[[Sequence[ProposalResult]], GroupingResult]


@dataclass
class TurnReport:
    agent_actions: list[AgentAction] = field(default_factory=list)
    proposal_count: int = 0
    accepted_count: int = 0
    conflict_group_count: int = 0
    agent_conflicts: AgentConflictReport = field(default_factory=AgentConflictReport)
    resolution_applied: bool = False
    remaining_conflicts: AgentConflictReport | None = None
    applied_change_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "agent_actions": [{"agent": a.agent_name, "action": a.action} for a in self.agent_actions],
            "proposal_count": self.proposal_count,
            "accepted_count": self.accepted_count,
            "conflict_group_count": self.conflict_group_count,
            "agent_conflicts": self.agent_conflicts.to_wire(),
            "resolution_applied": self.resolution_applied,
            "remaining_conflicts": self.remaining_conflicts.to_wire() if self.remaining_conflicts else None,
            "applied_change_count": self.applied_change_count,
        }


@dataclass(frozen=True)
class ResolvedTurn:
    grid: Grid
    description: str
    merged: list[ProposalResult]
    report: TurnReport


@dataclass(frozen=True)
class TurnOutcome:
    game_state: GameState
    report: TurnReport


def flatten_changes(proposals: Sequence[ProposalResult]) -> list[WorldChange]:
    return [change for proposal in proposals for change in proposal.changes]


def merge_proposals(
    accepted: Sequence[ProposalResult],
    adjudicated: Sequence[ProposalResult],
    resolution: ProposalResult | None,
) -> list[ProposalResult]:
    """Fixed merge order: uncontested, then adjudicated, then the agent fix last."""
    merged = [*accepted, *adjudicated]
    if resolution is not None:
        merged.append(resolution)
    return merged


@contextmanager
def _stage(name: str) -> Iterator[None]:
    try:
        yield
    except TurnEngineError:
        raise
    except Exception as exc:
        logger.exception("[TURN] Stage '%s' failed", name)
        raise TurnFailedError(f"{exc.__class__.__name__}: {exc}", stage=name) from exc


class TurnEngine:
    """Runs one pass of the resolution pipeline per call.

    The engine holds no per-turn state; callers must not run two turns for the
    same game state at once.
    """

    def __init__(self, oracle: OracleClient, *, grouping: GroupingFn = group_proposals) -> None:
        self._oracle = oracle
        self._grouping = grouping

    async def advance_turn(
        self,
        game_state: GameState,
        api_key: str | None,
        *,
        agent_actions: Mapping[str, str] | None = None,
        session_id: str | None = None,
    ) -> TurnOutcome:
        """Produce the next game state with exactly one appended turn.

        ``agent_actions`` pins the action text for the named agents; every other
        agent is narrated by the oracle. The input game state is not modified.
        """
        api_key = require_api_key(api_key)
        latest = game_state.latest_turn()
        if latest is None:
            raise EmptyHistoryError("Game state has no turns to advance from", stage="precondition")

        grid = clone_grid(latest.world)
        world_description = game_state.world_description
        logger.info("[TURN] Advancing turn %d (session=%s)", len(game_state.history), session_id)

        with _stage("narrate"):
            agents = derive_agents(grid, game_state.agents)
            pinned = dict(agent_actions or {})
            to_narrate = [agent for agent in agents if agent.name not in pinned]
            narrated, appends = await narrate_agent_actions(
                self._oracle,
                agents=to_narrate,
                grid=grid,
                world_description=world_description,
                api_key=api_key,
                session_id=session_id,
            )
            narrated_by_name = {item.agent_name: item for item in narrated}
            actions: list[AgentAction] = []
            for agent in agents:
                if agent.name in pinned:
                    actions.append(AgentAction(agent_name=agent.name, action=pinned[agent.name]))
                else:
                    actions.append(narrated_by_name[agent.name])
            pinned_appends = [history_append_for(agent, pinned[agent.name]) for agent in agents if agent.name in pinned]
            agents = append_history(agents, [*appends, *pinned_appends])

        resolved = await self.resolve_turn(
            grid=grid,
            world_description=world_description,
            agent_actions=actions,
            api_key=api_key,
            session_id=session_id,
        )

        with _stage("merge"):
            new_turn = TurnState(world=resolved.grid, description=resolved.description)
            new_agents = derive_agents(resolved.grid, agents)
            next_state = game_state.model_copy(
                update={"history": [*game_state.history, new_turn], "agents": new_agents},
                deep=True,
            )
        logger.info(
            "[TURN] Turn %d resolved: %d change(s) applied, %d agent(s) on the grid",
            len(next_state.history) - 1,
            resolved.report.applied_change_count,
            len(new_agents),
        )
        return TurnOutcome(game_state=next_state, report=resolved.report)

    async def resolve_turn(
        self,
        *,
        grid: Grid,
        world_description: str,
        agent_actions: Sequence[AgentAction],
        api_key: str,
        session_id: str | None = None,
    ) -> ResolvedTurn:
        report = TurnReport(agent_actions=list(agent_actions))

        with _stage("collect"):
            collected = await collect_proposals(
                self._oracle,
                grid=grid,
                world_description=world_description,
                agent_actions=agent_actions,
                api_key=api_key,
                session_id=session_id,
            )
            proposals = collected.all_proposals
            report.proposal_count = len(proposals)

        with _stage("group"):
            grouping = self._grouping(proposals)
            report.accepted_count = len(grouping.accepted)
            report.conflict_group_count = len(grouping.conflict_groups)
            if grouping.conflict_groups:
                logger.info(
                    "[CONFLICT] %d conflict group(s) over cells %s",
                    len(grouping.conflict_groups),
                    grouping.contested_cells,
                )

        with _stage("adjudicate"):
            adjudicated = await self._adjudicate(
                grouping.conflict_groups,
                grid=grid,
                world_description=world_description,
                api_key=api_key,
                session_id=session_id,
            )

        with _stage("validate"):
            pending = merge_proposals(grouping.accepted, adjudicated, None)
            conflicts = detect_agent_conflicts(grid, flatten_changes(pending))
            report.agent_conflicts = conflicts
            if conflicts.has_conflicts:
                logger.info("[RESOLVE] Agent conflicts detected: %s", conflicts.to_wire())

        with _stage("resolve"):
            resolution = None
            if conflicts.has_conflicts:
                resolution = await asyncio.to_thread(
                    self._oracle.resolve_agent_conflicts,
                    report=conflicts,
                    grid=grid,
                    world_description=world_description,
                    api_key=api_key,
                    session_id=session_id,
                )
                report.resolution_applied = resolution is not None
                logger.info("[RESOLVE] Resolution: %s", resolution.to_wire() if resolution else None)

        with _stage("merge"):
            merged = merge_proposals(grouping.accepted, adjudicated, resolution)
            changes = flatten_changes(merged)
            new_grid = apply_world_changes(grid, changes)
            report.applied_change_count = len(changes)
            if resolution is not None:
                remaining = detect_agent_conflicts(grid, changes)
                if remaining.has_conflicts:
                    report.remaining_conflicts = remaining
                    logger.warning("[RESOLVE] Agent conflicts remain after resolution: %s", remaining.to_wire())

        with _stage("summarize"):
            description = await asyncio.to_thread(
                self._oracle.summarize_turn,
                explanations=[proposal.explanation for proposal in merged],
                world_description=world_description,
                api_key=api_key,
                session_id=session_id,
            )

        return ResolvedTurn(grid=new_grid, description=description, merged=merged, report=report)

    async def _adjudicate(
        self,
        conflict_groups: Sequence[Sequence[ProposalResult]],
        *,
        grid: Grid,
        world_description: str,
        api_key: str,
        session_id: str | None,
    ) -> list[ProposalResult]:
        if not conflict_groups:
            return []
        results = await asyncio.gather(
            *(
                asyncio.to_thread(
                    self._oracle.adjudicate_conflicts,
                    conflict_group=group,
                    grid=grid,
                    world_description=world_description,
                    api_key=api_key,
                    session_id=session_id,
                )
                for group in conflict_groups
            ),
            return_exceptions=True,
        )
        adjudicated: list[ProposalResult] = []
        for index, result in enumerate(results):
            if isinstance(result, BaseException):
                logger.error("[CONFLICT] Adjudication of group %d raised %s: %s", index, result.__class__.__name__, result)
                adjudicated.append(fallback_proposal("The conflicting actions cancelled out (default)."))
            else:
                adjudicated.append(result)
        return adjudicated
