"""Concurrent fan-out of agent narration and proposal translation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence
import asyncio
import logging

from packages.gridworld_core.world.agents import HistoryAppend, history_append_for
from packages.gridworld_core.world.models import Agent, Grid, ProposalResult

from .oracle import AGENT_ACTION_FALLBACK, PROPOSAL_FALLBACK_EXPLANATION, OracleClient


logger = logging.getLogger("gridworld_core.sim.collector")


@dataclass(frozen=True)
class AgentAction:
    agent_name: str
    action: str


@dataclass(frozen=True)
class CollectedProposals:
    agent_proposals: list[ProposalResult]
    environmental_proposals: list[ProposalResult]

    @property
    def all_proposals(self) -> list[ProposalResult]:
        return [*self.agent_proposals, *self.environmental_proposals]


def fallback_proposal(explanation: str = PROPOSAL_FALLBACK_EXPLANATION) -> ProposalResult:
    return ProposalResult(changes=[], explanation=explanation)


async def narrate_agent_actions(
    oracle: OracleClient,
    *,
    agents: Sequence[Agent],
    grid: Grid,
    world_description: str,
    api_key: str,
    session_id: str | None = None,
) -> tuple[list[AgentAction], list[HistoryAppend]]:
    """Ask the oracle what every agent does this turn.

    Returns the actions in agent order together with the history entries the
    caller applies once every narration has finished. An agent whose narration
    fell back to the default text gets no history entry.
    """
    results = await asyncio.gather(
        *(
            asyncio.to_thread(
                oracle.narrate_agent_action,
                agent=agent,
                grid=grid,
                world_description=world_description,
                api_key=api_key,
                session_id=session_id,
            )
            for agent in agents
        ),
        return_exceptions=True,
    )
    actions: list[AgentAction] = []
    appends: list[HistoryAppend] = []
    for agent, result in zip(agents, results):
        if isinstance(result, BaseException):
            logger.error("[COLLECT] Narration for '%s' raised %s: %s", agent.name, result.__class__.__name__, result)
            actions.append(AgentAction(agent_name=agent.name, action=AGENT_ACTION_FALLBACK))
            continue
        actions.append(AgentAction(agent_name=agent.name, action=result.text))
        if result.narrated:
            appends.append(history_append_for(agent, result.text))
    return actions, appends


async def collect_proposals(
    oracle: OracleClient,
    *,
    grid: Grid,
    world_description: str,
    agent_actions: Sequence[AgentAction],
    api_key: str,
    session_id: str | None = None,
) -> CollectedProposals:
    """Translate every agent action and fetch environmental actions concurrently.

    A call that fails degrades to an empty proposal (or no environmental
    actions) so one bad response never blocks the turn.
    """
    translations = [
        asyncio.to_thread(
            oracle.translate_action,
            action=item.action,
            grid=grid,
            world_description=world_description,
            api_key=api_key,
            session_id=session_id,
            agent_name=item.agent_name,
        )
        for item in agent_actions
    ]
    environment = asyncio.to_thread(
        oracle.generate_environmental_actions,
        grid=grid,
        world_description=world_description,
        api_key=api_key,
        session_id=session_id,
    )
    *translated, environmental = await asyncio.gather(*translations, environment, return_exceptions=True)

    agent_proposals: list[ProposalResult] = []
    for item, result in zip(agent_actions, translated):
        if isinstance(result, BaseException):
            logger.error(
                "[COLLECT] Translation for '%s' raised %s: %s", item.agent_name, result.__class__.__name__, result
            )
            agent_proposals.append(fallback_proposal())
        else:
            agent_proposals.append(result)

    if isinstance(environmental, BaseException):
        logger.error("[COLLECT] Environmental actions raised %s: %s", environmental.__class__.__name__, environmental)
        environmental_proposals: list[ProposalResult] = []
    else:
        environmental_proposals = list(environmental)

    logger.info(
        "[COLLECT] %d agent proposal(s), %d environmental proposal(s)",
        len(agent_proposals),
        len(environmental_proposals),
    )
    return CollectedProposals(agent_proposals=agent_proposals, environmental_proposals=environmental_proposals)
