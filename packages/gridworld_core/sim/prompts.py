"""Prompt builders for every oracle call site."""

from __future__ import annotations

import json
from typing import Sequence

from packages.gridworld_core.llm.policy import fit_entries_to_budget
from packages.gridworld_core.world.grid import describe_world, describe_world_full
from packages.gridworld_core.world.models import (
    Agent,
    AgentConflictReport,
    GameState,
    Grid,
    ProposalResult,
)


JSON_SYSTEM_PROMPT = (
    "You manage world state changes in a text-based grid game. "
    "Always respond with valid JSON in the exact format requested. "
    "Be logical and consistent with how agents interact with the world."
)
AGENT_ACTION_SYSTEM_PROMPT = (
    "You generate realistic actions for agents in a text-based game world. "
    "Be concise and focused on character-appropriate actions."
)
RESOLVER_SYSTEM_PROMPT = (
    "You resolve agent conflicts in a text-based grid game. "
    "Always respond with valid JSON in the exact format requested. "
    "Each agent must end up in exactly one cell."
)
SCENARIO_SYSTEM_PROMPT = (
    "You are a game master who designs gridworld scenarios. "
    "Always respond with valid JSON in the exact format requested."
)
STORY_SYSTEM_PROMPT = (
    "You are a storyteller who turns game histories into vivid, dramatic narratives."
)

SINGLE_AGENT_RULE = """
RULE: A CELL HOLDS AT MOST ONE AGENT.
Agents are written as "<AgentName> state". Never put two agent names in one cell,
for example "<Knight> fights <Druid>" or "<Knight> and <Druid>" are forbidden.
When agents interact, keep the acting agent in its target cell, keep or move the
other agent to a different cell, and describe the interaction in the explanation.
"""

MOVEMENT_RULES = """
MOVEMENT RULES:
Agents move one cell at a time to an adjacent cell (row and column each within 1).
Longer jumps are allowed only with a clear special explanation such as teleportation,
flight, or being thrown by an explosion. Unexplained long moves become a single step
in the intended direction.
When moving an agent, emit TWO changes: clear the old cell with "" and write the new
cell. Leaving the old cell in place duplicates the agent.
"""

STATE_RULES = """
Agent state lives in the agent's cell text, e.g. "<Knight> is wounded". Preserve the
existing state and add to it; statuses that matter in later turns must stay in the text.
"""

CHANGES_FORMAT = """
Respond with a JSON object:
{
  "changes": [{"row": number, "col": number, "newContent": "new cell text"}],
  "explanation": "Brief explanation of what happened"
}
Only include cells that change. Use "" for an empty cell.
"""

ENVIRONMENT_FORMAT = """
Respond with a JSON object:
{
  "environmentalActions": [
    {
      "changes": [{"row": number, "col": number, "newContent": "new cell text"}],
      "explanation": "Brief explanation of the environmental change"
    }
  ]
}
If nothing in the environment acts this turn, return {"environmentalActions": []}.
Only include cells that change. Use "" for an empty cell.
"""


def _history_lines(entries: Sequence[str], dropped: int) -> str:
    if not entries:
        return "None yet." if not dropped else f"({dropped} earlier entries omitted)"
    lines = ", ".join(entries)
    if dropped:
        return f"({dropped} earlier entries omitted) {lines}"
    return lines


def compose_agent_action_prompt(
    *,
    agent: Agent,
    grid: Grid,
    world_description: str,
    max_input_tokens: int | None = None,
) -> str:
    """Build the narration prompt.

    With ``max_input_tokens`` the oldest private history entries are dropped
    until the prompt fits; the instructions and current state are always kept.
    """
    entries = [json.dumps(entry.to_wire(), separators=(",", ":")) for entry in agent.private_history]

    def render(kept: Sequence[str]) -> str:
        return _render_agent_action_prompt(
            agent=agent,
            history=_history_lines(kept, len(entries) - len(kept)),
            grid=grid,
            world_description=world_description,
        )

    if max_input_tokens is None:
        return render(entries)
    kept, _ = fit_entries_to_budget(entries, render, max_input_tokens)
    return render(kept)


def _render_agent_action_prompt(*, agent: Agent, history: str, grid: Grid, world_description: str) -> str:
    return f"""You are an agent in a text-based world. Decide what this agent does next.
Only one agent can occupy a cell at a time. Do not mention rules or that the world is a grid.

Agent:
- Name: {agent.name}
- Color: {agent.color}
- Current state: {agent.current_state}
- Private history: {history}

World description: {world_description}

Current world:
{describe_world(grid)}

Write a paragraph or two on what {agent.name} does, including their inner monologue,
following their personality and situation. If the agent is dead, respond with "The agent is dead."
"""


def compose_action_to_changes_prompt(*, action: str, grid: Grid, world_description: str) -> str:
    return f"""An agent made a decision in a text-based gridworld game.
Convert the decision into the changes it causes in the world.

Agent action:
{action}

World description: {world_description}

Current world:
{describe_world(grid)}

Only output changes DIRECTLY caused by this agent: movement, objects created, modified or
destroyed, and the agent's own state. Do not include environmental processes or the actions
of non-agent entities.
{SINGLE_AGENT_RULE}
{MOVEMENT_RULES}
{STATE_RULES}
{CHANGES_FORMAT}"""


def compose_environmental_actions_prompt(*, grid: Grid, world_description: str) -> str:
    return f"""Examine this gridworld and generate actions for the environmental elements that
act this turn: minions, drones, traps, weather, spells in progress, growing plants, spreading
fire, and any other non-agent entity. Convert each action directly to world changes.

World description: {world_description}

Current world:
{describe_world(grid)}
{SINGLE_AGENT_RULE}
{MOVEMENT_RULES}
{ENVIRONMENT_FORMAT}"""


def _describe_proposal(proposal: ProposalResult) -> str:
    changes = "; ".join(
        f"({change.row},{change.col}) -> {change.new_content or 'empty'}" for change in proposal.changes
    )
    return f"- {proposal.explanation or 'No explanation given.'} [changes: {changes or 'none'}]"


def compose_adjudication_prompt(
    *,
    conflict_group: Sequence[ProposalResult],
    grid: Grid,
    world_description: str,
) -> str:
    proposals = "\n".join(_describe_proposal(p) for p in conflict_group)
    return f"""You are managing a text-based gridworld game. Several actions this turn touch the
same cells and contradict each other: two agents may move into one cell, both may claim the
same kill, or both may claim victory in a fight. Reconcile them into one consistent outcome.

World description: {world_description}

Current world:
{describe_world(grid)}

Conflicting actions:
{proposals}
{SINGLE_AGENT_RULE}
{MOVEMENT_RULES}
{STATE_RULES}
{CHANGES_FORMAT}
Before answering, check that no cell holds two agents, every agent appears in exactly one cell,
and every moved agent's old cell is cleared."""


def compose_agent_conflict_prompt(
    *,
    report: AgentConflictReport,
    grid: Grid,
    world_description: str,
) -> str:
    sections: list[str] = []
    if report.duplicated_agents:
        lines = "\n".join(
            f"- {item.name} appears at: " + ", ".join(f"({loc.row},{loc.col})" for loc in item.locations)
            for item in report.duplicated_agents
        )
        sections.append(f"DUPLICATED AGENTS (in several cells):\n{lines}")
    if report.missing_agents:
        lines = "\n".join(
            f"- {item.name} was at ({item.original_location.row},{item.original_location.col}) but is now missing"
            for item in report.missing_agents
        )
        sections.append(f"MISSING AGENTS (vanished from the world):\n{lines}")
    conflicts = "\n\n".join(sections)
    return f"""You are managing a text-based gridworld game. Agent conflicts were detected after
this turn's changes and must be fixed.

World description: {world_description}

World before this turn:
{describe_world_full(grid)}

{conflicts}

For a duplicated agent keep it in the ONE cell that best matches its recent actions and set the
other cells to "". For a missing agent restore it to its most logical cell, usually its original
one, with a state reflecting its condition.
{SINGLE_AGENT_RULE}
{CHANGES_FORMAT}
Each agent must appear in exactly ONE cell after your changes."""


def compose_turn_summary_prompt(*, explanations: Sequence[str], world_description: str) -> str:
    events = "; ".join(e for e in explanations if e) or "Nothing of note happened."
    return f"""You are a storyteller summarizing one turn of a fantasy adventure.

World setting: {world_description}

Events this turn:
{events}

Write one descriptive paragraph of 2-4 sentences about what happened: actions, interactions,
and environmental effects. Do not mention coordinates, cells, or game mechanics.
Output only the paragraph."""


def compose_scenario_prompt(*, user_description: str, rows: int, cols: int) -> str:
    return f"""Create a {rows}x{cols} gridworld scenario.

User description:
{user_description}
{SINGLE_AGENT_RULE}
Place 3-6 sentient agents written as "<AgentName> state", spread across the grid.
Everything else is non-sentient terrain, objects or structures written as plain text
without angle brackets. Empty cells are "".

Respond with JSON:
{{
  "grid": [["cell", ...], ...],
  "worldDescription": "A description of this world and its current situation"
}}
The grid MUST have exactly {rows} rows of exactly {cols} cells, and each agent appears exactly once."""


def compose_story_prompt(*, game_state: GameState, max_input_tokens: int | None = None) -> str:
    """Build the story prompt; over budget, the oldest turns are left out first."""
    latest = game_state.latest_turn()
    current_world = describe_world(latest.world) if latest else "The world is empty."
    agents = "\n".join(
        f"{agent.name}: at ({agent.location.row}, {agent.location.col}). Current state: {agent.current_state}"
        for agent in game_state.agents
    ) or "No agents remain."
    turns = [
        f"Turn {index + 1}:\n{describe_world(turn.world)}\nSummary: {turn.description or 'No summary available'}"
        for index, turn in enumerate(game_state.history)
    ]

    def render(kept: Sequence[str]) -> str:
        dropped = len(turns) - len(kept)
        history = "\n\n".join(kept)
        if dropped:
            history = f"({dropped} earlier turns omitted)\n\n{history}"
        return _render_story_prompt(
            world_description=game_state.world_description,
            agents=agents,
            current_world=current_world,
            history=history,
        )

    if max_input_tokens is None:
        return render(turns)
    kept, _ = fit_entries_to_budget(turns, render, max_input_tokens)
    return render(kept)


def _render_story_prompt(*, world_description: str, agents: str, current_world: str, history: str) -> str:
    return f"""Weave the events of this gridworld adventure into an engaging story.

WORLD SETTING:
{world_description}

CURRENT AGENTS:
{agents}

CURRENT WORLD:
{current_world}

FULL HISTORY:
{history}

Bring the characters to life, follow the sequence of events, build tension, and present the
current state as the latest chapter. Write it like an excerpt from a fantasy novel, about
200-400 words."""
