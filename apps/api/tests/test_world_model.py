#!/usr/bin/env python3

from __future__ import annotations

import unittest

from packages.gridworld_core.world.agents import (
    DEFAULT_AGENT_COLOR,
    agent_locations,
    append_history,
    derive_agents,
    history_append_for,
)
from packages.gridworld_core.world.grid import (
    EMPTY_WORLD_TEXT,
    CellOutOfRangeError,
    apply_world_changes,
    describe_world,
    get_agent_name,
    grid_shape,
    initialize_empty_world,
    set_cell,
)
from packages.gridworld_core.world.models import (
    Agent,
    AgentHistoryEntry,
    GameState,
    Location,
    ScenarioPayload,
    TurnState,
    WorldChange,
)


def _change(row: int, col: int, content: str) -> WorldChange:
    return WorldChange(row=row, col=col, new_content=content)


class GridTests(unittest.TestCase):
    def test_empty_world_has_canonical_shape(self) -> None:
        grid = initialize_empty_world()
        self.assertEqual(grid_shape(grid), (15, 15))
        self.assertTrue(all(cell == "" for row in grid for cell in row))

    def test_agent_name_is_first_bracketed_token(self) -> None:
        self.assertEqual(get_agent_name("<Knight> guards the gate"), "Knight")
        self.assertEqual(get_agent_name("A torch near <Old Mage> and <Imp>"), "Old Mage")
        self.assertIsNone(get_agent_name("a quiet pond"))
        self.assertIsNone(get_agent_name(""))
        self.assertIsNone(get_agent_name("<>"))

    def test_describe_world_lists_only_occupied_cells(self) -> None:
        grid = [["", "<Knight> guards"], ["  ", "a tree"]]
        self.assertEqual(describe_world(grid), "(0,1): <Knight> guards\n(1,1): a tree")
        self.assertEqual(describe_world(initialize_empty_world(2, 2)), EMPTY_WORLD_TEXT)

    def test_apply_changes_last_write_wins_and_keeps_input(self) -> None:
        grid = [["", ""], ["", ""]]
        updated = apply_world_changes(grid, [_change(0, 0, "fire"), _change(0, 0, "ash")])
        self.assertEqual(updated, [["ash", ""], ["", ""]])
        self.assertEqual(grid, [["", ""], ["", ""]])

    def test_apply_changes_drops_out_of_bounds(self) -> None:
        grid = [["", ""], ["", ""]]
        updated = apply_world_changes(
            grid,
            [_change(-1, 0, "x"), _change(0, 2, "x"), _change(5, 5, "x"), _change(1, 0, "rock")],
        )
        self.assertEqual(updated, [["", ""], ["rock", ""]])
        self.assertEqual(grid_shape(updated), (2, 2))

    def test_set_cell_rejects_out_of_range(self) -> None:
        grid = [["", ""]]
        self.assertEqual(set_cell(grid, 0, 1, "<Imp>"), [["", "<Imp>"]])
        with self.assertRaises(CellOutOfRangeError):
            set_cell(grid, 1, 0, "x")


class ModelTests(unittest.TestCase):
    def test_world_change_accepts_wire_and_null_content(self) -> None:
        change = WorldChange.model_validate({"row": 1, "col": 2, "newContent": None})
        self.assertEqual(change.new_content, "")
        self.assertEqual(change.to_wire(), {"row": 1, "col": 2, "newContent": ""})

    def test_game_state_round_trips_camel_case(self) -> None:
        wire = {
            "worldDescription": "A misty valley",
            "history": [{"world": [["<Knight> guards"]], "description": "Initial scenario setup"}],
            "agents": [
                {
                    "name": "Knight",
                    "color": "blue",
                    "currentState": "<Knight> guards",
                    "location": {"row": 0, "col": 0},
                    "privateHistory": [
                        {"action": "stands", "agentState": "<Knight> guards", "location": {"row": 0, "col": 0}}
                    ],
                }
            ],
        }
        state = GameState.model_validate(wire)
        self.assertEqual(state.world_description, "A misty valley")
        self.assertEqual(state.agents[0].private_history[0].agent_state, "<Knight> guards")
        self.assertEqual(state.to_wire(), wire)

    def test_turn_state_copies_world(self) -> None:
        world = [["a"]]
        turn = TurnState(world=world, description="x")
        world[0][0] = "b"
        self.assertEqual(turn.world, [["a"]])

    def test_scenario_payload_requires_rectangle(self) -> None:
        payload = ScenarioPayload.model_validate({"grid": [[1, None], ["a", "b"]], "worldDescription": "w"})
        self.assertEqual(payload.grid, [["1", ""], ["a", "b"]])
        with self.assertRaises(ValueError):
            ScenarioPayload.model_validate({"grid": [["a"], ["b", "c"]], "worldDescription": "w"})
        with self.assertRaises(ValueError):
            ScenarioPayload.model_validate({"grid": [], "worldDescription": "w"})


class AgentDerivationTests(unittest.TestCase):
    def test_new_agents_are_appended_in_grid_order(self) -> None:
        grid = [["<Imp> lurks", ""], ["", "<Knight> guards"]]
        agents = derive_agents(grid, [])
        self.assertEqual([a.name for a in agents], ["Imp", "Knight"])
        self.assertEqual(agents[1].location, Location(row=1, col=1))
        self.assertEqual(agents[1].current_state, "<Knight> guards")
        self.assertEqual(agents[0].color, DEFAULT_AGENT_COLOR)
        self.assertEqual(agents[0].private_history, [])

    def test_existing_agents_keep_color_history_and_order(self) -> None:
        history = [AgentHistoryEntry(action="waits", agent_state="<Knight> old", location=Location(row=0, col=0))]
        existing = [
            Agent(name="Knight", color="blue", current_state="<Knight> old", location=Location(row=0, col=0), private_history=history),
            Agent(name="Ghost", color="white", current_state="<Ghost>", location=Location(row=0, col=1)),
        ]
        grid = [["<Imp> appears", ""], ["", "<Knight> walks"]]
        agents = derive_agents(grid, existing)

        self.assertEqual([a.name for a in agents], ["Knight", "Imp"])
        knight = agents[0]
        self.assertEqual(knight.color, "blue")
        self.assertEqual(knight.location, Location(row=1, col=1))
        self.assertEqual(knight.current_state, "<Knight> walks")
        self.assertEqual(len(knight.private_history), 1)
        self.assertEqual(existing[0].location, Location(row=0, col=0))

    def test_duplicated_name_resolves_to_first_cell(self) -> None:
        grid = [["", ""], ["<Druid> here", "<Druid> there"]]
        agents = derive_agents(grid, [])
        self.assertEqual(len(agents), 1)
        self.assertEqual(agents[0].location, Location(row=1, col=0))
        self.assertEqual(agent_locations(grid)["Druid"], [Location(row=1, col=0), Location(row=1, col=1)])

    def test_derivation_is_idempotent(self) -> None:
        grid = [["<Imp> lurks", "<Knight> guards"]]
        once = derive_agents(grid, [])
        twice = derive_agents(grid, once)
        self.assertEqual([a.to_wire() for a in once], [a.to_wire() for a in twice])

    def test_history_appends_apply_to_matching_agents(self) -> None:
        agents = derive_agents([["<Imp> lurks", "<Knight> guards"]], [])
        appends = [history_append_for(agents[1], "The Knight raises a shield.")]
        updated = append_history(agents, appends)

        self.assertEqual(updated[0].private_history, [])
        entry = updated[1].private_history[0]
        self.assertEqual(entry.action, "The Knight raises a shield.")
        self.assertEqual(entry.agent_state, "<Knight> guards")
        self.assertEqual(entry.location, Location(row=0, col=1))
        self.assertEqual(agents[1].private_history, [])


if __name__ == "__main__":
    unittest.main()
