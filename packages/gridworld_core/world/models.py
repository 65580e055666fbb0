"""Typed records for the gridworld state and oracle payloads.

Wire names follow the camelCase contract shared with the browser client
(``newContent``, ``worldDescription``, ``privateHistory`` ...). Python code uses
the snake_case attributes; both spellings are accepted on input.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


Grid = list[list[str]]


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class Location(_WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    row: int
    col: int


class WorldChange(_WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    row: int
    col: int
    new_content: str = Field(alias="newContent")

    @field_validator("new_content", mode="before")
    @classmethod
    def _null_content_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class ProposalResult(_WireModel):
    """One oracle-produced mutation set plus its human-readable explanation."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    changes: list[WorldChange] = Field(default_factory=list)
    explanation: str = ""

    @field_validator("changes", mode="before")
    @classmethod
    def _null_changes_are_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("explanation", mode="before")
    @classmethod
    def _null_explanation_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    def target_cells(self) -> list[tuple[int, int]]:
        """Distinct cells this proposal writes, in first-seen order."""
        seen: dict[tuple[int, int], None] = {}
        for change in self.changes:
            seen.setdefault((change.row, change.col), None)
        return list(seen)


class EnvironmentalActions(_WireModel):
    environmental_actions: list[ProposalResult] = Field(default_factory=list, alias="environmentalActions")

    @field_validator("environmental_actions", mode="before")
    @classmethod
    def _null_actions_are_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class TextOutput(_WireModel):
    text: str = Field(min_length=1)


class AgentHistoryEntry(_WireModel):
    action: str
    agent_state: str = Field(alias="agentState")
    location: Location


class Agent(_WireModel):
    name: str = Field(min_length=1)
    color: str = "red"
    current_state: str = Field(default="", alias="currentState")
    location: Location
    private_history: list[AgentHistoryEntry] = Field(default_factory=list, alias="privateHistory")


class TurnState(_WireModel):
    """One completed turn. Never mutated after it is appended to a history."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    world: Grid
    description: str = ""

    @field_validator("world", mode="before")
    @classmethod
    def _copy_world(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [list(row) if isinstance(row, list) else row for row in value]
        return value


class GameState(_WireModel):
    world_description: str = Field(default="", alias="worldDescription")
    history: list[TurnState] = Field(default_factory=list)
    agents: list[Agent] = Field(default_factory=list)

    def latest_turn(self) -> TurnState | None:
        return self.history[-1] if self.history else None


class DuplicatedAgent(_WireModel):
    name: str
    locations: list[Location]


class MissingAgent(_WireModel):
    name: str
    original_location: Location = Field(alias="originalLocation")


class AgentConflictReport(_WireModel):
    duplicated_agents: list[DuplicatedAgent] = Field(default_factory=list, alias="duplicatedAgents")
    missing_agents: list[MissingAgent] = Field(default_factory=list, alias="missingAgents")

    @property
    def has_conflicts(self) -> bool:
        return bool(self.duplicated_agents or self.missing_agents)


class ScenarioPayload(_WireModel):
    grid: Grid
    world_description: str = Field(alias="worldDescription")

    @field_validator("grid", mode="before")
    @classmethod
    def _stringify_cells(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        rows: list[Any] = []
        for row in value:
            if not isinstance(row, list):
                rows.append(row)
                continue
            rows.append(["" if cell is None else str(cell) for cell in row])
        return rows

    @model_validator(mode="after")
    def _grid_is_rectangular(self) -> "ScenarioPayload":
        if not self.grid or not self.grid[0]:
            raise ValueError("scenario grid must not be empty")
        width = len(self.grid[0])
        if any(len(row) != width for row in self.grid):
            raise ValueError("scenario grid must be rectangular")
        return self
