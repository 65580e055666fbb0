"""Grid primitives: construction, description and change application."""

from __future__ import annotations

from typing import Iterable
import re

from .models import Grid, WorldChange


DEFAULT_GRID_ROWS = 15
DEFAULT_GRID_COLS = 15
EMPTY_WORLD_TEXT = "The world is empty."
_AGENT_NAME_RE = re.compile(r"<([^<>]+)>")


class CellOutOfRangeError(ValueError):
    def __init__(self, row: int, col: int, shape: tuple[int, int]) -> None:
        super().__init__(f"Cell ({row},{col}) is outside a {shape[0]}x{shape[1]} grid")
        self.row = row
        self.col = col
        self.shape = shape


def initialize_empty_world(rows: int = DEFAULT_GRID_ROWS, cols: int = DEFAULT_GRID_COLS) -> Grid:
    return [["" for _ in range(cols)] for _ in range(rows)]


def clone_grid(grid: Grid) -> Grid:
    return [list(row) for row in grid]


def grid_shape(grid: Grid) -> tuple[int, int]:
    rows = len(grid)
    cols = len(grid[0]) if rows else 0
    return rows, cols


def is_rectangular(grid: Grid) -> bool:
    if not grid:
        return True
    width = len(grid[0])
    return all(len(row) == width for row in grid)


def in_bounds(grid: Grid, row: int, col: int) -> bool:
    return 0 <= row < len(grid) and 0 <= col < len(grid[row])


def get_agent_name(text: str) -> str | None:
    """Return the first ``<Name>`` found in a cell, without the brackets."""
    if not text:
        return None
    match = _AGENT_NAME_RE.search(text)
    return match.group(1) if match else None


def describe_world(grid: Grid) -> str:
    """Concise world listing with only the non-empty cells."""
    lines: list[str] = []
    for row_index, row in enumerate(grid):
        for col_index, cell in enumerate(row):
            if cell.strip():
                lines.append(f"({row_index},{col_index}): {cell}")
    return "\n".join(lines) if lines else EMPTY_WORLD_TEXT


def describe_world_full(grid: Grid) -> str:
    return "\n".join(
        " | ".join(f"({row_index},{col_index}): {cell or 'empty'}" for col_index, cell in enumerate(row))
        for row_index, row in enumerate(grid)
    )


def apply_world_changes(grid: Grid, changes: Iterable[WorldChange]) -> Grid:
    """Apply changes to a copy of ``grid`` in order; later writes win.

    Out-of-range coordinates come from oracle output and are dropped without
    raising. The input grid is left untouched and the shape never changes.
    """
    new_grid = clone_grid(grid)
    for change in changes:
        if in_bounds(new_grid, change.row, change.col):
            new_grid[change.row][change.col] = change.new_content
    return new_grid


def set_cell(grid: Grid, row: int, col: int, content: str) -> Grid:
    if not in_bounds(grid, row, col):
        raise CellOutOfRangeError(row, col, grid_shape(grid))
    new_grid = clone_grid(grid)
    new_grid[row][col] = content
    return new_grid
