"""Grid planning and deterministic edge assignment.

Every edge is a pure function of (row, col) and the grid size, so pieces can
be generated out of order, in parallel, or again after a crash with identical
results.
"""

import math
from typing import NamedTuple

from puzzle_forge.models.puzzle_model import EdgeConfig, EdgeType


class GridDimensions(NamedTuple):
    """Rows and columns of a puzzle grid."""

    rows: int
    cols: int


def get_grid_dimensions(piece_count: int) -> GridDimensions:
    """Find the most square grid for the given piece count.

    The row count is the largest divisor of piece_count not exceeding its
    square root, so rows <= cols and rows * cols == piece_count
    (225 -> 15x15, 12 -> 3x4, a prime p -> 1xp).

    Args:
        piece_count: Number of pieces requested.

    Returns:
        GridDimensions, or (0, 0) for a non-positive piece count.
    """
    if piece_count <= 0:
        return GridDimensions(0, 0)

    for rows in range(math.isqrt(piece_count), 0, -1):
        if piece_count % rows == 0:
            return GridDimensions(rows, piece_count // rows)

    # Unreachable: 1 divides everything
    return GridDimensions(1, piece_count)


def get_bottom_edge(row: int, col: int, rows: int) -> EdgeType:
    if row == rows - 1:
        return EdgeType.FLAT
    return EdgeType.BLANK if (row + col) % 2 == 0 else EdgeType.TAB


def get_right_edge(row: int, col: int, cols: int) -> EdgeType:
    if col == cols - 1:
        return EdgeType.FLAT
    return EdgeType.TAB if (row + col) % 2 == 0 else EdgeType.BLANK


def get_top_edge(row: int, col: int, rows: int) -> EdgeType:
    if row == 0:
        return EdgeType.FLAT
    # Complement of the bottom edge of the piece above
    return get_bottom_edge(row - 1, col, rows).opposite()


def get_left_edge(row: int, col: int, cols: int) -> EdgeType:
    if col == 0:
        return EdgeType.FLAT
    # Complement of the right edge of the piece to the left
    return get_right_edge(row, col - 1, cols).opposite()


def get_edge_config(row: int, col: int, rows: int, cols: int) -> EdgeConfig:
    """Edge configuration for the piece at (row, col).

    Raises:
        ValueError: If the position lies outside the grid.
    """
    if not (0 <= row < rows and 0 <= col < cols):
        raise ValueError(f"Position ({row}, {col}) is outside a {rows}x{cols} grid")
    return EdgeConfig(
        top=get_top_edge(row, col, rows),
        right=get_right_edge(row, col, cols),
        bottom=get_bottom_edge(row, col, rows),
        left=get_left_edge(row, col, cols),
    )


def piece_id(row: int, col: int, cols: int) -> int:
    """Row-major piece index."""
    return row * cols + col
