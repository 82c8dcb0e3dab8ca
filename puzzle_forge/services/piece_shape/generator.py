"""Generate jigsaw piece outlines from an edge configuration.

The outline sits on a base rectangle inset from the canvas by the tab ratio.
Tabs and blanks share one control-point template and differ only in the sign
of the perpendicular displacement, so a tab on one piece and the blank on its
neighbor trace the same curve.
"""

import math
from dataclasses import dataclass
from typing import List, Literal, Tuple

from puzzle_forge.models.puzzle_model import EdgeConfig, EdgeType

from .models import PieceOutline, Point

Side = Literal["top", "right", "bottom", "left"]

# Tab zone as fraction of side length, centered on the side
TAB_WIDTH_RATIO = 0.4
TAB_START = (1 - TAB_WIDTH_RATIO) / 2  # 0.3
TAB_END = (1 + TAB_WIDTH_RATIO) / 2  # 0.7

# Control template for a classic rounded plug: 4 cubic curves, 13 points.
# x runs along the tab zone (-0.5 to 0.5), y is the displacement (0 to 1)
# as a fraction of the tab extension.
TAB_TEMPLATE: Tuple[Point, ...] = (
    (-0.5, 0.0),
    (-0.5, 0.15),
    (-0.28, 0.25),
    (-0.21, 0.35),
    (-0.15, 0.5),
    (-0.38, 0.85),
    (0.0, 1.0),
    (0.38, 0.85),
    (0.15, 0.5),
    (0.21, 0.35),
    (0.28, 0.25),
    (0.5, 0.15),
    (0.5, 0.0),
)


@dataclass(frozen=True)
class _SideFrame:
    """Geometry of the base rectangle used to place one side's features."""

    left: float
    top: float
    right: float
    bottom: float
    extend_x: float
    extend_y: float

    def tab_zone(self, side: Side) -> Tuple[float, float]:
        if side in ("top", "bottom"):
            length = self.right - self.left
            return self.left + length * TAB_START, self.left + length * TAB_END
        length = self.bottom - self.top
        return self.top + length * TAB_START, self.top + length * TAB_END

    def corners(self, side: Side) -> Tuple[Point, Point]:
        """(start, end) corners in traversal order."""
        if side == "top":
            return (self.left, self.top), (self.right, self.top)
        if side == "right":
            return (self.right, self.top), (self.right, self.bottom)
        if side == "bottom":
            return (self.right, self.bottom), (self.left, self.bottom)
        return (self.left, self.bottom), (self.left, self.top)

    def place(self, local: Point, side: Side, is_tab: bool) -> Point:
        """Map a template point onto a side of the base rectangle."""
        zone_start, zone_end = self.tab_zone(side)
        edge_pos = zone_start + (local[0] + 0.5) * (zone_end - zone_start)
        sign = 1.0 if is_tab else -1.0

        if side == "top":
            return (edge_pos, self.top - local[1] * self.extend_y * sign)
        if side == "right":
            return (self.right + local[1] * self.extend_x * sign, edge_pos)
        if side == "bottom":
            return (edge_pos, self.bottom + local[1] * self.extend_y * sign)
        return (self.left - local[1] * self.extend_x * sign, edge_pos)


def _base_frame(width: float, height: float, tab_ratio: float) -> _SideFrame:
    scale = 1 + 2 * tab_ratio
    inset_x = (tab_ratio / scale) * width
    inset_y = (tab_ratio / scale) * height
    return _SideFrame(
        left=inset_x,
        top=inset_y,
        right=((1 + tab_ratio) / scale) * width,
        bottom=((1 + tab_ratio) / scale) * height,
        extend_x=inset_x,
        extend_y=inset_y,
    )


def _append_side(outline: PieceOutline, frame: _SideFrame, side: Side, edge_type: EdgeType) -> None:
    _, end = frame.corners(side)

    if edge_type is EdgeType.FLAT:
        outline.line_to(end)
        return

    is_tab = edge_type is EdgeType.TAB
    points = [frame.place(local, side, is_tab) for local in TAB_TEMPLATE]
    # Bottom and left run against the template's direction
    if side in ("bottom", "left"):
        points.reverse()

    outline.line_to(points[0])
    for i in range(1, len(points), 3):
        outline.curve_to(points[i], points[i + 1], points[i + 2])
    outline.line_to(end)


def generate_jigsaw_outline(
    edges: EdgeConfig,
    width: float,
    height: float,
    tab_ratio: float = 0.2,
) -> PieceOutline:
    """Build the closed outline of a piece for an oversized canvas.

    Args:
        edges: Edge types for the four sides.
        width: Canvas width in pixels (base width * (1 + 2 * tab_ratio)).
        height: Canvas height in pixels.
        tab_ratio: Fraction of the base dimension a tab extends per side.

    Returns:
        A PieceOutline traversing top L->R, right T->B, bottom R->L, left B->T.

    Raises:
        ValueError: If a dimension or the tab ratio is not usable.
    """
    if not (math.isfinite(width) and math.isfinite(height)) or width <= 0 or height <= 0:
        raise ValueError(f"Outline dimensions must be positive, got {width}x{height}")
    if not 0 < tab_ratio < 0.5:
        raise ValueError(f"tab_ratio must be between 0 and 0.5, got {tab_ratio}")

    frame = _base_frame(width, height, tab_ratio)
    outline = PieceOutline(width=width, height=height, start=(frame.left, frame.top))

    sides: List[Tuple[Side, EdgeType]] = [
        ("top", edges.top),
        ("right", edges.right),
        ("bottom", edges.bottom),
        ("left", edges.left),
    ]
    for side, edge_type in sides:
        _append_side(outline, frame, side, edge_type)

    return outline


def generate_svg_mask(edges: EdgeConfig, width: int, height: int, tab_ratio: float = 0.2) -> str:
    """SVG document of the piece mask, useful for inspecting shapes."""
    return generate_jigsaw_outline(edges, width, height, tab_ratio).to_svg()
