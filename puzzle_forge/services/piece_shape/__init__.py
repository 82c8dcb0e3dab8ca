"""Piece shape generation for interlocking jigsaw pieces."""

from .generator import TAB_TEMPLATE, TAB_WIDTH_RATIO, generate_jigsaw_outline, generate_svg_mask
from .models import BezierCurve, LineSegment, PieceOutline

__all__ = [
    "BezierCurve",
    "LineSegment",
    "PieceOutline",
    "TAB_TEMPLATE",
    "TAB_WIDTH_RATIO",
    "generate_jigsaw_outline",
    "generate_svg_mask",
]
