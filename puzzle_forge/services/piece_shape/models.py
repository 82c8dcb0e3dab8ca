"""Data models for jigsaw piece outlines."""

import math
from dataclasses import dataclass, field
from typing import List, Tuple, Union

import numpy as np

Point = Tuple[float, float]


@dataclass(frozen=True)
class BezierCurve:
    """A cubic Bezier curve defined by 4 control points."""

    p0: Point  # Start point
    p1: Point  # Control point 1
    p2: Point  # Control point 2
    p3: Point  # End point

    @property
    def start(self) -> Point:
        return self.p0

    @property
    def end(self) -> Point:
        return self.p3

    def evaluate(self, t: float) -> Point:
        """Evaluate the curve at parameter t (0 to 1)."""
        t2 = t * t
        t3 = t2 * t
        mt = 1 - t
        mt2 = mt * mt
        mt3 = mt2 * mt

        x = mt3 * self.p0[0] + 3 * mt2 * t * self.p1[0] + 3 * mt * t2 * self.p2[0] + t3 * self.p3[0]
        y = mt3 * self.p0[1] + 3 * mt2 * t * self.p1[1] + 3 * mt * t2 * self.p2[1] + t3 * self.p3[1]
        return (x, y)

    def get_points(self, num_points: int = 50) -> np.ndarray:
        """Generate points along the curve."""
        t_values = np.linspace(0, 1, num_points)
        points = [self.evaluate(t) for t in t_values]
        return np.array(points)

    def control_points(self) -> List[Point]:
        return [self.p0, self.p1, self.p2, self.p3]

    def svg_command(self) -> str:
        return f"C {_fmt(self.p1)}, {_fmt(self.p2)}, {_fmt(self.p3)}"


@dataclass(frozen=True)
class LineSegment:
    """A straight segment of the outline."""

    p0: Point
    p1: Point

    @property
    def start(self) -> Point:
        return self.p0

    @property
    def end(self) -> Point:
        return self.p1

    def get_points(self, num_points: int = 2) -> np.ndarray:
        """Endpoints only; a line needs no intermediate samples."""
        return np.array([self.p0, self.p1])

    def control_points(self) -> List[Point]:
        return [self.p0, self.p1]

    def svg_command(self) -> str:
        return f"L {_fmt(self.p1)}"


Segment = Union[LineSegment, BezierCurve]


@dataclass
class PieceOutline:
    """A closed contour around a piece, in canvas pixel coordinates.

    Attributes:
        width: Canvas width the outline was generated for.
        height: Canvas height the outline was generated for.
        start: First point of the contour (base top-left corner).
        segments: Ordered segments; each starts where the previous ended.
    """

    width: float
    height: float
    start: Point
    segments: List[Segment] = field(default_factory=list)

    @property
    def current_point(self) -> Point:
        return self.segments[-1].end if self.segments else self.start

    def line_to(self, point: Point) -> None:
        self.segments.append(LineSegment(self.current_point, point))

    def curve_to(self, p1: Point, p2: Point, p3: Point) -> None:
        self.segments.append(BezierCurve(self.current_point, p1, p2, p3))

    def points(self) -> List[Point]:
        """All control and end points, in traversal order."""
        result = [self.start]
        for segment in self.segments:
            result.extend(segment.control_points()[1:])
        return result

    def is_closed(self, tolerance: float = 1e-6) -> bool:
        """True if the contour ends where it started."""
        if not self.segments:
            return False
        end = self.segments[-1].end
        return math.isclose(end[0], self.start[0], abs_tol=tolerance) and math.isclose(
            end[1], self.start[1], abs_tol=tolerance
        )

    def is_finite(self) -> bool:
        return all(math.isfinite(x) and math.isfinite(y) for x, y in self.points())

    def to_polygon(self, points_per_curve: int = 20) -> List[Point]:
        """Flatten the outline into a closed polygon for rasterization.

        Args:
            points_per_curve: Number of samples taken from each Bezier curve.

        Returns:
            List of (x, y) points; the last point repeats the first.
        """
        polygon: List[Point] = [self.start]
        for segment in self.segments:
            if isinstance(segment, BezierCurve):
                samples = segment.get_points(points_per_curve)
            else:
                samples = segment.get_points()
            # Skip first sample, it duplicates the previous segment's end
            polygon.extend((float(x), float(y)) for x, y in samples[1:])
        return polygon

    def to_svg_path(self) -> str:
        """Render as an SVG path string (M ... Z)."""
        parts = [f"M {_fmt(self.start)}"]
        parts.extend(segment.svg_command() for segment in self.segments)
        parts.append("Z")
        return " ".join(parts)

    def to_svg(self) -> str:
        """Render as a standalone SVG mask document with a white fill."""
        return (
            f'<svg xmlns="http://www.w3.org/2000/svg" width="{self.width:g}" height="{self.height:g}" '
            f'viewBox="0 0 {self.width:g} {self.height:g}">\n'
            f'  <path d="{self.to_svg_path()}" fill="white"/>\n'
            "</svg>"
        )


def _fmt(point: Point) -> str:
    return f"{point[0]:.2f} {point[1]:.2f}"
