"""
Planar geometry primitives.

All functions operate on rings given as sequences of ``(x, y)`` pairs in
metres (``LocalPoint`` satisfies this). Rings are implicitly closed; the
first point is not repeated at the end.

Provides:
- Ring measures (signed area, bounding box, winding)
- Point-in-polygon, segment intersection and distances
- Convex hull, convex clipping (Sutherland-Hodgman), mitred convex offset
- Vectorised classification of axis-aligned grid cells against a polygon
"""
import math
from typing import Iterable, Sequence

import numpy as np

Point = tuple[float, float]
Ring = Sequence[Sequence[float]]

EPSILON = 1e-9


# =============================================================================
# Ring measures
# =============================================================================


def signed_area(ring: Ring) -> float:
    """Shoelace signed area; positive for counter-clockwise rings."""
    total = 0.0
    n = len(ring)
    for i in range(n):
        x1, y1 = ring[i][0], ring[i][1]
        x2, y2 = ring[(i + 1) % n][0], ring[(i + 1) % n][1]
        total += x1 * y2 - x2 * y1
    return total / 2.0


def polygon_area(ring: Ring) -> float:
    return abs(signed_area(ring))


def ensure_ccw(ring: Ring) -> list[Point]:
    """Return the ring as a list of tuples in counter-clockwise order."""
    points = [(float(p[0]), float(p[1])) for p in ring]
    if signed_area(points) < 0:
        points.reverse()
    return points


def bounding_box(points: Iterable[Sequence[float]]) -> tuple[float, float, float, float]:
    """(min_x, min_y, max_x, max_y) of a point set."""
    xs = []
    ys = []
    for p in points:
        xs.append(p[0])
        ys.append(p[1])
    if not xs:
        raise ValueError("Cannot compute bounding box of an empty point set")
    return min(xs), min(ys), max(xs), max(ys)


def edges(ring: Ring) -> list[tuple[Point, Point]]:
    n = len(ring)
    return [
        ((ring[i][0], ring[i][1]), (ring[(i + 1) % n][0], ring[(i + 1) % n][1]))
        for i in range(n)
    ]


# =============================================================================
# Predicates and distances
# =============================================================================


def point_in_polygon(point: Sequence[float], ring: Ring) -> bool:
    """Even-odd ray casting test. Points exactly on an edge may go either way."""
    px, py = point[0], point[1]
    inside = False
    n = len(ring)
    j = n - 1
    for i in range(n):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > py) != (yj > py):
            x_cross = (xj - xi) * (py - yi) / (yj - yi) + xi
            if px < x_cross:
                inside = not inside
        j = i
    return inside


def orientation(a: Sequence[float], b: Sequence[float], c: Sequence[float]) -> float:
    """Cross product of (b - a) x (c - a)."""
    return (b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])


def _on_segment(a, b, p) -> bool:
    return (
        min(a[0], b[0]) - EPSILON <= p[0] <= max(a[0], b[0]) + EPSILON
        and min(a[1], b[1]) - EPSILON <= p[1] <= max(a[1], b[1]) + EPSILON
    )


def segments_intersect(p1, p2, q1, q2) -> bool:
    """True if closed segments p1-p2 and q1-q2 share at least one point."""
    d1 = orientation(q1, q2, p1)
    d2 = orientation(q1, q2, p2)
    d3 = orientation(p1, p2, q1)
    d4 = orientation(p1, p2, q2)

    if ((d1 > EPSILON and d2 < -EPSILON) or (d1 < -EPSILON and d2 > EPSILON)) and (
        (d3 > EPSILON and d4 < -EPSILON) or (d3 < -EPSILON and d4 > EPSILON)
    ):
        return True

    if abs(d1) <= EPSILON and _on_segment(q1, q2, p1):
        return True
    if abs(d2) <= EPSILON and _on_segment(q1, q2, p2):
        return True
    if abs(d3) <= EPSILON and _on_segment(p1, p2, q1):
        return True
    if abs(d4) <= EPSILON and _on_segment(p1, p2, q2):
        return True
    return False


def point_segment_distance(p, a, b) -> float:
    dx = b[0] - a[0]
    dy = b[1] - a[1]
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return math.hypot(p[0] - a[0], p[1] - a[1])
    t = ((p[0] - a[0]) * dx + (p[1] - a[1]) * dy) / length_sq
    t = max(0.0, min(1.0, t))
    return math.hypot(p[0] - (a[0] + t * dx), p[1] - (a[1] + t * dy))


def segment_distance(a1, a2, b1, b2) -> float:
    if segments_intersect(a1, a2, b1, b2):
        return 0.0
    return min(
        point_segment_distance(a1, b1, b2),
        point_segment_distance(a2, b1, b2),
        point_segment_distance(b1, a1, a2),
        point_segment_distance(b2, a1, a2),
    )


def polygons_intersect(a: Ring, b: Ring) -> bool:
    """True if two polygons share any point (touching counts)."""
    for a1, a2 in edges(a):
        for b1, b2 in edges(b):
            if segments_intersect(a1, a2, b1, b2):
                return True
    return point_in_polygon(a[0], b) or point_in_polygon(b[0], a)


def polygon_distance(a: Ring, b: Ring) -> float:
    """Minimum distance between two polygons; 0 when they intersect."""
    if polygons_intersect(a, b):
        return 0.0
    return min(
        segment_distance(a1, a2, b1, b2)
        for a1, a2 in edges(a)
        for b1, b2 in edges(b)
    )


def is_simple(ring: Ring) -> bool:
    """True if no two non-adjacent edges touch and no vertex folds back on itself."""
    n = len(ring)
    if n < 3:
        return False
    for i in range(n):
        prev = ring[i - 1]
        vertex = ring[i]
        nxt = ring[(i + 1) % n]
        if abs(orientation(prev, vertex, nxt)) <= EPSILON:
            dot = (prev[0] - vertex[0]) * (nxt[0] - vertex[0]) + (prev[1] - vertex[1]) * (nxt[1] - vertex[1])
            if dot > 0:
                return False

    ring_edges = edges(ring)
    for i in range(n):
        for j in range(i + 2, n):
            if i == 0 and j == n - 1:
                continue
            if segments_intersect(*ring_edges[i], *ring_edges[j]):
                return False
    return True


# =============================================================================
# Constructions
# =============================================================================


def convex_hull(points: Iterable[Sequence[float]]) -> list[Point]:
    """Andrew's monotone chain. Returns a CCW ring without collinear points."""
    pts = sorted({(float(p[0]), float(p[1])) for p in points})
    if len(pts) <= 2:
        return pts

    lower: list[Point] = []
    for p in pts:
        while len(lower) >= 2 and orientation(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)

    upper: list[Point] = []
    for p in reversed(pts):
        while len(upper) >= 2 and orientation(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)

    return lower[:-1] + upper[:-1]


def _line_intersection(p1, p2, q1, q2) -> Point:
    """Intersection of infinite lines p1-p2 and q1-q2 (assumed non-parallel)."""
    d = (p1[0] - p2[0]) * (q1[1] - q2[1]) - (p1[1] - p2[1]) * (q1[0] - q2[0])
    if abs(d) < EPSILON:
        return (p2[0], p2[1])
    a = p1[0] * p2[1] - p1[1] * p2[0]
    b = q1[0] * q2[1] - q1[1] * q2[0]
    return (
        (a * (q1[0] - q2[0]) - (p1[0] - p2[0]) * b) / d,
        (a * (q1[1] - q2[1]) - (p1[1] - p2[1]) * b) / d,
    )


def clip_polygon(subject: Ring, clip: Ring) -> list[Point]:
    """
    Sutherland-Hodgman clipping of ``subject`` against a convex ``clip`` ring.

    The subject may be concave; the output then can contain zero-width
    bridges, which do not affect its area.

    Returns:
        Clipped ring (possibly empty)
    """
    clip_ccw = ensure_ccw(clip)
    output = [(float(p[0]), float(p[1])) for p in subject]

    for c1, c2 in edges(clip_ccw):
        if not output:
            break
        current = output
        output = []
        for i, p in enumerate(current):
            prev = current[i - 1]
            p_inside = orientation(c1, c2, p) >= -EPSILON
            prev_inside = orientation(c1, c2, prev) >= -EPSILON
            if p_inside:
                if not prev_inside:
                    output.append(_line_intersection(prev, p, c1, c2))
                output.append(p)
            elif prev_inside:
                output.append(_line_intersection(prev, p, c1, c2))
    return output


def buffer_convex(ring: Ring, distance: float) -> list[Point]:
    """
    Offset a convex ring outward by ``distance`` using mitred joins.

    The mitred result contains the true Euclidean buffer, so it is a
    conservative stand-in for it.
    """
    points = ensure_ccw(convex_hull(ring))
    if len(points) < 3:
        raise ValueError("Cannot buffer a degenerate ring")
    if distance == 0:
        return points

    offset_edges = []
    for a, b in edges(points):
        dx = b[0] - a[0]
        dy = b[1] - a[1]
        length = math.hypot(dx, dy)
        # Right-hand normal points outward for CCW rings
        nx, ny = dy / length, -dx / length
        offset_edges.append(
            ((a[0] + nx * distance, a[1] + ny * distance), (b[0] + nx * distance, b[1] + ny * distance))
        )

    result = []
    n = len(offset_edges)
    for i in range(n):
        prev_a, prev_b = offset_edges[i - 1]
        cur_a, cur_b = offset_edges[i]
        result.append(_line_intersection(prev_a, prev_b, cur_a, cur_b))
    return result


def rotate_point(point: Sequence[float], angle_rad: float, origin: Sequence[float] = (0.0, 0.0)) -> Point:
    """Rotate counter-clockwise by ``angle_rad`` about ``origin``."""
    cos_a = math.cos(angle_rad)
    sin_a = math.sin(angle_rad)
    dx = point[0] - origin[0]
    dy = point[1] - origin[1]
    return (origin[0] + dx * cos_a - dy * sin_a, origin[1] + dx * sin_a + dy * cos_a)


def rotate_polygon(ring: Ring, angle_rad: float, origin: Sequence[float] = (0.0, 0.0)) -> list[Point]:
    return [rotate_point(p, angle_rad, origin) for p in ring]


def rectangle(x0: float, y0: float, x1: float, y1: float) -> list[Point]:
    """Axis-aligned rectangle corners, counter-clockwise from (x0, y0)."""
    return [(x0, y0), (x1, y0), (x1, y1), (x0, y1)]


# =============================================================================
# Vectorised grid classification
# =============================================================================


def points_in_polygon(xs: np.ndarray, ys: np.ndarray, ring: Ring) -> np.ndarray:
    """Vectorised even-odd test for many points against one ring."""
    inside = np.zeros(np.shape(xs), dtype=bool)
    n = len(ring)
    j = n - 1
    for i in range(n):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if yi != yj:
            crosses = (yi > ys) != (yj > ys)
            x_cross = (xj - xi) * (ys - yi) / (yj - yi) + xi
            inside ^= crosses & (xs < x_cross)
        j = i
    return inside


def boxes_touch_segment(
    x0: np.ndarray,
    y0: np.ndarray,
    x1: np.ndarray,
    y1: np.ndarray,
    a: Sequence[float],
    b: Sequence[float],
) -> np.ndarray:
    """Liang-Barsky test of one segment against many axis-aligned boxes."""
    dx = b[0] - a[0]
    dy = b[1] - a[1]
    t_min = np.zeros(np.shape(x0))
    t_max = np.ones(np.shape(x0))
    hit = np.ones(np.shape(x0), dtype=bool)

    for p, q in (
        (-dx, a[0] - x0),
        (dx, x1 - a[0]),
        (-dy, a[1] - y0),
        (dy, y1 - a[1]),
    ):
        if p == 0:
            hit &= q >= 0
        elif p < 0:
            t_min = np.maximum(t_min, q / p)
        else:
            t_max = np.minimum(t_max, q / p)

    return hit & (t_min <= t_max)


def boxes_near_polygon(
    x0: np.ndarray,
    y0: np.ndarray,
    x1: np.ndarray,
    y1: np.ndarray,
    ring: Ring,
    clearance: float = 0.0,
) -> np.ndarray:
    """
    Boxes that come within ``clearance`` of a polygon.

    A box is near when the polygon boundary crosses the box grown by
    ``clearance`` on every side, or when the box centre lies inside the
    polygon. Growing the box square-wise over-approximates the Euclidean
    clearance, so a box reported clear is at least ``clearance`` away.

    Args:
        x0, y0, x1, y1: Box extents, arrays of equal shape
        ring: Polygon ring
        clearance: Required separation in metres

    Returns:
        Boolean array, True where the box is too close to the polygon
    """
    inside = points_in_polygon((x0 + x1) / 2.0, (y0 + y1) / 2.0, ring)
    return inside | boxes_touch_ring(x0, y0, x1, y1, ring, clearance)


def boxes_touch_ring(
    x0: np.ndarray,
    y0: np.ndarray,
    x1: np.ndarray,
    y1: np.ndarray,
    ring: Ring,
    clearance: float = 0.0,
) -> np.ndarray:
    """
    Boxes that come within ``clearance`` of a ring's edges.

    A negative clearance shrinks the boxes, so edges that only graze a box
    side are not reported.
    """
    gx0 = x0 - clearance
    gy0 = y0 - clearance
    gx1 = x1 + clearance
    gy1 = y1 + clearance

    touched = np.zeros(np.shape(x0), dtype=bool)
    min_x, min_y, max_x, max_y = bounding_box(ring)
    candidates = (gx1 >= min_x) & (gx0 <= max_x) & (gy1 >= min_y) & (gy0 <= max_y)
    if not candidates.any():
        return touched

    idx = np.nonzero(candidates)
    hits = np.zeros(idx[0].shape, dtype=bool)
    for a, b in edges(ring):
        hits |= boxes_touch_segment(gx0[idx], gy0[idx], gx1[idx], gy1[idx], a, b)
    touched[idx] = hits
    return touched
