"""Geometry helpers shared by the diffusion and moving-cluster analyses.

Coordinates are ``(lon, lat)`` pairs in decimal degrees. Distances are
great-circle metres (haversine); hull areas use the planar shoelace formula in
coordinate units and are not geodesically corrected.
"""

from __future__ import annotations

import math
from typing import List, Sequence, Tuple

import numpy as np

EARTH_RADIUS_M = 6_371_000.0

Coord = Tuple[float, float]


def haversine_distance(p1: Sequence[float], p2: Sequence[float]) -> float:
    """Great-circle distance in metres between two ``(lon, lat)`` points."""

    lon1, lat1 = float(p1[0]), float(p1[1])
    lon2, lat2 = float(p2[0]), float(p2[1])
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def haversine_to_many(lon: float, lat: float, lons: np.ndarray, lats: np.ndarray) -> np.ndarray:
    """Distances in metres from one point to every point of the given arrays."""

    phi1 = np.radians(lat)
    phi2 = np.radians(np.asarray(lats, dtype=float))
    dphi = phi2 - phi1
    dlmb = np.radians(np.asarray(lons, dtype=float) - lon)
    a = np.sin(dphi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(dlmb / 2) ** 2
    # Rounding can push a marginally above 1 for antipodal points.
    a = np.clip(a, 0.0, 1.0)
    return EARTH_RADIUS_M * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def haversine_matrix(lons: np.ndarray, lats: np.ndarray) -> np.ndarray:
    """
    Compute the symmetric pairwise haversine distance matrix in metres.
    The diagonal is exactly zero.
    """

    lons = np.asarray(lons, dtype=float)
    lats = np.asarray(lats, dtype=float)
    n = len(lons)
    if n == 0:
        return np.zeros((0, 0), dtype=float)

    phi = np.radians(lats)
    lmb = np.radians(lons)
    dphi = phi[None, :] - phi[:, None]
    dlmb = lmb[None, :] - lmb[:, None]
    a = np.sin(dphi / 2) ** 2 + np.cos(phi)[:, None] * np.cos(phi)[None, :] * np.sin(dlmb / 2) ** 2
    a = np.clip(a, 0.0, 1.0)
    D = EARTH_RADIUS_M * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    np.fill_diagonal(D, 0.0)
    return D


def _cross(o: Coord, a: Coord, b: Coord) -> float:
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def convex_hull(points: Sequence[Sequence[float]]) -> List[Coord]:
    """
    Return the convex hull of the points in counter-clockwise order.

    Uses the monotone-chain variant of the Graham scan: points are sorted by
    (x, y), then lower and upper chains are built with a cross-product turn
    test. Collinear points on the hull boundary are dropped. Inputs with fewer
    than three points are returned unchanged as a degenerate hull.
    """

    coords: List[Coord] = [(float(p[0]), float(p[1])) for p in points]
    if len(coords) < 3:
        return coords

    ordered = sorted(set(coords))
    if len(ordered) < 3:
        return ordered

    lower: List[Coord] = []
    for pt in ordered:
        while len(lower) >= 2 and _cross(lower[-2], lower[-1], pt) <= 0:
            lower.pop()
        lower.append(pt)

    upper: List[Coord] = []
    for pt in reversed(ordered):
        while len(upper) >= 2 and _cross(upper[-2], upper[-1], pt) <= 0:
            upper.pop()
        upper.append(pt)

    # The last point of each chain is the first point of the other.
    return lower[:-1] + upper[:-1]


def polygon_area(hull: Sequence[Sequence[float]]) -> float:
    """Planar shoelace area of a polygon ring; 0 for fewer than three vertices."""

    n = len(hull)
    if n < 3:
        return 0.0
    area = 0.0
    for i in range(n):
        j = (i + 1) % n
        area += float(hull[i][0]) * float(hull[j][1])
        area -= float(hull[j][0]) * float(hull[i][1])
    return abs(area) / 2.0


def close_ring(hull: Sequence[Sequence[float]]) -> List[List[float]] | None:
    """Return a closed GeoJSON-style ring for the hull, or None if degenerate."""

    if len(hull) < 3:
        return None
    ring = [[float(p[0]), float(p[1])] for p in hull]
    ring.append(list(ring[0]))
    return ring


def centroid(points: Sequence[Sequence[float]]) -> Coord:
    """Arithmetic mean of the point coordinates."""

    if len(points) == 0:
        raise ValueError("Cannot compute the centroid of an empty point set.")
    arr = np.asarray(points, dtype=float)
    return float(arr[:, 0].mean()), float(arr[:, 1].mean())


def bounding_box_area(points: Sequence[Sequence[float]]) -> float:
    """Width times height of the axis-aligned bounding box; 0 below three points."""

    if len(points) < 3:
        return 0.0
    arr = np.asarray(points, dtype=float)
    width = float(arr[:, 0].max() - arr[:, 0].min())
    height = float(arr[:, 1].max() - arr[:, 1].min())
    return width * height
