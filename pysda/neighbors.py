"""Spatial neighbor queries behind a small, swappable interface.

Both analyzers only ask two questions of the point cloud: "which points lie
within r metres of point i" and "which unordered pairs lie within r metres".
The brute-force index answers them with a full haversine scan; the BallTree
index answers them with scikit-learn's haversine ball tree. Results are
identical up to floating-point rounding at the radius boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Tuple

import numpy as np
from sklearn.neighbors import BallTree

from pysda.geometry import EARTH_RADIUS_M, haversine_matrix, haversine_to_many

PairArrays = Tuple[np.ndarray, np.ndarray, np.ndarray]


class NeighborIndex(Protocol):
    name: str

    def fit(self, lons: np.ndarray, lats: np.ndarray) -> "NeighborIndex":
        ...

    def query(self, idx: int, radius_m: float) -> np.ndarray:
        ...

    def pairs(self, radius_m: float) -> PairArrays:
        ...


def _empty_pairs() -> PairArrays:
    return np.zeros(0, dtype=int), np.zeros(0, dtype=int), np.zeros(0, dtype=float)


@dataclass
class BruteForceNeighbors:
    name: str = "brute"
    lons: np.ndarray = field(default_factory=lambda: np.zeros(0))
    lats: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def fit(self, lons: np.ndarray, lats: np.ndarray) -> "BruteForceNeighbors":
        self.lons = np.asarray(lons, dtype=float)
        self.lats = np.asarray(lats, dtype=float)
        return self

    def query(self, idx: int, radius_m: float) -> np.ndarray:
        """Sorted indices of points within radius of point idx, excluding idx."""

        dist = haversine_to_many(self.lons[idx], self.lats[idx], self.lons, self.lats)
        hits = np.flatnonzero(dist <= radius_m)
        return hits[hits != idx]

    def pairs(self, radius_m: float) -> PairArrays:
        """Return (i, j, distance) arrays for all i < j within radius, row-major."""

        if len(self.lons) < 2:
            return _empty_pairs()
        D = haversine_matrix(self.lons, self.lats)
        ii, jj = np.nonzero(np.triu(D <= radius_m, k=1))
        return ii, jj, D[ii, jj]


@dataclass
class BallTreeNeighbors:
    name: str = "balltree"
    leaf_size: int = 40
    lons: np.ndarray = field(default_factory=lambda: np.zeros(0))
    lats: np.ndarray = field(default_factory=lambda: np.zeros(0))
    tree: BallTree | None = None

    def fit(self, lons: np.ndarray, lats: np.ndarray) -> "BallTreeNeighbors":
        self.lons = np.asarray(lons, dtype=float)
        self.lats = np.asarray(lats, dtype=float)
        if len(self.lons):
            # BallTree's haversine metric expects (lat, lon) in radians.
            coords_rad = np.radians(np.column_stack([self.lats, self.lons]))
            self.tree = BallTree(coords_rad, metric="haversine", leaf_size=self.leaf_size)
        else:
            self.tree = None
        return self

    def _candidates(self, idx: int, radius_m: float) -> np.ndarray:
        point = np.radians([[self.lats[idx], self.lons[idx]]])
        # Pad the angular radius slightly; exact distances are re-checked below.
        found = self.tree.query_radius(point, r=radius_m / EARTH_RADIUS_M * (1 + 1e-9))[0]
        return np.sort(found)

    def query(self, idx: int, radius_m: float) -> np.ndarray:
        if self.tree is None:
            return np.zeros(0, dtype=int)
        cand = self._candidates(idx, radius_m)
        cand = cand[cand != idx]
        dist = haversine_to_many(self.lons[idx], self.lats[idx], self.lons[cand], self.lats[cand])
        return cand[dist <= radius_m]

    def pairs(self, radius_m: float) -> PairArrays:
        if self.tree is None or len(self.lons) < 2:
            return _empty_pairs()
        ii, jj, dd = [], [], []
        for i in range(len(self.lons)):
            cand = self._candidates(i, radius_m)
            cand = cand[cand > i]
            if cand.size == 0:
                continue
            dist = haversine_to_many(self.lons[i], self.lats[i], self.lons[cand], self.lats[cand])
            keep = dist <= radius_m
            ii.append(np.full(int(keep.sum()), i, dtype=int))
            jj.append(cand[keep])
            dd.append(dist[keep])
        if not ii:
            return _empty_pairs()
        return np.concatenate(ii), np.concatenate(jj).astype(int), np.concatenate(dd)


def get_neighbor_index(method_name: str) -> NeighborIndex:
    name = method_name.lower()
    if name in {"brute", "naive"}:
        return BruteForceNeighbors()
    if name in {"balltree", "ball_tree"}:
        return BallTreeNeighbors()
    raise ValueError(f"Unsupported neighbor index: {method_name}")
