"""MSTDBSCAN: moving spatiotemporal density clustering.

For every distinct ordinal time ``t`` a window ``[t, t + temporal_eps_high]``
is clustered with a DBSCAN variant whose neighbor predicate combines a
haversine radius with a band of admissible time differences. Clusters of
consecutive windows are matched by point-set overlap and each cluster is
classified as Emerge, Steady, Growth, Reduction, Move or Merge.

Split is not derived: a forward pass only sees merges from the receiving
cluster's side.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd

from pysda.config import get_nested
from pysda.dataset import PointDataset
from pysda.geometry import Coord, centroid, close_ring, convex_hull, haversine_distance, polygon_area
from pysda.neighbors import NeighborIndex, get_neighbor_index

EVOLUTION_TYPES: Tuple[str, ...] = ("Emerge", "Steady", "Growth", "Reduction", "Move", "Merge")
POLYGON_STATES: Tuple[str, ...] = ("increase", "decrease", "keep", "no cluster")
OVERLAP_THRESHOLD = 0.3
NOISE = -1


@dataclass(frozen=True)
class TrackerParams:
    """Parameters of an MSTDBSCAN run. ``spatial_eps`` is in metres, times in ticks."""

    spatial_eps: float = 300.0
    temporal_eps_low: float = 1
    temporal_eps_high: float = 2
    min_pts: int = 3
    moving_ratio: float = 0.1
    area_ratio: float = 0.1

    def __post_init__(self) -> None:
        if self.spatial_eps <= 0:
            raise ValueError(f"spatial_eps must be positive, got {self.spatial_eps}")
        if self.temporal_eps_low < 0 or self.temporal_eps_high < self.temporal_eps_low:
            raise ValueError(
                "temporal eps must satisfy 0 <= low <= high, got "
                f"low={self.temporal_eps_low}, high={self.temporal_eps_high}"
            )
        if self.min_pts < 1:
            raise ValueError(f"min_pts must be at least 1, got {self.min_pts}")

    @property
    def moving_threshold(self) -> float:
        return self.spatial_eps * self.moving_ratio

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "TrackerParams":
        """Read the ``tracker`` section of a pipeline config."""

        return cls(
            spatial_eps=float(get_nested(cfg, ["tracker", "spatial_eps"], 300)),
            temporal_eps_low=float(get_nested(cfg, ["tracker", "temporal_eps_low"], 1)),
            temporal_eps_high=float(get_nested(cfg, ["tracker", "temporal_eps_high"], 2)),
            min_pts=int(get_nested(cfg, ["tracker", "min_pts"], 3)),
            moving_ratio=float(get_nested(cfg, ["tracker", "moving_ratio"], 0.1)),
            area_ratio=float(get_nested(cfg, ["tracker", "area_ratio"], 0.1)),
        )


@dataclass(frozen=True)
class TimeWindow:
    mst_time: int
    start_time: int
    end_time: float
    point_ids: Tuple[int, ...]
    mst_date: Any


@dataclass(frozen=True)
class DynamicCluster:
    cluster_id: int
    mst_time: int
    mst_date: Any
    center_time: int
    evolution_type: str
    center_x: float
    center_y: float
    hull: Tuple[Coord, ...]
    area: float
    point_ids: Tuple[int, ...]
    core_ids: Tuple[int, ...]
    border_ids: Tuple[int, ...]
    matched_ids: Tuple[int, ...] = ()

    @property
    def point_count(self) -> int:
        return len(self.point_ids)

    @property
    def core_count(self) -> int:
        return len(self.core_ids)

    @property
    def border_count(self) -> int:
        return len(self.border_ids)

    @property
    def shape(self) -> Dict[str, Any] | None:
        """GeoJSON polygon of the hull, or None for degenerate hulls."""

        ring = close_ring(self.hull)
        if ring is None:
            return None
        return {"type": "Polygon", "coordinates": [ring]}


@dataclass(frozen=True)
class DynamicPoint:
    point_id: int
    mst_time: int
    mst_date: Any
    role: str
    cluster_id: int
    x: float
    y: float
    int_time: int


@dataclass(frozen=True)
class PolygonState:
    polygon_id: Any
    mst_time: int
    mst_date: Any
    cluster_count: int
    state: str


@dataclass(frozen=True)
class ClusterMatch:
    """A previous-window cluster overlapping the current one."""

    cluster_id: int
    overlap: float
    area: float
    center_shift: float
    area_change: float
    is_moving: bool
    is_changing_area: bool


@dataclass(frozen=True)
class _WindowCluster:
    cluster_id: int
    point_ids: Tuple[int, ...]
    core_ids: Tuple[int, ...]
    border_ids: Tuple[int, ...]
    center: Coord
    hull: Tuple[Coord, ...]
    area: float


def overlap_ratio(a: Sequence[int], b: Sequence[int]) -> float:
    """Jaccard overlap of two point-id sets; 0 when both are empty."""

    set_a, set_b = set(a), set(b)
    union = len(set_a | set_b)
    if union == 0:
        return 0.0
    return len(set_a & set_b) / union


def area_change_ratio(current: float, previous: float) -> float:
    """Relative area change; a zero previous area counts as no change."""

    if previous <= 0:
        return 0.0
    return abs(current - previous) / previous


def classify_evolution(area: float, matches: Sequence[ClusterMatch]) -> str:
    """Evolution type of a cluster given its matches in the previous window."""

    if not matches:
        return "Emerge"
    if len(matches) > 1:
        return "Merge"
    match = matches[0]
    if match.is_changing_area:
        return "Growth" if area > match.area else "Reduction"
    if match.is_moving:
        return "Move"
    return "Steady"


@dataclass(frozen=True)
class TrackerResult:
    """Read-only output of one :meth:`MovingClusterTracker.run` call."""

    dataset: PointDataset
    params: TrackerParams
    windows: Tuple[TimeWindow, ...]
    clusters: Tuple[DynamicCluster, ...]
    points: Tuple[DynamicPoint, ...]
    failed_windows: Tuple[int, ...] = ()
    polygon_states: Tuple[PolygonState, ...] | None = None

    def clusters_in(self, mst_time: int) -> Tuple[DynamicCluster, ...]:
        return tuple(c for c in self.clusters if c.mst_time == mst_time)

    def summary(self) -> Dict[str, Any]:
        return {
            "total_clusters": len(self.clusters),
            "total_points": len(self.points),
            "time_windows": len({c.mst_time for c in self.clusters}),
            "window_count": len(self.windows),
            "evolution_types": sorted({c.evolution_type for c in self.clusters}),
            "failed_windows": list(self.failed_windows),
        }

    def get_all(self) -> Dict[str, Any]:
        return {"clusters": self.clusters, "points": self.points, "polygons": self.polygon_states}

    def set_polygons(
        self,
        polygons: Sequence[Any] | Mapping[Any, Any],
        intersects: Callable[[Any, DynamicCluster], bool],
    ) -> "TrackerResult":
        """
        Tag every polygon in every window with a cluster-dynamics state.

        ``intersects(polygon, cluster)`` is the caller's spatial predicate. A
        polygon touched by no cluster is "no cluster"; otherwise its count of
        intersecting clusters is compared with the previous window's count
        (increase, decrease or keep). Returns a new result; this one is left
        untouched.
        """

        items = list(polygons.items()) if isinstance(polygons, Mapping) else list(enumerate(polygons))
        states: List[PolygonState] = []
        for polygon_id, polygon in items:
            previous = 0
            for window in self.windows:
                count = sum(1 for c in self.clusters_in(window.mst_time) if intersects(polygon, c))
                if count == 0:
                    state = "no cluster"
                elif count > previous:
                    state = "increase"
                elif count < previous:
                    state = "decrease"
                else:
                    state = "keep"
                states.append(
                    PolygonState(
                        polygon_id=polygon_id,
                        mst_time=window.mst_time,
                        mst_date=window.mst_date,
                        cluster_count=count,
                        state=state,
                    )
                )
                previous = count
        return replace(self, polygon_states=tuple(states))

    def to_frames(self) -> Dict[str, pd.DataFrame]:
        clusters = pd.DataFrame(
            [
                {
                    "clusterID": c.cluster_id,
                    "mstTime": c.mst_time,
                    "mstDate": c.mst_date,
                    "type": c.evolution_type,
                    "centerX": c.center_x,
                    "centerY": c.center_y,
                    "area": c.area,
                    "pointCount": c.point_count,
                    "coreCount": c.core_count,
                    "borderCount": c.border_count,
                    "matched": list(c.matched_ids),
                    "shape": c.shape,
                }
                for c in self.clusters
            ],
            columns=[
                "clusterID", "mstTime", "mstDate", "type", "centerX", "centerY", "area",
                "pointCount", "coreCount", "borderCount", "matched", "shape",
            ],
        )
        points = pd.DataFrame(
            [
                {
                    "pointID": p.point_id,
                    "mstTime": p.mst_time,
                    "mstDate": p.mst_date,
                    "role": p.role,
                    "clusterID": p.cluster_id,
                    "x": p.x,
                    "y": p.y,
                    "intTime": p.int_time,
                }
                for p in self.points
            ],
            columns=["pointID", "mstTime", "mstDate", "role", "clusterID", "x", "y", "intTime"],
        )
        frames = {"clusters": clusters, "points": points}
        if self.polygon_states is not None:
            frames["polygons"] = pd.DataFrame(
                [
                    {
                        "polygonID": s.polygon_id,
                        "mstTime": s.mst_time,
                        "mstDate": s.mst_date,
                        "clusterCount": s.cluster_count,
                        "state": s.state,
                    }
                    for s in self.polygon_states
                ],
                columns=["polygonID", "mstTime", "mstDate", "clusterCount", "state"],
            )
        return frames


class MovingClusterTracker:
    """Detect density clusters per time window and track their evolution."""

    def __init__(
        self,
        dataset: PointDataset,
        params: TrackerParams | None = None,
        neighbors: str | NeighborIndex = "brute",
        logger: logging.Logger | None = None,
    ) -> None:
        self.dataset = dataset
        self.params = params or TrackerParams()
        self.neighbors = get_neighbor_index(neighbors) if isinstance(neighbors, str) else neighbors
        self.logger: logging.Logger = logger or logging.getLogger(self.__class__.__name__)

    def run(self) -> TrackerResult:
        """Cluster every window, classify evolution and tag point roles."""

        windows = self.time_windows()
        self.logger.info(
            "Running MSTDBSCAN on %d points over %d windows (eps=%s m, dt=[%s, %s], min_pts=%d)",
            len(self.dataset),
            len(windows),
            self.params.spatial_eps,
            self.params.temporal_eps_low,
            self.params.temporal_eps_high,
            self.params.min_pts,
        )

        per_window: List[List[_WindowCluster]] = []
        points: List[DynamicPoint] = []
        failed: List[int] = []
        for window in windows:
            try:
                found, rows = self._cluster_window(window)
            except Exception as exc:
                self.logger.warning("Clustering failed for window %d (%s): %s", window.mst_time, window.mst_date, exc)
                failed.append(window.mst_time)
                per_window.append([])
                continue
            self.logger.debug("Window %d (%s): %d clusters", window.mst_time, window.mst_date, len(found))
            per_window.append(found)
            points.extend(rows)

        clusters: List[DynamicCluster] = []
        for window, found in zip(windows, per_window):
            previous = per_window[window.mst_time - 1] if window.mst_time > 0 else []
            for wc in found:
                matches = self._match_previous(wc, previous)
                clusters.append(
                    DynamicCluster(
                        cluster_id=wc.cluster_id,
                        mst_time=window.mst_time,
                        mst_date=window.mst_date,
                        center_time=window.start_time,
                        evolution_type=classify_evolution(wc.area, matches),
                        center_x=wc.center[0],
                        center_y=wc.center[1],
                        hull=wc.hull,
                        area=wc.area,
                        point_ids=wc.point_ids,
                        core_ids=wc.core_ids,
                        border_ids=wc.border_ids,
                        matched_ids=tuple(m.cluster_id for m in matches),
                    )
                )

        self.logger.info(
            "MSTDBSCAN found %d clusters and %d point rows (%d failed windows)",
            len(clusters),
            len(points),
            len(failed),
        )
        return TrackerResult(
            dataset=self.dataset,
            params=self.params,
            windows=tuple(windows),
            clusters=tuple(clusters),
            points=tuple(points),
            failed_windows=tuple(failed),
        )

    def time_windows(self) -> List[TimeWindow]:
        """One overlapping window per distinct ordinal time, ascending."""

        times = self.dataset.int_time
        windows: List[TimeWindow] = []
        for t in np.unique(times).tolist():
            end = t + self.params.temporal_eps_high
            members = np.flatnonzero((times >= t) & (times <= end))
            windows.append(
                TimeWindow(
                    mst_time=len(windows),
                    start_time=int(t),
                    end_time=end,
                    point_ids=tuple(members.tolist()),
                    mst_date=self.dataset.label(int(t)),
                )
            )
        return windows

    def _cluster_window(self, window: TimeWindow) -> Tuple[List[_WindowCluster], List[DynamicPoint]]:
        ds = self.dataset
        ids = np.asarray(window.point_ids, dtype=int)
        lons, lats, times = ds.x[ids], ds.y[ids], ds.int_time[ids]
        index = self.neighbors.fit(lons, lats)
        low, high = self.params.temporal_eps_low, self.params.temporal_eps_high
        min_pts = self.params.min_pts

        def region(k: int) -> np.ndarray:
            cand = index.query(k, self.params.spatial_eps)
            dt = np.abs(times[cand] - times[k])
            return cand[(dt >= low) & (dt <= high)]

        n = len(ids)
        labels = np.full(n, NOISE, dtype=int)
        roles = ["noise"] * n
        visited = np.zeros(n, dtype=bool)
        next_id = 0

        for k in range(n):
            if visited[k]:
                continue
            visited[k] = True
            seeds = region(k)
            if len(seeds) < min_pts:
                continue

            cid = next_id
            next_id += 1
            labels[k] = cid
            roles[k] = "core"
            queue = deque(seeds.tolist())
            while queue:
                m = queue.popleft()
                if not visited[m]:
                    visited[m] = True
                    labels[m] = cid
                    reach = region(m)
                    if len(reach) >= min_pts:
                        roles[m] = "core"
                        queue.extend(reach.tolist())
                    else:
                        roles[m] = "border"
                elif labels[m] == NOISE:
                    # Visited earlier as noise, now density-reachable.
                    labels[m] = cid
                    roles[m] = "border"

        found: List[_WindowCluster] = []
        for cid in range(next_id):
            local = np.flatnonzero(labels == cid)
            coords = [(float(lons[k]), float(lats[k])) for k in local]
            hull = tuple(convex_hull(coords))
            found.append(
                _WindowCluster(
                    cluster_id=cid,
                    point_ids=tuple(int(ids[k]) for k in local),
                    core_ids=tuple(int(ids[k]) for k in local if roles[k] == "core"),
                    border_ids=tuple(int(ids[k]) for k in local if roles[k] == "border"),
                    center=centroid(coords),
                    hull=hull,
                    area=polygon_area(hull),
                )
            )

        rows = [
            DynamicPoint(
                point_id=int(ids[k]),
                mst_time=window.mst_time,
                mst_date=window.mst_date,
                role=roles[k],
                cluster_id=int(labels[k]),
                x=float(lons[k]),
                y=float(lats[k]),
                int_time=int(times[k]),
            )
            for k in range(n)
        ]
        return found, rows

    def _match_previous(self, current: _WindowCluster, previous: Sequence[_WindowCluster]) -> List[ClusterMatch]:
        matches: List[ClusterMatch] = []
        for prev in previous:
            overlap = overlap_ratio(current.point_ids, prev.point_ids)
            if overlap <= OVERLAP_THRESHOLD:
                continue
            shift = haversine_distance(current.center, prev.center)
            change = area_change_ratio(current.area, prev.area)
            matches.append(
                ClusterMatch(
                    cluster_id=prev.cluster_id,
                    overlap=overlap,
                    area=prev.area,
                    center_shift=shift,
                    area_change=change,
                    is_moving=shift > self.params.moving_threshold,
                    is_changing_area=change > self.params.area_ratio,
                )
            )
        matches.sort(key=lambda m: (-m.overlap, m.cluster_id))
        return matches
