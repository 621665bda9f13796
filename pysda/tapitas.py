"""Tapitas: temporal and spatial point diffusion analysis.

Infers candidate transmission structure between cases:

* neighboring pairs: cases close in space and within the short window T1,
  plausibly sharing a common source;
* shifting links: directed case-to-case links within the extended window
  (T1, T2], scored by spatial and temporal risk;
* sub-clusters: connected components of the neighboring-pair graph;
* progression links: shifting links aggregated between sub-clusters.

The brute-force neighbor index evaluates the full O(n^2) distance matrix, which
keeps a run practical up to a few thousand points. Passing
``neighbors="balltree"`` replaces the spatial scan with a ball tree without
changing any result; time lags are only computed for the candidate pairs.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

import numpy as np
import pandas as pd

from pysda.config import get_nested
from pysda.dataset import PointDataset
from pysda.geometry import bounding_box_area, centroid, haversine_distance
from pysda.neighbors import NeighborIndex, get_neighbor_index
from pysda.temporal import pair_time_lags

TABLES: Tuple[str, ...] = ("nodes", "npairs", "slinks", "subclusters", "prog_links")
DEFAULT_CRITICAL_VALUE = 0.1


@dataclass(frozen=True)
class DiffusionParams:
    """Parameters of a Tapitas run. Times are in ticks, ``sr`` in metres."""

    t1: float = 12
    t2: float = 27
    sr: float = 500.0
    resample_count: int = 99
    confidence: float = 0.80
    critical_value: float | None = None

    def __post_init__(self) -> None:
        if self.t1 < 0:
            raise ValueError(f"T1 must be non-negative, got {self.t1}")
        if self.t2 <= self.t1:
            raise ValueError(f"T2 must be greater than T1, got T1={self.t1}, T2={self.t2}")
        if self.sr <= 0:
            raise ValueError(f"SR must be positive, got {self.sr}")

    @property
    def effective_critical_value(self) -> float:
        return DEFAULT_CRITICAL_VALUE if self.critical_value is None else float(self.critical_value)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "DiffusionParams":
        """Read the ``diffusion`` section of a pipeline config."""

        critical = get_nested(cfg, ["diffusion", "critical_value"], None)
        return cls(
            t1=float(get_nested(cfg, ["diffusion", "t1"], 12)),
            t2=float(get_nested(cfg, ["diffusion", "t2"], 27)),
            sr=float(get_nested(cfg, ["diffusion", "sr"], 500)),
            resample_count=int(get_nested(cfg, ["diffusion", "resample_count"], 99)),
            confidence=float(get_nested(cfg, ["diffusion", "confidence"], 0.80)),
            critical_value=None if critical is None else float(critical),
        )


@dataclass(frozen=True)
class NeighboringPair:
    n1_id: int
    n2_id: int
    distance: float
    timelag: float
    common_origin_probability: float


@dataclass(frozen=True)
class ShiftingLink:
    origin_id: int
    destination_id: int
    distance: float
    timelag: float
    spatial_risk: float
    temporal_risk: float
    combined_risk: float
    risk_level: str
    origin_possibility: float


@dataclass(frozen=True)
class SubCluster:
    clid: int
    x: float
    y: float
    size: int
    time_start: int
    time_median: int
    time_stop: int
    area: float
    behavior: str
    node_ids: Tuple[int, ...]


@dataclass(frozen=True)
class ProgressionLink:
    origin_clid: int
    destination_clid: int
    origin_size: int
    destination_size: int
    x0: float
    y0: float
    x1: float
    y1: float
    t0: int
    t1: int
    avg_origin_possibility: float
    link_count: int
    distance: float
    timelag: int


@dataclass(frozen=True)
class Node:
    node_id: int
    x: float
    y: float
    int_time: int
    clid: int
    chid: int
    in_size: int
    out_size: int
    neig_size: int


@dataclass(frozen=True)
class DiffusionSummary:
    sub_clusters: int
    critical_value: float
    final_cpair: int
    final_slink: int
    nodes: int
    npair: int
    progressno: int
    slink: int
    resample: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub-cluster": self.sub_clusters,
            "critical_value": self.critical_value,
            "final_cpair": self.final_cpair,
            "final_slink": self.final_slink,
            "nodes": self.nodes,
            "npair": self.npair,
            "progressno": self.progressno,
            "slink": self.slink,
            "resample": self.resample,
        }


def classify_risk_level(combined_risk: float) -> str:
    if combined_risk > 0.7:
        return "High"
    if combined_risk > 0.4:
        return "Medium"
    return "Low"


def classify_behavior(size: int, time_span: float, t1: float, t2: float) -> str:
    """Label a sub-cluster by membership and the time span it covers."""

    if size <= 2:
        return "isolated"
    if time_span <= t1:
        return "outbreak"
    if time_span <= t2:
        return "spreading"
    return "prolonged"


@dataclass(frozen=True)
class DiffusionResult:
    """Read-only output of one :meth:`DiffusionAnalyzer.run` call."""

    dataset: PointDataset
    params: DiffusionParams
    nodes: Tuple[Node, ...]
    npairs: Tuple[NeighboringPair, ...]
    slinks: Tuple[ShiftingLink, ...]
    subclusters: Tuple[SubCluster, ...]
    prog_links: Tuple[ProgressionLink, ...]
    summary: DiffusionSummary

    def get(self, table: str) -> tuple:
        if table not in TABLES:
            raise ValueError(f"Unsupported result table: {table}")
        return getattr(self, table)

    def get_all(self) -> Dict[str, tuple]:
        return {table: self.get(table) for table in TABLES}

    def to_frames(self) -> Dict[str, pd.DataFrame]:
        """Tabular export with calendar labels in place of ordinal times."""

        ds = self.dataset
        label = ds.label
        nodes = pd.DataFrame(
            [
                {
                    "node_id": n.node_id,
                    "xx": n.x,
                    "yy": n.y,
                    "time": label(n.int_time),
                    "clid": n.clid,
                    "chid": n.chid,
                    "in_size": n.in_size,
                    "out_size": n.out_size,
                    "neig_size": n.neig_size,
                }
                for n in self.nodes
            ],
            columns=["node_id", "xx", "yy", "time", "clid", "chid", "in_size", "out_size", "neig_size"],
        )
        npairs = pd.DataFrame(
            [
                {
                    "n1_id": p.n1_id,
                    "n2_id": p.n2_id,
                    "n1x": ds.x[p.n1_id],
                    "n1y": ds.y[p.n1_id],
                    "n2x": ds.x[p.n2_id],
                    "n2y": ds.y[p.n2_id],
                    "n1t": label(ds.int_time[p.n1_id]),
                    "n2t": label(ds.int_time[p.n2_id]),
                    "distance": p.distance,
                    "timelag": p.timelag,
                    "max_cop": p.common_origin_probability,
                }
                for p in self.npairs
            ],
            columns=["n1_id", "n2_id", "n1x", "n1y", "n2x", "n2y", "n1t", "n2t", "distance", "timelag", "max_cop"],
        )
        slinks = pd.DataFrame(
            [
                {
                    "ooid": s.origin_id,
                    "ddid": s.destination_id,
                    "oxcor": ds.x[s.origin_id],
                    "oycor": ds.y[s.origin_id],
                    "dxcor": ds.x[s.destination_id],
                    "dycor": ds.y[s.destination_id],
                    "otime": label(ds.int_time[s.origin_id]),
                    "dtime": label(ds.int_time[s.destination_id]),
                    "distance": s.distance,
                    "timelag": s.timelag,
                    "srisk": s.spatial_risk,
                    "trisk": s.temporal_risk,
                    "crisk": s.combined_risk,
                    "riskLevel": s.risk_level,
                    "opossi": s.origin_possibility,
                }
                for s in self.slinks
            ],
            columns=[
                "ooid", "ddid", "oxcor", "oycor", "dxcor", "dycor", "otime", "dtime",
                "distance", "timelag", "srisk", "trisk", "crisk", "riskLevel", "opossi",
            ],
        )
        subclusters = pd.DataFrame(
            [
                {
                    "clid": c.clid,
                    "xx": c.x,
                    "yy": c.y,
                    "cls_size": c.size,
                    "time_median": label(c.time_median),
                    "time_start": label(c.time_start),
                    "time_stop": label(c.time_stop),
                    "cls_area": c.area,
                    "behaviors": c.behavior,
                    "node_ids": list(c.node_ids),
                }
                for c in self.subclusters
            ],
            columns=[
                "clid", "xx", "yy", "cls_size", "time_median", "time_start", "time_stop",
                "cls_area", "behaviors", "node_ids",
            ],
        )
        prog_links = pd.DataFrame(
            [
                {
                    "id0": p.origin_clid,
                    "id1": p.destination_clid,
                    "size0": p.origin_size,
                    "size1": p.destination_size,
                    "x0": p.x0,
                    "y0": p.y0,
                    "x1": p.x1,
                    "y1": p.y1,
                    "t0": label(p.t0),
                    "t1": label(p.t1),
                    "op": p.avg_origin_possibility,
                    "no_SL": p.link_count,
                    "distance": p.distance,
                    "timelag": p.timelag,
                }
                for p in self.prog_links
            ],
            columns=[
                "id0", "id1", "size0", "size1", "x0", "y0", "x1", "y1",
                "t0", "t1", "op", "no_SL", "distance", "timelag",
            ],
        )
        return {
            "nodes": nodes,
            "npairs": npairs,
            "slinks": slinks,
            "subclusters": subclusters,
            "prog_links": prog_links,
        }


class DiffusionAnalyzer:
    """Run the Tapitas diffusion analysis over an immutable point dataset."""

    def __init__(
        self,
        dataset: PointDataset,
        params: DiffusionParams | None = None,
        neighbors: str | NeighborIndex = "brute",
        logger: logging.Logger | None = None,
    ) -> None:
        self.dataset = dataset
        self.params = params or DiffusionParams()
        self.neighbors = get_neighbor_index(neighbors) if isinstance(neighbors, str) else neighbors
        self.logger: logging.Logger = logger or logging.getLogger(self.__class__.__name__)

    def run(self) -> DiffusionResult:
        """Execute every analysis step and return a fresh result snapshot."""

        n = len(self.dataset)
        self.logger.info(
            "Running Tapitas on %d points (T1=%s, T2=%s, SR=%s m, neighbors=%s)",
            n,
            self.params.t1,
            self.params.t2,
            self.params.sr,
            self.neighbors.name,
        )

        ii, jj, dd = self.neighbors.fit(self.dataset.x, self.dataset.y).pairs(self.params.sr)
        lags = pair_time_lags(self.dataset.int_time, ii, jj)

        npairs = self._neighboring_pairs(ii, jj, dd, lags)
        slinks = self._shifting_links(ii, jj, dd, lags)
        subclusters = self._sub_clusters(npairs)
        prog_links = self._progression_links(subclusters, slinks)
        nodes = self._nodes(npairs, slinks, subclusters)
        summary = self._summary(npairs, slinks, subclusters, prog_links)

        self.logger.info(
            "Tapitas found %d neighboring pairs, %d shifting links, %d sub-clusters, %d progression links",
            summary.npair,
            summary.slink,
            summary.sub_clusters,
            summary.progressno,
        )
        return DiffusionResult(
            dataset=self.dataset,
            params=self.params,
            nodes=nodes,
            npairs=npairs,
            slinks=slinks,
            subclusters=subclusters,
            prog_links=prog_links,
            summary=summary,
        )

    def _common_origin_probability(self, distance: float, timelag: float) -> float:
        spatial = math.exp(-distance / self.params.sr)
        temporal = math.exp(-timelag / self.params.t1) if self.params.t1 > 0 else 1.0
        return spatial * temporal

    def _neighboring_pairs(
        self, ii: np.ndarray, jj: np.ndarray, dd: np.ndarray, lags: np.ndarray
    ) -> Tuple[NeighboringPair, ...]:
        pairs: List[NeighboringPair] = []
        for i, j, dist, lag in zip(ii.tolist(), jj.tolist(), dd.tolist(), lags.tolist()):
            if lag <= self.params.t1:
                pairs.append(
                    NeighboringPair(
                        n1_id=i,
                        n2_id=j,
                        distance=dist,
                        timelag=lag,
                        common_origin_probability=self._common_origin_probability(dist, lag),
                    )
                )
        return tuple(pairs)

    def _shifting_links(
        self, ii: np.ndarray, jj: np.ndarray, dd: np.ndarray, lags: np.ndarray
    ) -> Tuple[ShiftingLink, ...]:
        """Links for both orientations of every close pair with T1 < |dt| <= T2."""

        t1, t2, sr = self.params.t1, self.params.t2, self.params.sr
        links: List[ShiftingLink] = []
        for i, j, dist, lag in zip(ii.tolist(), jj.tolist(), dd.tolist(), lags.tolist()):
            if not t1 < lag <= t2:
                continue
            spatial_risk = math.exp(-dist / sr)
            temporal_risk = math.exp(-(((lag - t1) / (t2 - t1)) ** 2))
            combined = spatial_risk * temporal_risk
            for origin, destination in ((i, j), (j, i)):
                links.append(
                    ShiftingLink(
                        origin_id=origin,
                        destination_id=destination,
                        distance=dist,
                        timelag=lag,
                        spatial_risk=spatial_risk,
                        temporal_risk=temporal_risk,
                        combined_risk=combined,
                        risk_level=classify_risk_level(combined),
                        origin_possibility=combined,
                    )
                )
        links.sort(key=lambda link: (link.origin_id, link.destination_id))
        return tuple(links)

    def _components(self, npairs: Tuple[NeighboringPair, ...]) -> List[List[int]]:
        """Connected components of the pair graph via an explicit stack."""

        n = len(self.dataset)
        adjacency: List[List[int]] = [[] for _ in range(n)]
        for pair in npairs:
            adjacency[pair.n1_id].append(pair.n2_id)
            adjacency[pair.n2_id].append(pair.n1_id)

        visited = np.zeros(n, dtype=bool)
        components: List[List[int]] = []
        for start in range(n):
            if visited[start] or not adjacency[start]:
                continue
            visited[start] = True
            stack = [start]
            members: List[int] = []
            while stack:
                node = stack.pop()
                members.append(node)
                for nb in adjacency[node]:
                    if not visited[nb]:
                        visited[nb] = True
                        stack.append(nb)
            components.append(sorted(members))
        return components

    def _sub_clusters(self, npairs: Tuple[NeighboringPair, ...]) -> Tuple[SubCluster, ...]:
        ds = self.dataset
        clusters: List[SubCluster] = []
        for clid, members in enumerate(self._components(npairs)):
            pts = [(ds.x[m], ds.y[m]) for m in members]
            cx, cy = centroid(pts)
            times = sorted(int(ds.int_time[m]) for m in members)
            span = times[-1] - times[0]
            clusters.append(
                SubCluster(
                    clid=clid,
                    x=cx,
                    y=cy,
                    size=len(members),
                    time_start=times[0],
                    time_median=times[len(times) // 2],
                    time_stop=times[-1],
                    area=bounding_box_area(pts),
                    behavior=classify_behavior(len(members), span, self.params.t1, self.params.t2),
                    node_ids=tuple(members),
                )
            )
        return tuple(clusters)

    def _progression_links(
        self, subclusters: Tuple[SubCluster, ...], slinks: Tuple[ShiftingLink, ...]
    ) -> Tuple[ProgressionLink, ...]:
        clid_of = np.full(len(self.dataset), -1, dtype=int)
        for cluster in subclusters:
            clid_of[list(cluster.node_ids)] = cluster.clid

        crossing: Dict[Tuple[int, int], List[float]] = defaultdict(list)
        for link in slinks:
            a, b = int(clid_of[link.origin_id]), int(clid_of[link.destination_id])
            if a >= 0 and b >= 0 and a != b:
                crossing[(a, b)].append(link.origin_possibility)

        links: List[ProgressionLink] = []
        for (a, b) in sorted(crossing):
            src, dst = subclusters[a], subclusters[b]
            possibilities = crossing[(a, b)]
            links.append(
                ProgressionLink(
                    origin_clid=a,
                    destination_clid=b,
                    origin_size=src.size,
                    destination_size=dst.size,
                    x0=src.x,
                    y0=src.y,
                    x1=dst.x,
                    y1=dst.y,
                    t0=src.time_start,
                    t1=dst.time_stop,
                    avg_origin_possibility=sum(possibilities) / len(possibilities),
                    link_count=len(possibilities),
                    distance=haversine_distance((src.x, src.y), (dst.x, dst.y)),
                    timelag=dst.time_start - src.time_stop,
                )
            )
        return tuple(links)

    def _nodes(
        self,
        npairs: Tuple[NeighboringPair, ...],
        slinks: Tuple[ShiftingLink, ...],
        subclusters: Tuple[SubCluster, ...],
    ) -> Tuple[Node, ...]:
        ds = self.dataset
        n = len(ds)
        clid_of = np.full(n, -1, dtype=int)
        for cluster in subclusters:
            clid_of[list(cluster.node_ids)] = cluster.clid

        in_size = np.bincount(np.array([s.destination_id for s in slinks], dtype=int), minlength=n)
        out_size = np.bincount(np.array([s.origin_id for s in slinks], dtype=int), minlength=n)
        ends = np.array([p.n1_id for p in npairs] + [p.n2_id for p in npairs], dtype=int)
        neig_size = np.bincount(ends, minlength=n)

        return tuple(
            Node(
                node_id=i,
                x=float(ds.x[i]),
                y=float(ds.y[i]),
                int_time=int(ds.int_time[i]),
                clid=int(clid_of[i]),
                chid=int(clid_of[i]),
                in_size=int(in_size[i]),
                out_size=int(out_size[i]),
                neig_size=int(neig_size[i]),
            )
            for i in range(n)
        )

    def _summary(
        self,
        npairs: Tuple[NeighboringPair, ...],
        slinks: Tuple[ShiftingLink, ...],
        subclusters: Tuple[SubCluster, ...],
        prog_links: Tuple[ProgressionLink, ...],
    ) -> DiffusionSummary:
        critical = self.params.effective_critical_value
        return DiffusionSummary(
            sub_clusters=len(subclusters),
            critical_value=critical,
            final_cpair=sum(1 for p in npairs if p.common_origin_probability > self.params.confidence),
            final_slink=sum(1 for s in slinks if s.combined_risk > critical),
            nodes=len(self.dataset),
            npair=len(npairs),
            progressno=len(prog_links),
            slink=len(slinks),
            resample=self.params.resample_count,
        )


