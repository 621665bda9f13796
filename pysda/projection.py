"""Presentation projection of a diffusion result.

Selects the largest sub-clusters, assigns each a deterministic colour and
groups nodes, sub-clusters and progression links by those top groups, with
everything else under ``"other"``. The projection is a pure function of the
result: identical inputs give identical output.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from pysda.tapitas import DiffusionResult

OTHER = "other"
OTHER_COLOR = "#cccccc"


@dataclass(frozen=True)
class FigureProjection:
    bounds: Dict[str, float]
    nodes: Dict[Any, Dict[str, Any]]
    subclusters: Dict[Any, Dict[str, Any]]
    progression_links: Dict[Any, Dict[str, Any]]
    time_series: List[Dict[str, Any]]
    top_groups: List[int]
    colors: List[str]


def color_palette(n_groups: int) -> List[str]:
    """Evenly spaced HSL hues, ``i * 360 / n`` for group i."""

    return [f"hsl({(i * 360 / n_groups) % 360:g}, 70%, 60%)" for i in range(n_groups)]


def top_group_ids(result: DiffusionResult, n_groups: int) -> List[int]:
    """Sub-cluster ids ordered by node count (descending, ties by lower id)."""

    counts = Counter(node.clid for node in result.nodes if node.clid != -1)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [clid for clid, _ in ranked[:n_groups]]


def time_series(result: DiffusionResult) -> List[Dict[str, Any]]:
    """Case counts per ordinal time, ascending, with calendar labels."""

    counts = Counter(int(t) for t in result.dataset.int_time)
    return [
        {"time": t, "date": result.dataset.label(t), "count": counts[t]}
        for t in sorted(counts)
    ]


def _bounds(result: DiffusionResult) -> Dict[str, float]:
    xs = [node.x for node in result.nodes]
    ys = [node.y for node in result.nodes]
    return {"minx": min(xs), "miny": min(ys), "maxx": max(xs), "maxy": max(ys)}


def _group_key(clid: int, top: Sequence[int]) -> Any:
    return clid if clid in top else OTHER


def project_figure(
    result: DiffusionResult,
    top_groups: int = 5,
    colors: Sequence[str] | None = None,
) -> FigureProjection | None:
    """
    Build the figure data for a diffusion result.

    Returns None when the result has no sub-clusters. ``colors`` overrides the
    generated palette and must provide at least ``top_groups`` entries.
    """

    if not result.subclusters:
        return None
    if top_groups < 1:
        raise ValueError(f"top_groups must be at least 1, got {top_groups}")

    palette = list(colors) if colors is not None else color_palette(top_groups)
    if len(palette) < top_groups:
        raise ValueError(f"Need {top_groups} colors, got {len(palette)}")
    top = top_group_ids(result, top_groups)
    color_of = {clid: palette[pos] for pos, clid in enumerate(top)}

    nodes: Dict[Any, Dict[str, Any]] = {OTHER: {"xx": [], "yy": [], "cc": [], "ids": [], "color": OTHER_COLOR}}
    for clid in top:
        nodes[clid] = {"xx": [], "yy": [], "cc": [], "ids": [], "color": color_of[clid]}
    for node in result.nodes:
        group = nodes[_group_key(node.clid, top)]
        group["xx"].append(node.x)
        group["yy"].append(node.y)
        group["cc"].append(group["color"])
        group["ids"].append(node.node_id)

    subclusters: Dict[Any, Dict[str, Any]] = {OTHER: {"clusters": [], "color": OTHER_COLOR}}
    for clid in top:
        subclusters[clid] = {"clusters": [], "color": color_of[clid]}
    for cluster in result.subclusters:
        subclusters[_group_key(cluster.clid, top)]["clusters"].append(cluster)

    # Progression links follow the colour of their destination sub-cluster.
    links: Dict[Any, Dict[str, Any]] = {OTHER: {"links": [], "color": OTHER_COLOR}}
    for clid in top:
        links[clid] = {"links": [], "color": color_of[clid]}
    for link in result.prog_links:
        links[_group_key(link.destination_clid, top)]["links"].append(link)

    return FigureProjection(
        bounds=_bounds(result),
        nodes=nodes,
        subclusters=subclusters,
        progression_links=links,
        time_series=time_series(result),
        top_groups=top,
        colors=palette,
    )
