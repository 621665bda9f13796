"""Optional plotting utilities for inspecting analysis results.

Provides simple matplotlib helpers to visualise a diffusion projection (top
sub-cluster groups and progression links) and the clusters of one MSTDBSCAN
window.
"""

from __future__ import annotations

import colorsys
from pathlib import Path

import matplotlib.pyplot as plt

from pysda.mstdbscan import TrackerResult
from pysda.projection import OTHER, FigureProjection

ROLE_MARKERS = {"core": "o", "border": "^", "noise": "x"}


def plot_diffusion(projection: FigureProjection, output_path: Path) -> None:
    """Scatter nodes by top group and draw progression links as arrows."""

    fig, (ax_map, ax_ts) = plt.subplots(1, 2, figsize=(12, 5), gridspec_kw={"width_ratios": [3, 2]})
    for key, group in projection.nodes.items():
        if not group["xx"]:
            continue
        label = "other" if key == OTHER else f"cluster {key}"
        ax_map.scatter(group["xx"], group["yy"], s=8, color=_css_color(group["color"]), label=label)
    for group in projection.progression_links.values():
        color = _css_color(group["color"])
        for link in group["links"]:
            ax_map.annotate(
                "",
                xy=(link.x1, link.y1),
                xytext=(link.x0, link.y0),
                arrowprops={"arrowstyle": "->", "color": color, "lw": 1.0},
            )
    ax_map.set_xlim(projection.bounds["minx"], projection.bounds["maxx"])
    ax_map.set_ylim(projection.bounds["miny"], projection.bounds["maxy"])
    ax_map.set_xlabel("Longitude")
    ax_map.set_ylabel("Latitude")
    ax_map.set_title("Sub-cluster groups and progression links")
    ax_map.legend(loc="best", fontsize=8)

    ax_ts.bar([row["time"] for row in projection.time_series], [row["count"] for row in projection.time_series])
    ax_ts.set_xlabel("Time (ticks)")
    ax_ts.set_ylabel("Cases")
    ax_ts.set_title("Cases over time")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(output_path, dpi=150)
    plt.close(fig)


def plot_tracker_window(result: TrackerResult, mst_time: int, output_path: Path) -> None:
    """Plot point roles and cluster hulls for one tracker window."""

    rows = [p for p in result.points if p.mst_time == mst_time]
    if not rows:
        return

    fig, ax = plt.subplots(figsize=(6, 6))
    for role, marker in ROLE_MARKERS.items():
        subset = [p for p in rows if p.role == role]
        if subset:
            ax.scatter([p.x for p in subset], [p.y for p in subset], marker=marker, s=14, label=role)
    for cluster in result.clusters_in(mst_time):
        shape = cluster.shape
        if shape is not None:
            ring = shape["coordinates"][0]
            ax.plot([c[0] for c in ring], [c[1] for c in ring], "-", lw=1.0)
        ax.annotate(f"{cluster.cluster_id}:{cluster.evolution_type}", (cluster.center_x, cluster.center_y), fontsize=7)
    date = rows[0].mst_date
    ax.set_xlabel("Longitude")
    ax.set_ylabel("Latitude")
    ax.set_title(f"MSTDBSCAN window {mst_time} ({date})")
    ax.legend(loc="best", fontsize=8)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150)
    plt.close(fig)


def _css_color(color: str):
    """Convert ``hsl(h, s%, l%)`` strings to an RGB tuple matplotlib accepts."""

    if not color.startswith("hsl("):
        return color
    h, s, l = (part.strip().rstrip("%") for part in color[4:-1].split(","))
    r, g, b = colorsys.hls_to_rgb(float(h) / 360.0, float(l) / 100.0, float(s) / 100.0)
    return (r, g, b)
