import math

import matplotlib

matplotlib.use("Agg")

from pysda.dataset import PointDataset
from pysda.mstdbscan import MovingClusterTracker, TrackerParams
from pysda.plots import _css_color, plot_diffusion, plot_tracker_window
from pysda.projection import project_figure
from pysda.tapitas import DiffusionAnalyzer, DiffusionParams


def _dataset():
    rows = []
    for k in range(6):
        rows.append({"x": 121.5 + 0.0001 * (k % 3), "y": 25.0 + 0.0001 * (k // 3), "t": k % 3})
    return PointDataset.from_records(rows, time_field="t", unit="int")


def test_css_color_converts_hsl():
    r, g, b = _css_color("hsl(0, 70%, 60%)")
    assert r > g and math.isclose(g, b)
    assert _css_color("#cccccc") == "#cccccc"


def test_plot_diffusion_writes_png(tmp_path):
    result = DiffusionAnalyzer(_dataset(), DiffusionParams(t1=2, t2=5, sr=100)).run()
    projection = project_figure(result, top_groups=2)
    out = tmp_path / "figs" / "diffusion.png"
    plot_diffusion(projection, out)
    assert out.exists()


def test_plot_tracker_window_writes_png(tmp_path):
    params = TrackerParams(spatial_eps=100, temporal_eps_low=0, temporal_eps_high=1, min_pts=2)
    tracked = MovingClusterTracker(_dataset(), params).run()
    assert tracked.clusters_in(0)
    out = tmp_path / "window.png"
    plot_tracker_window(tracked, 0, out)
    assert out.exists()
