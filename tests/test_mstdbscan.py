import math
from dataclasses import dataclass

import pytest

from pysda.dataset import PointDataset
from pysda.geometry import EARTH_RADIUS_M
from pysda.mstdbscan import (
    EVOLUTION_TYPES,
    NOISE,
    ClusterMatch,
    MovingClusterTracker,
    TrackerParams,
    area_change_ratio,
    classify_evolution,
    overlap_ratio,
)
from pysda.neighbors import BruteForceNeighbors

LON0, LAT0 = 121.5, 25.0
M_PER_DEG = EARTH_RADIUS_M * math.pi / 180


def _point(east_m, t, north_m=0.0):
    return {
        "x": LON0 + east_m / (M_PER_DEG * math.cos(math.radians(LAT0))),
        "y": LAT0 + north_m / M_PER_DEG,
        "t": t,
    }


def _track(points, neighbors="brute", **params):
    ds = PointDataset.from_records(points, time_field="t", unit="int")
    return MovingClusterTracker(ds, TrackerParams(**params), neighbors=neighbors).run()


def _match(area=1.0, moving=False, changing=False, cluster_id=0):
    return ClusterMatch(
        cluster_id=cluster_id,
        overlap=0.5,
        area=area,
        center_shift=0.0,
        area_change=0.0,
        is_moving=moving,
        is_changing_area=changing,
    )


MERGE_LAYOUT = [
    _point(0, 0), _point(3, 1), _point(6, 1),
    _point(150, 0), _point(153, 1), _point(156, 1),
    _point(78, 2),
]
LOOSE = dict(spatial_eps=100, temporal_eps_low=0, temporal_eps_high=1, min_pts=1)


def test_time_windows_cover_each_distinct_time():
    ds = PointDataset.from_records(
        [_point(0, 10), _point(0, 11), _point(5, 11), _point(0, 13)], time_field="t", unit="int"
    )
    windows = MovingClusterTracker(ds, TrackerParams(temporal_eps_low=0, temporal_eps_high=1)).time_windows()
    assert [w.mst_time for w in windows] == [0, 1, 2]
    assert [w.point_ids for w in windows] == [(0, 1, 2), (1, 2, 3), (3,)]
    assert [w.mst_date for w in windows] == [10, 11, 13]


def test_sparse_window_is_all_noise():
    result = _track([_point(0, 0), _point(5, 1), _point(10, 1)], spatial_eps=100, temporal_eps_low=1, min_pts=3)
    assert result.clusters == ()
    assert result.points
    assert all(p.role == "noise" and p.cluster_id == NOISE for p in result.points)


def test_same_instant_points_are_not_neighbors_when_low_is_positive():
    result = _track([_point(0, 0), _point(5, 0), _point(10, 0)], spatial_eps=100, temporal_eps_low=1, min_pts=1)
    assert result.clusters == ()
    assert [p.role for p in result.points] == ["noise", "noise", "noise"]


def test_same_instant_points_cluster_when_low_is_zero():
    result = _track([_point(0, 0), _point(5, 0), _point(10, 0)], spatial_eps=100, temporal_eps_low=0, min_pts=1)
    (cluster,) = result.clusters
    assert cluster.point_ids == (0, 1, 2)
    assert cluster.evolution_type == "Emerge"


def test_core_and_border_roles():
    star = [
        _point(0, 0),
        _point(80, 0),
        _point(-40, 0, north_m=69.28),
        _point(-40, 0, north_m=-69.28),
    ]
    result = _track(star, spatial_eps=100, temporal_eps_low=0, temporal_eps_high=0, min_pts=3)
    (cluster,) = result.clusters
    assert cluster.core_ids == (0,)
    assert cluster.border_ids == (1, 2, 3)
    assert (cluster.point_count, cluster.core_count, cluster.border_count) == (4, 1, 3)
    assert len(cluster.hull) == 3
    assert cluster.area > 0
    shape = cluster.shape
    assert shape["type"] == "Polygon"
    assert shape["coordinates"][0][0] == shape["coordinates"][0][-1]
    roles = {p.point_id: p.role for p in result.points}
    assert roles == {0: "core", 1: "border", 2: "border", 3: "border"}


def test_split_cluster_pieces_emerge():
    points = [
        _point(0, 1), _point(60, 0), _point(120, 0), _point(180, 1),
        _point(5, 2), _point(185, 2),
    ]
    result = _track(points, **LOOSE)
    first = result.clusters_in(0)
    assert [c.point_ids for c in first] == [(0, 1, 2, 3)]
    second = result.clusters_in(1)
    assert [c.point_ids for c in second] == [(0, 4), (3, 5)]
    assert [c.evolution_type for c in second] == ["Emerge", "Emerge"]
    assert all(c.matched_ids == () for c in second)


def test_merge_of_two_clusters():
    result = _track(MERGE_LAYOUT, **LOOSE)
    first = result.clusters_in(0)
    assert [c.point_ids for c in first] == [(0, 1, 2), (3, 4, 5)]
    (merged,) = result.clusters_in(1)
    assert merged.point_ids == (1, 2, 4, 5, 6)
    assert merged.evolution_type == "Merge"
    assert merged.matched_ids == (0, 1)
    assert result.clusters_in(2) == ()


def test_steady_and_move():
    steady = _track([_point(0, 0), _point(20, 1), _point(40, 1), _point(0, 2)], **LOOSE)
    assert [c.evolution_type for c in steady.clusters] == ["Emerge", "Steady"]
    moved = _track([_point(0, 0), _point(20, 1), _point(40, 1), _point(60, 2)], **LOOSE)
    assert [c.evolution_type for c in moved.clusters] == ["Emerge", "Move"]
    assert moved.clusters[1].matched_ids == (0,)


def test_growth_then_reduction():
    points = [
        _point(0, 0),
        _point(10, 1), _point(0, 1, north_m=10),
        _point(40, 2), _point(0, 2, north_m=40),
    ]
    result = _track(points, **LOOSE)
    assert [c.point_ids for c in result.clusters] == [(0, 1, 2), (1, 2, 3, 4), (3, 4)]
    assert [c.evolution_type for c in result.clusters] == ["Emerge", "Growth", "Reduction"]
    small, grown, shrunk = result.clusters
    assert grown.area > small.area * (1 + result.params.area_ratio)
    assert shrunk.area == 0.0
    assert grown.matched_ids == (0,)
    assert shrunk.matched_ids == (0,)


def test_every_cluster_gets_a_known_evolution_type():
    result = _track(MERGE_LAYOUT, **LOOSE)
    assert result.clusters
    assert all(c.evolution_type in EVOLUTION_TYPES for c in result.clusters)


def test_point_rows_only_for_points_inside_each_window():
    result = _track(MERGE_LAYOUT, **LOOSE)
    assert len(result.points) == sum(len(w.point_ids) for w in result.windows)
    for window in result.windows:
        rows = [p.point_id for p in result.points if p.mst_time == window.mst_time]
        assert tuple(rows) == window.point_ids


def test_balltree_tracks_the_same_clusters():
    brute = _track(MERGE_LAYOUT, **LOOSE)
    tree = _track(MERGE_LAYOUT, neighbors="balltree", **LOOSE)
    assert [(c.mst_time, c.point_ids, c.evolution_type) for c in brute.clusters] == [
        (c.mst_time, c.point_ids, c.evolution_type) for c in tree.clusters
    ]


def test_classify_evolution():
    assert classify_evolution(1.0, []) == "Emerge"
    assert classify_evolution(1.0, [_match(cluster_id=0), _match(cluster_id=1)]) == "Merge"
    assert classify_evolution(2.0, [_match(area=1.0, changing=True)]) == "Growth"
    assert classify_evolution(0.5, [_match(area=1.0, changing=True)]) == "Reduction"
    assert classify_evolution(1.0, [_match(moving=True)]) == "Move"
    assert classify_evolution(1.0, [_match()]) == "Steady"


def test_ratio_guards():
    assert overlap_ratio([], []) == 0.0
    assert overlap_ratio([1, 2, 3], [2, 3, 4]) == pytest.approx(0.5)
    assert area_change_ratio(5.0, 0.0) == 0.0
    assert area_change_ratio(1.5, 1.0) == pytest.approx(0.5)


@dataclass
class FlakyNeighbors(BruteForceNeighbors):
    name: str = "flaky"
    fail_on: int = 1
    calls: int = 0

    def fit(self, lons, lats):
        call = self.calls
        self.calls += 1
        if call == self.fail_on:
            raise RuntimeError("index unavailable")
        return super().fit(lons, lats)


def test_failed_window_does_not_discard_the_others():
    points = []
    for t in range(4):
        points += [_point(0, t), _point(10, t)]
    result = _track(points, neighbors=FlakyNeighbors(fail_on=1), **LOOSE)
    assert result.failed_windows == (1,)
    assert not [p for p in result.points if p.mst_time == 1]
    by_window = {c.mst_time: c for c in result.clusters}
    assert sorted(by_window) == [0, 2, 3]
    assert by_window[2].evolution_type == "Emerge"
    assert by_window[3].evolution_type == "Steady"
    assert result.summary()["failed_windows"] == [1]


def _inside(box, cluster):
    minx, miny, maxx, maxy = box
    return minx <= cluster.center_x <= maxx and miny <= cluster.center_y <= maxy


def test_polygon_states():
    result = _track(MERGE_LAYOUT, **LOOSE)
    polygons = {"near": (121.49, 24.99, 121.51, 25.01), "far": (122.0, 26.0, 122.1, 26.1)}
    tagged = result.set_polygons(polygons, _inside)
    assert result.polygon_states is None
    near = [s for s in tagged.polygon_states if s.polygon_id == "near"]
    assert [s.cluster_count for s in near] == [2, 1, 0]
    assert [s.state for s in near] == ["increase", "decrease", "no cluster"]
    far = [s for s in tagged.polygon_states if s.polygon_id == "far"]
    assert {s.state for s in far} == {"no cluster"}
    assert "polygons" in tagged.to_frames()
    assert "polygons" not in result.to_frames()


def test_polygon_state_keep():
    result = _track([_point(0, 0), _point(20, 1), _point(40, 1), _point(0, 2)], **LOOSE)
    tagged = result.set_polygons([(121.49, 24.99, 121.51, 25.01)], _inside)
    assert [s.state for s in tagged.polygon_states] == ["increase", "keep", "no cluster"]
    assert {s.polygon_id for s in tagged.polygon_states} == {0}


def test_summary_and_frames():
    result = _track(MERGE_LAYOUT, **LOOSE)
    summary = result.summary()
    assert summary["total_clusters"] == 3
    assert summary["window_count"] == 3
    assert summary["time_windows"] == 2
    assert summary["evolution_types"] == ["Emerge", "Merge"]
    assert summary["failed_windows"] == []
    frames = result.to_frames()
    assert list(frames["clusters"]["type"]) == ["Emerge", "Emerge", "Merge"]
    assert set(frames["points"]["role"]) <= {"core", "border", "noise"}


def test_empty_dataset():
    result = _track([])
    assert result.windows == ()
    assert result.clusters == ()
    assert result.summary()["total_clusters"] == 0


def test_params_validation_and_config():
    with pytest.raises(ValueError):
        TrackerParams(spatial_eps=0)
    with pytest.raises(ValueError):
        TrackerParams(temporal_eps_low=3, temporal_eps_high=2)
    with pytest.raises(ValueError):
        TrackerParams(min_pts=0)
    params = TrackerParams.from_config({"tracker": {"spatial_eps": 150, "min_pts": 4}})
    assert params.spatial_eps == 150
    assert params.min_pts == 4
    assert params.moving_threshold == pytest.approx(15.0)
