import json

import pandas as pd
import pytest

from pysda.errors import InvalidInputError
from pysda.io import (
    ensure_required_columns,
    geojson_records,
    load_points,
    load_points_csv,
    load_points_geojson,
    save_dataframe,
    save_diffusion_result,
    save_tracker_result,
)
from pysda.mstdbscan import MovingClusterTracker, TrackerParams
from pysda.tapitas import DiffusionAnalyzer, DiffusionParams


def _feature(lon, lat, day):
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [lon, lat]},
        "properties": {"OnsetDay": day, "id": f"case-{day}"},
    }


def _collection():
    return {
        "type": "FeatureCollection",
        "features": [
            _feature(121.5000, 25.0000, "2014/08/01"),
            _feature(121.5001, 25.0001, "2014/08/02"),
            _feature(121.5002, 25.0000, "2014/08/03"),
        ],
    }


def test_load_points_csv(tmp_path):
    path = tmp_path / "cases.csv"
    pd.DataFrame(
        {"lon": [121.5, 121.6], "lat": [25.0, 25.1], "OnsetDay": ["2014-08-01", "2014-08-05"]}
    ).to_csv(path, index=False)
    ds = load_points_csv(path, time_field="OnsetDay", unit="day", x_field="lon", y_field="lat")
    assert len(ds) == 2
    assert list(ds.int_time) == [0, 4]
    assert ds[0].raw_time == "2014-08-01"


def test_load_points_csv_missing_column(tmp_path):
    path = tmp_path / "cases.csv"
    pd.DataFrame({"x": [1.0], "y": [2.0]}).to_csv(path, index=False)
    with pytest.raises(InvalidInputError):
        load_points_csv(path, time_field="OnsetDay")


def test_missing_input_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_points_csv(tmp_path / "nope.csv", time_field="t")
    with pytest.raises(FileNotFoundError):
        load_points_geojson(tmp_path / "nope.geojson", time_field="t")


def test_load_points_geojson(tmp_path):
    path = tmp_path / "cases.geojson"
    path.write_text(json.dumps(_collection()), encoding="utf-8")
    ds = load_points_geojson(path, time_field="OnsetDay")
    assert len(ds) == 3
    assert ds[1].coords == (121.5001, 25.0001)
    assert ds[2].properties["id"] == "case-2014/08/03"
    assert list(ds.int_time) == [0, 1, 2]


def test_geojson_must_hold_point_features():
    with pytest.raises(InvalidInputError):
        geojson_records({"type": "Feature"})
    bad = _collection()
    bad["features"][0]["geometry"] = {"type": "LineString", "coordinates": [[0, 0], [1, 1]]}
    with pytest.raises(InvalidInputError):
        geojson_records(bad)


def test_invalid_json(tmp_path):
    path = tmp_path / "broken.geojson"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(InvalidInputError):
        load_points_geojson(path, time_field="OnsetDay")


def test_load_points_dispatch(tmp_path):
    path = tmp_path / "cases.geojson"
    path.write_text(json.dumps(_collection()), encoding="utf-8")
    ds = load_points({"path": str(path), "time_field": "OnsetDay", "time_unit": "day"})
    assert len(ds) == 3
    with pytest.raises(ValueError):
        load_points({"path": str(path), "format": "shapefile"})
    with pytest.raises(ValueError):
        load_points({})


def test_ensure_required_columns():
    df = pd.DataFrame({"a": [1]})
    assert ensure_required_columns(df, ["a"]) is df
    with pytest.raises(InvalidInputError):
        ensure_required_columns(df, ["a", "b"])


def test_save_dataframe_encodes_nested_columns(tmp_path):
    path = tmp_path / "out" / "table.csv"
    save_dataframe(pd.DataFrame({"clid": [0], "node_ids": [[1, 2, 3]]}), path)
    loaded = pd.read_csv(path)
    assert json.loads(loaded.loc[0, "node_ids"]) == [1, 2, 3]


def test_save_results(tmp_path):
    path = tmp_path / "cases.geojson"
    path.write_text(json.dumps(_collection()), encoding="utf-8")
    ds = load_points_geojson(path, time_field="OnsetDay")

    diffusion = DiffusionAnalyzer(ds, DiffusionParams(t1=6, t2=23, sr=100)).run()
    written = save_diffusion_result(diffusion, tmp_path / "csv")
    names = sorted(p.name for p in written)
    assert names == sorted(
        [
            "tapitas_nodes.csv",
            "tapitas_npairs.csv",
            "tapitas_slinks.csv",
            "tapitas_subclusters.csv",
            "tapitas_prog_links.csv",
            "tapitas_summary.json",
        ]
    )
    summary = json.loads((tmp_path / "csv" / "tapitas_summary.json").read_text(encoding="utf-8"))
    assert summary["nodes"] == 3
    assert summary["sub-cluster"] == 1

    tracked = MovingClusterTracker(ds, TrackerParams(spatial_eps=100, temporal_eps_low=0, min_pts=1)).run()
    written = save_tracker_result(tracked, tmp_path / "csv")
    assert {p.name for p in written} == {"mst_clusters.csv", "mst_points.csv", "mst_summary.json"}
    clusters = pd.read_csv(tmp_path / "csv" / "mst_clusters.csv")
    assert len(clusters) == len(tracked.clusters)
