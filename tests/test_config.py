import pytest

from pysda.config import get_nested, get_section, load_config


def test_load_config(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text("diffusion:\n  t1: 6\n  critical_value: null\ntracker:\n", encoding="utf-8")
    cfg = load_config(path)
    assert cfg["diffusion"]["t1"] == 6
    assert get_section(cfg, "tracker") == {}


def test_load_empty_config(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path) == {}


def test_load_config_rejects_bad_layout(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- diffusion\n- tracker\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)
    path.write_text("difusion:\n  t1: 6\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)


def test_get_section():
    cfg = {"diffusion": {"t1": 6}, "output": None, "tracker": 3}
    assert get_section(cfg, "diffusion") == {"t1": 6}
    assert get_section(cfg, "output") == {}
    assert get_section(cfg, "input") == {}
    with pytest.raises(ValueError):
        get_section(cfg, "tracker")
    with pytest.raises(ValueError):
        get_section(cfg, "plotting")


def test_get_nested_defaults():
    cfg = {"diffusion": {"t1": 6, "critical_value": None}, "projection": None}
    assert get_nested(cfg, ["diffusion", "t1"], 12) == 6
    assert get_nested(cfg, ["diffusion", "t2"], 27) == 27
    assert get_nested(cfg, ["diffusion", "critical_value"], 0.1) == 0.1
    assert get_nested(cfg, ["tracker", "min_pts"], 3) == 3
    assert get_nested(cfg, ["projection", "top_groups"], 5) == 5
