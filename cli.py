"""CLI entry point for the point-pattern analysis pipeline.

Orchestrates loading case points, running the Tapitas diffusion analysis and
the MSTDBSCAN moving-cluster tracker, exporting result tables, and optional
plotting, as configured in a YAML file.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Dict

from pysda.config import get_nested, get_section, load_config
from pysda.io import load_points, save_diffusion_result, save_summary, save_tracker_result
from pysda.mstdbscan import MovingClusterTracker, TrackerParams
from pysda.projection import project_figure
from pysda.tapitas import DiffusionAnalyzer, DiffusionParams


def configure_logging(log_cfg: Dict[str, object]) -> None:
    """Configure root logger with both file and console handlers."""

    log_dir = Path(log_cfg.get("dir", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    filename = log_cfg.get("filename", "pysda.log")
    log_path = log_dir / filename
    level_name = str(log_cfg.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s - %(levelname)s - %(message)s"
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(fmt))
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(fmt))

    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    root.info("Logging to %s (level=%s)", log_path, level_name)


def main(config_path: str = "config/pysda.yaml") -> None:
    cfg = load_config(config_path)

    configure_logging(get_section(cfg, "logging"))
    dataset = load_points(get_section(cfg, "input"))
    if dataset.temporal_index.unmatched_count:
        logging.warning(
            "%d records were pinned to offset 0 by the temporal index; check input.time_unit",
            dataset.temporal_index.unmatched_count,
        )

    neighbors = str(get_nested(cfg, ["neighbors", "method"], "brute"))
    output_cfg = get_section(cfg, "output")
    output_dir = Path(output_cfg.get("dir", "output"))
    csv_dir = output_dir / "csv"
    plots_dir = output_dir / "figures"
    run_diffusion = bool(get_nested(cfg, ["diffusion", "enabled"], True))
    run_tracker = bool(get_nested(cfg, ["tracker", "enabled"], True))
    save_plots = bool(output_cfg.get("save_plots", False))

    if run_diffusion:
        diffusion_params = DiffusionParams.from_config(cfg)
        result = DiffusionAnalyzer(dataset, diffusion_params, neighbors=neighbors).run()
        save_diffusion_result(result, csv_dir)
        logging.info("Tapitas summary: %s", json.dumps(result.summary.to_dict()))

        top_groups = int(get_nested(cfg, ["projection", "top_groups"], 5))
        projection = project_figure(result, top_groups=top_groups)
        if projection is None:
            logging.info("No sub-clusters found; skipping figure projection.")
        else:
            save_summary(
                {
                    "bounds": projection.bounds,
                    "top_groups": projection.top_groups,
                    "colors": projection.colors,
                    "time_series": projection.time_series,
                },
                csv_dir / "tapitas_projection.json",
            )
            if save_plots:
                from pysda.plots import plot_diffusion

                plot_diffusion(projection, plots_dir / "tapitas_diffusion.png")

    if run_tracker:
        tracker_params = TrackerParams.from_config(cfg)
        tracked = MovingClusterTracker(dataset, tracker_params, neighbors=neighbors).run()
        if tracked.failed_windows:
            logging.warning("Windows that failed to cluster: %s", list(tracked.failed_windows))
        save_tracker_result(tracked, csv_dir)
        logging.info("MSTDBSCAN summary: %s", json.dumps(tracked.summary(), default=str))

        if save_plots:
            from pysda.plots import plot_tracker_window

            for window in tracked.windows:
                if tracked.clusters_in(window.mst_time):
                    plot_tracker_window(tracked, window.mst_time, plots_dir / f"mst_window_{window.mst_time:04d}.png")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Spatiotemporal point-pattern analysis pipeline.")
    parser.add_argument(
        "-c",
        "--config",
        default="config/pysda.yaml",
        help="Path to YAML config file.",
    )
    args = parser.parse_args()
    main(args.config)
