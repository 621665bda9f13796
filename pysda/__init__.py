"""Spatiotemporal point-pattern analysis for geocoded case records.

This package provides the building blocks to index timestamped point records,
infer candidate transmission chains between cases (Tapitas diffusion
analysis), and track moving density clusters across overlapping time windows
(MSTDBSCAN).
"""
