"""Exceptions raised while validating input point data."""

from __future__ import annotations


class InvalidInputError(ValueError):
    """Input records are missing required fields or hold unparseable values."""
