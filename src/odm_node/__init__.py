"""Photogrammetry processing node."""

__version__ = "0.4.0"
