"""Supervises a single proxy-engine tunnel session."""

__version__ = "0.1.0"
