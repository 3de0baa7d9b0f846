"""Pose-based fall and unusual-motion detection with alerting."""

__version__ = "0.1.0"
