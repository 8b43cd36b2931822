"""Interval session scoring, outcome learning and weekly key-workout planning."""

__version__ = "0.1.0"
