"""Deterministic test doubles for time, scheduling and fan-out."""
