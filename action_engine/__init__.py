"""Adaptive performance-action engine."""
