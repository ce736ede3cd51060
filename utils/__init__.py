"""Condition evaluation and template interpolation."""
