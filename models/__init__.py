"""Shared data models."""
