"""Coordination engine services."""
