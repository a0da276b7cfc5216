"""Voyaj: group trip planning over SMS."""

__version__ = "0.1.0"
