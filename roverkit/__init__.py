"""Callbacks, subscribers, a background runtime and depth-to-obstacle mapping for mobile robots."""

__version__ = "0.1.0"