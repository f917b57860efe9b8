"""Version information for TaskPilot."""

__version__ = "0.1.0"
