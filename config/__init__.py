"""Configuration package for TaskPilot."""
