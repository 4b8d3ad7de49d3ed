"""Persistence and runtime infrastructure."""
