"""
Instancer - Per-team challenge sandbox lifecycle orchestrator
"""

__version__ = "1.0.0"
