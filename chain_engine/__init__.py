"""
Chain Engine

Executes ordered or dependency-graph-shaped sets of remote requests,
chaining values extracted from earlier responses into later ones.
"""

__version__ = "1.0.0"
