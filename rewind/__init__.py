"""
REWIND: an undoable agent loop.

A model alternates between replies and tool calls against a live
environment. Every mutation is snapshotted first, so any step can be
rolled back.
"""

__version__ = "0.3.0"
__codename__ = "REWIND"
__tagline__ = "Every step undoable."
