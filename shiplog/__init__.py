"""
Shiplog - supervised autopilot for autonomous coding agents.

Drives an external coding agent through a sprint backlog across many
independent sessions, measuring progress by commits and gating every
completion claim behind tests and an independent review.
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
