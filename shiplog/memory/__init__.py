"""
Iteration memory for Shiplog.

JSON-backed per-initiative history plus the loop detector that reads it.
"""

from shiplog.memory.loop_detector import LoopDetector
from shiplog.memory.store import MemoryStore

__all__ = ["LoopDetector", "MemoryStore"]
