"""
Retention of snapshot generations.

Invariants:
    - Pruning removes whole generations, never single artifacts
    - The pointer target is never pruned
"""

from .pruner import RetentionManager

__all__ = ["RetentionManager"]
