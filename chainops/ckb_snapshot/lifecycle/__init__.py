"""
Snapshot run orchestration.

This module handles:
- The stop, quiesce-check, archive and restart sequence
- Attestation, publishing and pruning after the node is back up
- Run-level mutual exclusion

Invariants:
    - The node is running before and after every run, whatever the outcome
"""

from .controller import LifecycleController, RunReport, utc_now
from .lock import RunLock

__all__ = ["LifecycleController", "RunLock", "RunReport", "utc_now"]
