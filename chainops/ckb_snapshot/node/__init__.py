"""
Node integration for the snapshot pipeline.

This module wraps the two capabilities the pipeline needs from a CKB node:
- JSON-RPC queries (tip height, software version)
- Service control through the host supervisor, plus the open-handle probe

Invariants:
    - RPC failures are reported, never retried
    - Service control failures are always raised
"""

from .rpc import NodeRpcClient
from .service import HandleHolder, OpenHandleProbe, ServiceController, SystemdServiceController

__all__ = [
    "NodeRpcClient",
    "ServiceController",
    "SystemdServiceController",
    "OpenHandleProbe",
    "HandleHolder",
]
