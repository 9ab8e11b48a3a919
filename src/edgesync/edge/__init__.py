"""Edge node: local stores, outbound queue and the sync orchestrator.

Classes:
- EdgeNode: All edge components wired together
- CentralClient: Signed HTTP client for the central node
- SyncOrchestrator: Runs pull/apply/push/drain cycles
- SyncQueue: Prioritized outbound queue with retry and dead-lettering
"""

from edgesync.edge.api import CentralClient
from edgesync.edge.node import EdgeNode
from edgesync.edge.orchestrator import SyncOrchestrator, SyncStats
from edgesync.edge.queue import QueueItem, SyncQueue

__all__ = [
    "CentralClient",
    "EdgeNode",
    "QueueItem",
    "SyncOrchestrator",
    "SyncQueue",
    "SyncStats",
]
