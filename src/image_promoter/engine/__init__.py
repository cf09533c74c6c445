"""
Promotion engine.

Architecture::

    sync.py       build_sync_context: merged manifests + inventories
    edges.py      compute_edges: pure diff → EdgePlan
    scheduler.py  EdgeScheduler: bounded, gated, fail-soft dispatch
    retry.py      backoff strategies
    timeout.py    per-attempt deadlines
    fanout.py     bounded gather for independent reads and scans
    results.py    EdgeResult / RunReport
"""

from image_promoter.engine.edges import EdgeOp, EdgePlan, PromotionEdge, compute_edges
from image_promoter.engine.results import EdgeResult, EdgeStatus, RunReport
from image_promoter.engine.scheduler import EdgeScheduler, RegistryTransferFactory
from image_promoter.engine.sync import SyncContext, build_sync_context

__all__ = [
    "EdgeOp",
    "EdgePlan",
    "EdgeResult",
    "EdgeScheduler",
    "EdgeStatus",
    "PromotionEdge",
    "RegistryTransferFactory",
    "RunReport",
    "SyncContext",
    "build_sync_context",
    "compute_edges",
]
