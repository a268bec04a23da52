"""Background loops of the generation engine."""

from genflow.workers.asset_retriever import AssetRetriever
from genflow.workers.dispatcher import Dispatcher
from genflow.workers.reconciler import StatusReconciler
from genflow.workers.supervisor import create_resilient_worker, run_periodic

__all__ = [
    "AssetRetriever",
    "Dispatcher",
    "StatusReconciler",
    "create_resilient_worker",
    "run_periodic",
]
