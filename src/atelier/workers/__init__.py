"""Background workers driving jobs through the dispatch pipeline."""

from atelier.workers.dispatcher import Dispatcher, DispatchResult, PollResult
from atelier.workers.prompt_queue import PromptQueue
from atelier.workers.reconciler import Reconciler, ReconcileResult, ResetResult

__all__ = [
    "Dispatcher",
    "DispatchResult",
    "PollResult",
    "PromptQueue",
    "Reconciler",
    "ReconcileResult",
    "ResetResult",
]
