"""Level-triggered reconcilers for Task, BatchRun and CronTask resources."""

from agent_tasks.reconcilers.base import ReconcileResult, Reconciler
from agent_tasks.reconcilers.batchrun import BatchReconciler
from agent_tasks.reconcilers.crontask import CronReconciler
from agent_tasks.reconcilers.task import TaskReconciler

__all__ = [
    "BatchReconciler",
    "CronReconciler",
    "ReconcileResult",
    "Reconciler",
    "TaskReconciler",
]
