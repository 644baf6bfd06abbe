"""
调度器模块

提供资源账本、调度器、依赖解析和任务生命周期驱动
"""

from .resource_ledger import ResourceLedger
from .ledger_syncer import LedgerSyncer
from .scheduler import Scheduler
from .scoring import ScoreFunc, available_scorers, create_scorer, register_scorer, unregister_scorer
from .dependency import DependencyResolver
from .lifecycle import TaskLifecycleDriver, ReconcileResult

__all__ = [
    "ResourceLedger",
    "LedgerSyncer",
    "Scheduler",
    "ScoreFunc",
    "available_scorers",
    "create_scorer",
    "register_scorer",
    "unregister_scorer",
    "DependencyResolver",
    "TaskLifecycleDriver",
    "ReconcileResult",
]
