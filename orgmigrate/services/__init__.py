"""Service layer for the migration engine."""

from .record_cache import CacheEntry, RecordCache
from .conformance import ConformanceEngine, ConformanceOptions, CsvFileRef, LookupPair
from .dependency_graph import DependencyGraph
from .task_ordering import TaskOrder, TaskOrderingEngine
from .reconciliation import ReconciliationEngine, RetrievalPass, WritePass
from .hooks import CallbackHookRunner, HookRunner, NullHookRunner

__all__ = [
    "CacheEntry",
    "RecordCache",
    "ConformanceEngine",
    "ConformanceOptions",
    "CsvFileRef",
    "LookupPair",
    "DependencyGraph",
    "TaskOrder",
    "TaskOrderingEngine",
    "ReconciliationEngine",
    "RetrievalPass",
    "WritePass",
    "CallbackHookRunner",
    "HookRunner",
    "NullHookRunner",
]
