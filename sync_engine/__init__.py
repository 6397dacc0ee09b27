"""Sync engine: queue draining, conflict resolution and module handlers."""

from sync_engine.circuit_breaker import CircuitBreaker, ModuleCircuitBreaker
from sync_engine.conflict import detect_conflict, resolve_conflict
from sync_engine.context import SyncContext, build_context
from sync_engine.engine import RunSummary, SyncEngine, SyncOutcome
from sync_engine.handlers import (
    FieldMapTranslator,
    FieldTranslator,
    HandlerRegistry,
    LocalStore,
    ModuleHandler,
    RemoteCall,
)

__all__ = [
    "CircuitBreaker",
    "ModuleCircuitBreaker",
    "detect_conflict",
    "resolve_conflict",
    "SyncContext",
    "build_context",
    "RunSummary",
    "SyncEngine",
    "SyncOutcome",
    "FieldMapTranslator",
    "FieldTranslator",
    "HandlerRegistry",
    "LocalStore",
    "ModuleHandler",
    "RemoteCall",
]
