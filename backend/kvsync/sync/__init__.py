# Sync pipeline: entity mappings, windows, sink, reporter, orchestrator

from kvsync.sync.entities import ENTITIES, EntitySpec, RecordTransformError, get_entity
from kvsync.sync.orchestrator import SyncOrchestrator, create_orchestrator
from kvsync.sync.reporter import RunReporter, persist_run, render_summary
from kvsync.sync.sink import SinkBatchError, UpsertSink

__all__ = [
    "ENTITIES",
    "EntitySpec",
    "RecordTransformError",
    "get_entity",
    "SyncOrchestrator",
    "create_orchestrator",
    "RunReporter",
    "persist_run",
    "render_summary",
    "SinkBatchError",
    "UpsertSink",
]
