# Pydantic models for credentials, sync runs and batch outcomes.

from kvsync.schemas.credential import Credential
from kvsync.schemas.sync_run import (
    BatchResult,
    ProgressEvent,
    RecordError,
    RunState,
    RunStatus,
    SyncRun,
    Window,
)

__all__ = [
    "Credential",
    "BatchResult",
    "ProgressEvent",
    "RecordError",
    "RunState",
    "RunStatus",
    "SyncRun",
    "Window",
]
