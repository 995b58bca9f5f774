"""
Run reporter: accumulates progress events and batch outcomes into a SyncRun,
renders the end-of-run summary and optionally appends it to the sync run table.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from kvsync.schemas.sync_run import (
    BatchResult,
    ProgressEvent,
    RecordError,
    RunStatus,
    SyncRun,
    Window,
)
from kvsync.services.supabase_service import SupabaseService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunReporter:
    def __init__(
        self,
        entity: str,
        mode: str,
        max_error_samples: int = 10,
        clock: Callable[[], datetime] = _utcnow,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> None:
        self._clock = clock
        self._max_error_samples = max_error_samples
        self._on_progress = on_progress
        self.events: List[ProgressEvent] = []
        self.run = SyncRun(entity=entity, mode=mode, started_at=clock())

    @property
    def sealed(self) -> bool:
        return self.run.ended_at is not None

    def start_window(self, window: Window) -> None:
        run = self.run
        run.windows.append(window)
        # Overall bounds across every window of the run
        run.window_from = window.start if run.window_from is None else min(run.window_from, window.start)
        run.window_to = window.end if run.window_to is None else max(run.window_to, window.end)
        logger.info("%s: window %s", run.entity, window.label())

    def end_window(self, window: Window) -> None:
        self.run.windows_completed += 1

    def page_fetched(self) -> None:
        self.run.pages_fetched += 1

    def record_batch(self, result: BatchResult) -> None:
        run = self.run
        run.records_attempted += result.attempted
        run.records_upserted += result.succeeded
        run.records_failed += result.failed
        self._keep_samples(result.errors)

    def progress(self, event: ProgressEvent) -> None:
        self.events.append(event)
        logger.info(
            "%s progress: %d/%d (attempted %d, failed %d)%s",
            event.entity,
            event.cursor,
            event.total,
            event.attempted_so_far,
            event.failed_so_far,
            f" window {event.window.label()}" if event.window else "",
        )
        if self._on_progress:
            self._on_progress(event)

    def fail(self, message: str) -> None:
        self.run.fatal_error = message
        self._keep_samples([RecordError(stage="run", message=message)])

    def cancel(self) -> None:
        self.run.cancelled = True

    def seal(self) -> SyncRun:
        run = self.run
        if run.fatal_error:
            run.terminal_status = RunStatus.FAILED
        elif run.cancelled or run.records_failed > 0:
            run.terminal_status = RunStatus.PARTIAL
        else:
            run.terminal_status = RunStatus.OK
        run.ended_at = self._clock()
        logger.info(
            "%s run %s: %d attempted, %d upserted, %d failed in %.1fs",
            run.entity,
            run.terminal_status.value,
            run.records_attempted,
            run.records_upserted,
            run.records_failed,
            run.elapsed_seconds,
        )
        return run

    def _keep_samples(self, errors: List[RecordError]) -> None:
        room = self._max_error_samples - len(self.run.error_samples)
        if room > 0:
            self.run.error_samples.extend(errors[:room])


def render_summary(run: SyncRun) -> List[str]:
    """Human-readable summary lines for a sealed run."""
    status = run.terminal_status.value if run.terminal_status else "running"
    lines = [
        f"{run.entity} ({run.mode}): {status}",
        f"  records: {run.records_attempted} attempted, {run.records_upserted} upserted, {run.records_failed} failed",
        f"  pages: {run.pages_fetched}, elapsed: {run.elapsed_seconds:.1f}s",
    ]
    if run.window_from and run.window_to:
        lines.append(
            f"  window: {run.window_from:%Y-%m-%d} -> {run.window_to:%Y-%m-%d}"
            f" ({run.windows_completed}/{len(run.windows)} windows completed)"
        )
    if run.cancelled:
        lines.append("  cancelled before completion")
    if run.fatal_error:
        lines.append(f"  fatal: {run.fatal_error}")
    for sample in run.error_samples:
        ref = f"{sample.code or ''} (id={sample.kiotviet_id})" if sample.kiotviet_id is not None else sample.stage
        lines.append(f"  error [{sample.stage}] {ref}: {sample.message}")
    return lines


def persist_run(supabase: SupabaseService, table: str, run: SyncRun) -> dict:
    """Append a sealed run to the sync run table."""
    return supabase.insert_sync_run(table, run.model_dump(mode="json"))
