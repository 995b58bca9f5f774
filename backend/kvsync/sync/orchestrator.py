"""
Sync orchestrator: drives the paged fetcher into the upsert sink for one
entity per run (full sweep, bounded window, historical windows or a single
invoice) and seals a SyncRun with the outcome.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from typing import Callable, Iterable, List, Optional

from kvsync.core.config import Settings, get_settings
from kvsync.schemas.sync_run import ProgressEvent, RunState, SyncRun, Window
from kvsync.services.kiotviet_service import KiotVietService, KiotVietServiceError
from kvsync.services.supabase_service import (
    SupabaseService,
    SupabaseServiceError,
    get_supabase_service,
)
from kvsync.services.token_provider import TokenProvider
from kvsync.services.token_store import TokenStore
from kvsync.sync.entities import INVOICES, EntitySpec, get_entity
from kvsync.sync.reporter import RunReporter, persist_run
from kvsync.sync.sink import SinkBatchError, UpsertSink
from kvsync.sync.windows import historical_windows, window_params

logger = logging.getLogger(__name__)

_DONE_STATES = {
    "ok": RunState.DONE_OK,
    "partial": RunState.DONE_PARTIAL,
    "failed": RunState.DONE_FAILED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncCancelled(Exception):
    """Raised internally when the cancel event is set at a checkpoint."""


class SyncOrchestrator:
    """
    One orchestrator per entity run at a time. Cancellation is cooperative:
    cancel_event is checked before each page fetch, before each upsert and
    between windows; a batch already being written always completes.
    """

    def __init__(
        self,
        kiotviet: KiotVietService,
        supabase: SupabaseService,
        settings: Settings | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], datetime] = _utcnow,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
        record_runs: bool = False,
    ) -> None:
        self._kiotviet = kiotviet
        self._supabase = supabase
        self._settings = settings or get_settings()
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock
        self._on_progress = on_progress
        self._record_runs = record_runs
        self.state = RunState.INIT
        self.transitions: List[RunState] = [RunState.INIT]

    # -------------------------------------------------------------------------
    # Modes
    # -------------------------------------------------------------------------

    def run_full(self, entity: str | EntitySpec) -> SyncRun:
        spec = _resolve(entity)
        return self._run(spec, "full", [None])

    def run_window(self, entity: str | EntitySpec, window: Window) -> SyncRun:
        spec = _resolve(entity)
        if not spec.windowed:
            raise ValueError(f"{spec.name} does not support date windows")
        if window.end <= window.start:
            raise ValueError(f"Empty window {window.label()}")
        return self._run(spec, "window", [window])

    def run_historical(
        self,
        entity: str | EntitySpec,
        window_months: int | None = None,
        earliest: date | None = None,
        now: datetime | None = None,
    ) -> SyncRun:
        spec = _resolve(entity)
        if not spec.windowed:
            raise ValueError(f"{spec.name} does not support date windows")
        windows = historical_windows(
            now or self._clock(),
            earliest or self._settings.historical_earliest,
            window_months or self._settings.window_months,
        )
        return self._run(spec, "historical", windows)

    def sync_invoice_by_code(self, code: str) -> SyncRun:
        """Fetch one invoice by code and push it through the invoice sink."""
        reporter = self._reporter(INVOICES, "single")
        sink = UpsertSink(self._supabase, INVOICES, self._settings.max_error_samples)
        try:
            self._transition(RunState.ACQUIRING_TOKEN)
            self._kiotviet.authenticate()
            self._transition(RunState.FETCHING_PAGE)
            invoice = self._kiotviet.get_invoice_by_code(code)
            reporter.page_fetched()
            if invoice is None:
                reporter.fail(f"Invoice {code} not found in KiotViet")
            else:
                self._transition(RunState.UPSERTING_BATCH)
                self._upsert(reporter, sink, [invoice])
        except (KiotVietServiceError, SupabaseServiceError) as e:
            logger.error("Invoice %s sync failed: %s", code, e)
            reporter.fail(str(e))
        except SinkBatchError as e:
            logger.error("Invoice %s sync failed: %s", code, e)
            reporter.record_batch(e.result)
            reporter.fail(str(e))
        return self._seal(reporter)

    def run_many(self, entities: Iterable[str], max_workers: int = 3) -> List[SyncRun]:
        """
        Full sweeps of distinct entities in parallel. Each worker gets its own
        HTTP session; the token provider and cancel event are shared.
        """
        specs = [_resolve(name) for name in entities]
        names = [spec.name for spec in specs]
        if len(set(names)) != len(names):
            raise ValueError("run_many needs distinct entities")

        def worker(spec: EntitySpec) -> SyncRun:
            child = SyncOrchestrator(
                self._kiotviet.clone(),
                self._supabase,
                settings=self._settings,
                cancel_event=self.cancel_event,
                clock=self._clock,
                on_progress=self._on_progress,
                record_runs=self._record_runs,
            )
            return child.run_full(spec)

        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
            return list(pool.map(worker, specs))

    # -------------------------------------------------------------------------
    # Run loop
    # -------------------------------------------------------------------------

    def _run(self, spec: EntitySpec, mode: str, windows: Iterable[Window | None]) -> SyncRun:
        reporter = self._reporter(spec, mode)
        sink = UpsertSink(self._supabase, spec, self._settings.max_error_samples)
        logger.info("Starting %s sync of %s", mode, spec.name)
        try:
            self._transition(RunState.ACQUIRING_TOKEN)
            self._kiotviet.authenticate()
            first = True
            for window in windows:
                if not first:
                    self._transition(RunState.NEXT_WINDOW)
                first = False
                self._checkpoint()
                self._sweep(spec, sink, reporter, window)
        except SyncCancelled:
            logger.warning("%s sync cancelled", spec.name)
            reporter.cancel()
        except (KiotVietServiceError, SupabaseServiceError) as e:
            logger.error("%s sync failed: %s", spec.name, e)
            reporter.fail(str(e))
        except SinkBatchError as e:
            logger.error("%s sync failed: %s", spec.name, e)
            reporter.record_batch(e.result)
            reporter.fail(str(e))
        except Exception as e:
            logger.exception("%s sync failed unexpectedly", spec.name)
            reporter.fail(f"{type(e).__name__}: {e}")
        return self._seal(reporter)

    def _sweep(
        self,
        spec: EntitySpec,
        sink: UpsertSink,
        reporter: RunReporter,
        window: Window | None,
    ) -> None:
        params = dict(spec.params)
        if window is not None:
            reporter.start_window(window)
            params.update(window_params(window, spec.date_params))

        pages = self._kiotviet.fetch_pages(spec.collection, params)
        while True:
            self._checkpoint()
            self._transition(RunState.FETCHING_PAGE)
            page = next(pages, None)
            if page is None:
                break
            reporter.page_fetched()

            self._checkpoint()
            self._transition(RunState.UPSERTING_BATCH)
            self._upsert(reporter, sink, page.data, window=window, cursor=page.cursor, total=page.total)

        if window is not None:
            reporter.end_window(window)

    def _upsert(
        self,
        reporter: RunReporter,
        sink: UpsertSink,
        batch: list,
        window: Window | None = None,
        cursor: int | None = None,
        total: int | None = None,
    ) -> None:
        result = sink.upsert(batch)
        reporter.record_batch(result)
        run = reporter.run
        reporter.progress(
            ProgressEvent(
                entity=run.entity,
                window=window,
                cursor=cursor if cursor is not None else len(batch),
                total=total if total is not None else len(batch),
                attempted_so_far=run.records_attempted,
                failed_so_far=run.records_failed,
            )
        )

    def _checkpoint(self) -> None:
        if self.cancel_event.is_set():
            raise SyncCancelled()

    def _transition(self, state: RunState) -> None:
        self.state = state
        self.transitions.append(state)

    def _reporter(self, spec: EntitySpec, mode: str) -> RunReporter:
        self.state = RunState.INIT
        self.transitions = [RunState.INIT]
        return RunReporter(
            spec.name,
            mode,
            max_error_samples=self._settings.max_error_samples,
            clock=self._clock,
            on_progress=self._on_progress,
        )

    def _seal(self, reporter: RunReporter) -> SyncRun:
        run = reporter.seal()
        self._transition(_DONE_STATES[run.terminal_status.value])
        if self._record_runs:
            try:
                persist_run(self._supabase, self._settings.sync_runs_table, run)
            except SupabaseServiceError as e:
                logger.error("Could not record %s run: %s", run.entity, e)
        return run


def _resolve(entity: str | EntitySpec) -> EntitySpec:
    return entity if isinstance(entity, EntitySpec) else get_entity(entity)


def create_orchestrator(
    settings: Settings | None = None,
    cancel_event: threading.Event | None = None,
    on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    record_runs: bool = False,
) -> SyncOrchestrator:
    """Wire Supabase, the token store/provider and the KiotViet client from settings."""
    settings = settings or get_settings()
    settings.validate_for_sync()
    supabase = get_supabase_service(settings)
    provider = TokenProvider(TokenStore(supabase, title=settings.token_title), settings=settings)
    kiotviet = KiotVietService(provider, settings=settings)
    return SyncOrchestrator(
        kiotviet,
        supabase,
        settings=settings,
        cancel_event=cancel_event,
        on_progress=on_progress,
        record_runs=record_runs,
    )
