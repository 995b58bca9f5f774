"""
Upsert sink: maps a batch of upstream records to rows and writes them
idempotently, keyed by kiotviet_id. Child sets (invoice lines, branch
inventories, purchase order lines, pricebook prices) are replaced per parent
after the parent upsert.
"""

import logging
from typing import Any

from kvsync.schemas.sync_run import BatchResult, RecordError
from kvsync.services.supabase_service import SupabaseService, SupabaseServiceError
from kvsync.sync.entities import NATURAL_KEY, EntitySpec, RecordTransformError

logger = logging.getLogger(__name__)


class SinkBatchError(Exception):
    """The batch could not be written (parent upsert or id lookup failed)."""

    def __init__(self, message: str, table: str, result: BatchResult) -> None:
        self.message = message
        self.table = table
        self.result = result
        super().__init__(message)


class UpsertSink:
    """
    One sink per entity. Invariant: attempted == succeeded + failed for every
    returned BatchResult; a record with a natural id repeated inside the batch
    is written once, using its last occurrence.
    """

    def __init__(
        self,
        supabase: SupabaseService,
        entity: EntitySpec,
        max_error_samples: int = 10,
    ) -> None:
        self._supabase = supabase
        self.entity = entity
        self._max_error_samples = max_error_samples

    def upsert(self, batch: list[Any]) -> BatchResult:
        result = BatchResult(attempted=len(batch))
        if not batch:
            return result
        if self.entity.parent_table:
            self._upsert_standalone_children(batch, result)
        else:
            self._upsert_parents(batch, result)
        logger.info(
            "%s batch: %d attempted, %d upserted, %d failed",
            self.entity.name,
            result.attempted,
            result.succeeded,
            result.failed,
        )
        return result

    # -------------------------------------------------------------------------
    # Parent entities (+ embedded children)
    # -------------------------------------------------------------------------

    def _upsert_parents(self, batch: list[Any], result: BatchResult) -> None:
        entity = self.entity
        rows: dict[Any, dict[str, Any]] = {}
        records: dict[Any, dict[str, Any]] = {}
        occurrences: dict[Any, int] = {}

        for record in batch:
            try:
                row = self._to_row(record)
            except (RecordTransformError, TypeError, ValueError, AttributeError) as e:
                self._fail(result, record, "transform", e)
                continue
            natural_id = row[NATURAL_KEY]
            # Later occurrence wins; re-inserting moves it to the end of the batch order
            rows.pop(natural_id, None)
            records.pop(natural_id, None)
            rows[natural_id] = row
            records[natural_id] = record
            occurrences[natural_id] = occurrences.get(natural_id, 0) + 1
            result.succeeded += 1

        if not rows:
            return

        try:
            self._supabase.upsert_rows(entity.table, list(rows.values()), on_conflict=NATURAL_KEY)
        except SupabaseServiceError as e:
            raise SinkBatchError(
                f"Upsert into {entity.table} failed: {e.message}",
                table=entity.table,
                result=self._batch_failed(result, e),
            ) from e

        if not entity.children:
            return

        try:
            parent_ids = self._supabase.get_ids_by_natural_key(entity.table, rows.keys())
        except SupabaseServiceError as e:
            raise SinkBatchError(
                f"Parent id lookup in {entity.table} failed: {e.message}",
                table=entity.table,
                result=self._batch_failed(result, e),
            ) from e

        for natural_id, record in records.items():
            parent_id = parent_ids.get(natural_id)
            if parent_id is None:
                self._fail_upserted(
                    result,
                    record,
                    occurrences[natural_id],
                    f"no {entity.table} row found for kiotviet_id {natural_id} after upsert",
                )
                continue
            for child in entity.children:
                items = record.get(child.source_field)
                if items is None:
                    # Collection not included in the response; leave stored children alone
                    continue
                try:
                    child_rows = [
                        {**child.to_row(item, record), child.parent_fk: parent_id}
                        for item in items
                    ]
                    self._supabase.replace_children(child.table, {child.parent_fk: parent_id}, child_rows)
                except (SupabaseServiceError, RecordTransformError, TypeError, ValueError, AttributeError) as e:
                    self._fail_upserted(result, record, occurrences[natural_id], _message(e))
                    break

    # -------------------------------------------------------------------------
    # Standalone child collections (e.g. /inventories)
    # -------------------------------------------------------------------------

    def _upsert_standalone_children(self, batch: list[Any], result: BatchResult) -> None:
        entity = self.entity
        rows: dict[tuple, dict[str, Any]] = {}
        records: dict[tuple, dict[str, Any]] = {}
        occurrences: dict[tuple, int] = {}

        for record in batch:
            try:
                row = self._to_row(record)
            except (RecordTransformError, TypeError, ValueError, AttributeError) as e:
                self._fail(result, record, "transform", e)
                continue
            key = (row[entity.parent_ref], row.get("branch_id"))
            rows.pop(key, None)
            records.pop(key, None)
            rows[key] = row
            records[key] = record
            occurrences[key] = occurrences.get(key, 0) + 1
            result.succeeded += 1

        if not rows:
            return

        try:
            parent_ids = self._supabase.get_ids_by_natural_key(
                entity.parent_table,
                (row[entity.parent_ref] for row in rows.values()),
            )
        except SupabaseServiceError as e:
            raise SinkBatchError(
                f"Parent id lookup in {entity.parent_table} failed: {e.message}",
                table=entity.parent_table,
                result=self._batch_failed(result, e),
            ) from e

        for key, row in rows.items():
            parent_id = parent_ids.get(row[entity.parent_ref])
            if parent_id is None:
                self._fail_upserted(
                    result,
                    records[key],
                    occurrences[key],
                    f"{entity.parent_table} has no row for kiotviet_id {row[entity.parent_ref]}",
                )
                continue
            row[entity.parent_fk] = parent_id
            match = {column: row.get(column) for column in entity.replace_keys}
            try:
                self._supabase.replace_children(entity.table, match, [row])
            except SupabaseServiceError as e:
                self._fail_upserted(result, records[key], occurrences[key], e.message)

    # -------------------------------------------------------------------------
    # Outcome bookkeeping
    # -------------------------------------------------------------------------

    def _to_row(self, record: Any) -> dict[str, Any]:
        if not isinstance(record, dict):
            raise RecordTransformError(f"expected an object, got {type(record).__name__}")
        return self.entity.to_row(record)

    def _sample(self, result: BatchResult, record: dict[str, Any], stage: str, message: str) -> None:
        if len(result.errors) >= self._max_error_samples:
            return
        code = record.get("code") if isinstance(record, dict) else None
        result.errors.append(
            RecordError(
                kiotviet_id=record.get("id") if isinstance(record, dict) else None,
                code=str(code) if code is not None else None,
                stage=stage,
                message=message,
            )
        )

    def _fail(self, result: BatchResult, record: Any, stage: str, error: Exception) -> None:
        result.failed += 1
        message = _message(error)
        logger.warning("%s record %s failed at %s: %s", self.entity.name, _describe(record), stage, message)
        self._sample(result, record if isinstance(record, dict) else {}, stage, message)

    def _fail_upserted(self, result: BatchResult, record: dict[str, Any], count: int, message: str) -> None:
        """Move count already-counted successes to failures (child stage)."""
        result.succeeded -= count
        result.failed += count
        logger.warning("%s record %s children failed: %s", self.entity.name, _describe(record), message)
        self._sample(result, record, "children", message)

    def _batch_failed(self, result: BatchResult, error: SupabaseServiceError) -> BatchResult:
        failed = result.model_copy(deep=True)
        failed.failed = failed.attempted
        failed.succeeded = 0
        if len(failed.errors) < self._max_error_samples:
            failed.errors.append(RecordError(stage="batch", message=error.message))
        return failed


def _message(error: Exception) -> str:
    return getattr(error, "message", None) or str(error) or type(error).__name__


def _describe(record: Any) -> str:
    if isinstance(record, dict):
        return f"id={record.get('id')} code={record.get('code')}"
    return repr(record)[:80]
