"""Append-only audit trail.

``info`` records are handed to a queue and written by a background task.
Anything at ``warning`` or above is written before :meth:`AuditSink.record`
returns, inside a task the caller cannot cancel. A failed durable write is
escalated through :class:`SecurityAlerter` and reported as ``False``.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import List, Optional, Set

from tenantguard.logging import get_logger, sanitize_detail
from tenantguard.service.alerts import SecurityAlerter
from tenantguard.storage.common import Store, call_store
from tenantguard.storage.models import AuditRecord, Severity

logger = get_logger(__name__)

_LOG_METHOD = {
    Severity.INFO: "info",
    Severity.WARNING: "warning",
    Severity.ELEVATED: "warning",
    Severity.CRITICAL: "critical",
}


class AuditSink:
    def __init__(
        self,
        store: Store,
        alerter: SecurityAlerter,
        *,
        write_timeout: float = 3.0,
        queue_size: int = 10000,
    ) -> None:
        self.store = store
        self.alerter = alerter
        self.write_timeout = write_timeout
        self.queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start the background writer for ``info`` records."""
        if self._worker and not self._worker.done():
            return
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._queue = queue
        self._worker = asyncio.create_task(self._drain(queue))

    async def stop(self) -> None:
        """Flush queued records and stop the background writer."""
        if self._queue is not None:
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._queue = None
        self._worker = None

    async def flush(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def record(self, entry: AuditRecord) -> bool:
        entry = replace(entry, severity=Severity(entry.severity), detail=sanitize_detail(entry.detail))
        getattr(logger, _LOG_METHOD[entry.severity])(
            "audit_record",
            action=entry.action,
            severity=entry.severity.value,
            actor_user_id=entry.actor_user_id,
            actor_tenant_id=entry.actor_tenant_id,
            target_tenant_id=entry.target_tenant_id,
            target_resource_type=entry.target_resource_type,
            target_resource_id=entry.target_resource_id,
        )
        if entry.severity.at_least(Severity.WARNING):
            task = asyncio.create_task(self._write_durable(entry))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            # a client disconnect cancels the caller, never the write
            return await asyncio.shield(task)
        return await self._enqueue(entry)

    async def _enqueue(self, entry: AuditRecord) -> bool:
        if self._queue is None:
            # no background writer (scripts, bare unit tests): best-effort inline write
            return await self._write_best_effort(entry)
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            logger.warning("audit_queue_full_dropped", action=entry.action, audit_id=entry.id)
            return False
        return True

    async def _write_durable(self, entry: AuditRecord) -> bool:
        try:
            await call_store(self.write_timeout, self.store.append_audit_record, entry)
            return True
        except Exception as exc:
            await self.alerter.alert(
                "audit_write_failed",
                audit_id=entry.id,
                action=entry.action,
                severity=entry.severity.value,
                actor_user_id=entry.actor_user_id,
                actor_tenant_id=entry.actor_tenant_id,
                target_tenant_id=entry.target_tenant_id,
                error=str(exc),
            )
            return False

    async def _write_best_effort(self, entry: AuditRecord) -> bool:
        try:
            await call_store(self.write_timeout, self.store.append_audit_record, entry)
            return True
        except Exception as exc:
            logger.warning("audit_info_write_failed", action=entry.action, error=str(exc))
            return False

    async def _drain(self, queue: asyncio.Queue) -> None:
        while True:
            entry = await queue.get()
            try:
                await self._write_best_effort(entry)
            finally:
                queue.task_done()

    async def list_records(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditRecord]:
        return await call_store(
            self.write_timeout, self.store.list_audit_records, tenant_id, limit
        )
