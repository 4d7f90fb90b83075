"""
Local vs. cloud drift report and operator-triggered forced resync.

Nothing here runs automatically: `report()` is read-only and `force_resync()`
is the explicit, destructive "cloud wins" action for a single table.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from pydantic import ValidationError

from pos_terminal.app.collection import CollectionSet
from pos_terminal.app.config import settings
from pos_terminal.app.errors import NetworkError, TerminalError
from pos_terminal.app.logs import json_log
from pos_terminal.app.models import SyncDiagnostic, parse_record, record_payload
from pos_terminal.app.remote import RemoteStore, call_remote

UNREACHABLE = -1


def classify(local_count: int, cloud_count: int, pending: int, failure: Optional[TerminalError] = None) -> str:
    if failure is not None or cloud_count < 0:
        return "Offline" if isinstance(failure, NetworkError) or failure is None else "Error"
    if local_count == cloud_count and pending == 0:
        return "Synced"
    return "Discrepancy"


class DiagnosticsReporter:
    def __init__(self, remote: RemoteStore, outbox, collections: CollectionSet, *, timeout_s: Optional[float] = None):
        self.remote = remote
        self.outbox = outbox
        self.collections = collections
        self.timeout_s = timeout_s or settings.remote_timeout_s

    @property
    def business_id(self) -> Optional[str]:
        return self.outbox.business_id

    async def _cloud_count(self, table: str) -> tuple[int, Optional[TerminalError]]:
        try:
            n = await call_remote(
                self.remote.count(table, self.business_id),
                timeout_s=self.timeout_s,
                op=f"count {table}",
            )
            return int(n), None
        except TerminalError as ex:
            json_log("warn", "diagnostics_count_failed", table=table, code=ex.code, error=str(ex))
            return UNREACHABLE, ex

    async def diagnose(self, table: str) -> SyncDiagnostic:
        local_count = len(self.collections[table])
        cloud_count, failure = await self._cloud_count(table)
        pending = self.outbox.pending_count(table, business_id=self.business_id)
        return SyncDiagnostic(
            table=table,
            local_count=local_count,
            cloud_count=cloud_count,
            pending_actions=pending,
            status=classify(local_count, cloud_count, pending, failure),
        )

    async def report(self, tables: Optional[list[str]] = None) -> list[SyncDiagnostic]:
        tables = tables or self.collections.tables()
        return list(await asyncio.gather(*(self.diagnose(t) for t in tables)))

    def _valid_rows(self, table: str, rows) -> list:
        out = []
        for raw in rows or []:
            try:
                out.append(parse_record(table, raw))
            except ValidationError as ex:
                json_log("warn", "record_rejected", table=table, error=str(ex)[:500])
        return out

    async def force_resync(self, table: str) -> SyncDiagnostic:
        """
        Replace the local copy of `table` with the remote snapshot.

        Queued mutations are replayed first; whatever the active business still
        cannot deliver is discarded once the snapshot is in hand. Other businesses'
        queued writes are kept. If the snapshot cannot be fetched, local state is
        left untouched.
        """
        coll = self.collections[table]
        await self.outbox.sync_pending(table)
        try:
            rows = await call_remote(
                self.remote.fetch(table, self.business_id),
                timeout_s=self.timeout_s,
                op=f"fetch {table}",
            )
        except TerminalError as ex:
            json_log("warn", "resync_fetch_failed", table=table, code=ex.code, error=str(ex))
            pending = self.outbox.pending_count(table, business_id=self.business_id)
            return SyncDiagnostic(
                table=table,
                local_count=len(coll),
                cloud_count=UNREACHABLE,
                pending_actions=pending,
                status=classify(len(coll), UNREACHABLE, pending, ex),
            )

        rows = self._valid_rows(table, rows)
        async with self.outbox.table_lock(table):
            dropped = self.outbox.cache.discard_pending(table, self.business_id)
            if dropped:
                json_log("warn", "resync_discarded_pending", table=table, count=dropped, business_id=self.business_id)
            coll.replace_all(rows)
            self.outbox.cache.put_table(table, self.business_id, [record_payload(r) for r in coll])

        json_log("info", "resync_done", table=table, rows=len(coll), business_id=self.business_id)
        return SyncDiagnostic(
            table=table,
            local_count=len(coll),
            cloud_count=len(rows),
            pending_actions=0,
            status=classify(len(coll), len(rows), 0),
        )
