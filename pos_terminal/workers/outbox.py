"""
Offline write queue (terminal -> remote).

Every mutation is applied locally first (in-memory collection + SQLite cache),
then pushed to the remote store. If the push fails the mutation is appended to
a durable per-table FIFO and replayed later by `sync_pending()`.

Ordering rules:
- a table's queue is replayed strictly by seq; the first failure stops that
  table and leaves the rest for the next trigger
- while a table still has queued entries, new mutations for it go to the back
  of the queue instead of overtaking them
- queued entries are only removed after the remote acknowledged them
"""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from pydantic import BaseModel

from pos_terminal.app.collection import CollectionSet
from pos_terminal.app.config import settings
from pos_terminal.app.errors import TerminalError
from pos_terminal.app.local_cache import LocalCache
from pos_terminal.app.logs import json_log
from pos_terminal.app.models import PendingAction, parse_record, record_payload, utcnow
from pos_terminal.app.remote import RemoteStore, call_remote


class Outbox:
    def __init__(
        self,
        remote: RemoteStore,
        cache: LocalCache,
        collections: CollectionSet,
        *,
        business_id: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ):
        self.remote = remote
        self.cache = cache
        self.collections = collections
        self.business_id = business_id
        self.timeout_s = timeout_s or settings.remote_timeout_s
        self._locks: dict[str, asyncio.Lock] = {}

    def table_lock(self, table: str) -> asyncio.Lock:
        lock = self._locks.get(table)
        if lock is None:
            lock = self._locks[table] = asyncio.Lock()
        return lock

    def persist(self, table: str):
        rows = [record_payload(r) for r in self.collections[table]]
        self.cache.put_table(table, self.business_id, rows)

    def _prepare(self, table: str, record) -> BaseModel:
        rec = parse_record(table, record)
        update = {}
        if table != "businesses" and "business_id" in type(rec).model_fields and not rec.business_id and self.business_id:
            update["business_id"] = self.business_id
        if "updated_at" in type(rec).model_fields:
            update["updated_at"] = utcnow()
        return rec.model_copy(update=update) if update else rec

    # -- mutations --

    async def upsert(self, table: str, record) -> BaseModel:
        rec = self._prepare(table, record)
        self.collections[table].upsert(rec)
        self.persist(table)
        action = PendingAction(table=table, op="Upsert", payload=record_payload(rec), business_id=self.business_id)
        await self._push(table, [action])
        return rec

    async def upsert_many(self, table: str, records: Iterable) -> list[BaseModel]:
        recs = [self._prepare(table, r) for r in records]
        if not recs:
            return []
        coll = self.collections[table]
        for rec in recs:
            coll.upsert(rec)
        self.persist(table)
        actions = [
            PendingAction(table=table, op="Upsert", payload=record_payload(rec), business_id=self.business_id)
            for rec in recs
        ]
        await self._push(table, actions)
        return recs

    async def delete(self, table: str, record_id) -> bool:
        rid = str(record_id)
        removed = self.collections[table].remove(rid)
        self.persist(table)
        action = PendingAction(table=table, op="Delete", payload={"id": rid}, business_id=self.business_id)
        await self._push(table, [action])
        return removed

    async def _push(self, table: str, actions: list[PendingAction]) -> bool:
        """Send now if the table's queue is clear, otherwise queue behind it. True if acknowledged."""
        async with self.table_lock(table):
            if self.cache.count_pending(table):
                await self._replay_table(table)
            if self.cache.count_pending(table):
                self._enqueue(actions, reason="queue not empty")
                return False
            try:
                await self._send(table, actions)
            except TerminalError as ex:
                json_log("warn", "remote_call_failed", table=table, code=ex.code, error=str(ex), ops=len(actions))
                self._enqueue(actions, reason=str(ex))
                return False
            return True

    def _enqueue(self, actions: list[PendingAction], reason: str):
        for a in actions:
            seq = self.cache.append_pending(a)
            json_log("info", "outbox_enqueued", table=a.table, op=a.op, seq=seq, record_id=a.record_id, reason=reason)

    async def _send(self, table: str, actions: list[PendingAction]):
        if len(actions) > 1 and all(a.op == "Upsert" for a in actions):
            await call_remote(
                self.remote.upsert_many(table, [a.payload for a in actions]),
                timeout_s=self.timeout_s,
                op=f"upsert_many {table}",
            )
            return
        for a in actions:
            await self._send_one(a)

    async def _send_one(self, action: PendingAction):
        if action.op == "Delete":
            await call_remote(
                self.remote.delete(action.table, action.record_id),
                timeout_s=self.timeout_s,
                op=f"delete {action.table}",
            )
        else:
            await call_remote(
                self.remote.upsert(action.table, action.payload, action.business_id),
                timeout_s=self.timeout_s,
                op=f"upsert {action.table}",
            )

    # -- replay --

    async def _replay_table(self, table: str) -> int:
        # Caller holds the table lock.
        replayed = 0
        for action in self.cache.list_pending(table):
            try:
                await self._send_one(action)
            except TerminalError as ex:
                self.cache.mark_pending_failed(action.seq, str(ex))
                json_log(
                    "warn",
                    "outbox_replay_failed",
                    table=table,
                    seq=action.seq,
                    op=action.op,
                    attempt=action.attempt_count + 1,
                    code=ex.code,
                    error=str(ex),
                )
                break
            self.cache.remove_pending(action.seq)
            replayed += 1
        if replayed:
            json_log("info", "outbox_replayed", table=table, count=replayed, remaining=self.cache.count_pending(table))
        return replayed

    async def sync_pending(self, table: Optional[str] = None) -> dict[str, int]:
        """Replay queued mutations. Tables replay concurrently, each one strictly in order."""
        tables = [table] if table else self.cache.pending_tables()

        async def _one(t: str):
            async with self.table_lock(t):
                return t, await self._replay_table(t)

        results = await asyncio.gather(*(_one(t) for t in tables))
        return dict(results)

    def pending_count(self, table: Optional[str] = None, *, business_id: Optional[str] = None) -> int:
        return self.cache.count_pending(table, business_id)

    def list_pending(self, table: Optional[str] = None) -> list[PendingAction]:
        return self.cache.list_pending(table)
