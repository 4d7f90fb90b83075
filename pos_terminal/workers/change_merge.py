"""
Remote -> terminal realtime merge.

`ChangeStream` owns the adapter subscription for one business and exposes it
as a single-consumer async iterator. `RemoteChangeMerge` applies each event to
the in-memory collections (replace-by-id, so replays are harmless) and mirrors
the result into the local cache.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from pydantic import ValidationError

from pos_terminal.app.collection import CollectionSet
from pos_terminal.app.config import settings
from pos_terminal.app.local_cache import LocalCache
from pos_terminal.app.logs import json_log
from pos_terminal.app.models import ChangeEvent, parse_record, record_payload, scope_of
from pos_terminal.app.remote import ChannelHandle, RemoteStore, call_remote

_CLOSED = object()


class ChangeStream:
    def __init__(self, remote: RemoteStore, tables: list[str], business_id: str, *, timeout_s: Optional[float] = None):
        if not business_id:
            raise ValueError("business_id is required to subscribe")
        self.remote = remote
        self.tables = list(tables)
        self.business_id = business_id
        self.timeout_s = timeout_s or settings.remote_timeout_s
        self._queue: asyncio.Queue = asyncio.Queue()
        self._handles: list[ChannelHandle] = []
        self._opened = False
        self._closed = False
        self._consumer_taken = False

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    def _on_change(self, raw: dict):
        if not self._closed:
            self._queue.put_nowait(raw)

    async def open(self) -> "ChangeStream":
        if self._opened:
            raise RuntimeError("change stream already opened")
        self._opened = True
        self._handles = list(
            await call_remote(
                self.remote.subscribe_to_changes(self.tables, self.business_id, self._on_change),
                timeout_s=self.timeout_s,
                op="subscribe_to_changes",
            )
            or []
        )
        return self

    async def close(self):
        if self._closed:
            return
        self._closed = True
        handles, self._handles = self._handles, []
        for h in handles:
            try:
                await h.close()
            except Exception as ex:
                json_log("warn", "unsubscribe_failed", business_id=self.business_id, error=str(ex))
        self._queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> "ChangeStream":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def __aiter__(self) -> AsyncIterator[dict]:
        if self._consumer_taken:
            raise RuntimeError("change stream supports a single consumer")
        self._consumer_taken = True
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class RemoteChangeMerge:
    def __init__(self, collections: CollectionSet, cache: LocalCache, business_id: str):
        self.collections = collections
        self.cache = cache
        self.business_id = business_id
        self.applied = 0
        self.skipped = 0

    def _skip(self, reason: str, **fields) -> bool:
        self.skipped += 1
        json_log("warn", "change_skipped", reason=reason, business_id=self.business_id, **fields)
        return False

    def apply(self, raw) -> bool:
        """Apply one change. Returns False when the event was skipped."""
        try:
            ev = raw if isinstance(raw, ChangeEvent) else ChangeEvent.model_validate(raw)
        except ValidationError as ex:
            return self._skip("invalid event", error=str(ex)[:500])
        if ev.table not in self.collections:
            return self._skip("table not monitored", table=ev.table)

        coll = self.collections[ev.table]
        if ev.operation == "Delete":
            # Delete payloads may be partial (id only); scope by what we hold.
            current = coll.get(ev.record_id)
            if current is not None and scope_of(ev.table, current) not in (None, self.business_id):
                return self._skip("foreign business", table=ev.table, record_id=ev.record_id)
            coll.remove(ev.record_id)
        else:
            try:
                rec = parse_record(ev.table, ev.payload)
            except ValidationError as ex:
                return self._skip("invalid payload", table=ev.table, error=str(ex)[:500])
            if scope_of(ev.table, rec) not in (None, self.business_id):
                return self._skip("foreign business", table=ev.table, record_id=rec.id)
            coll.upsert(rec)

        self.cache.put_table(ev.table, self.business_id, [record_payload(r) for r in coll])
        self.applied += 1
        return True

    async def run(self, stream: ChangeStream):
        async for raw in stream:
            try:
                self.apply(raw)
            except Exception as ex:
                # Keep consuming; one bad event must not kill the feed.
                json_log("error", "change_merge_failed", business_id=self.business_id, error=str(ex))
