"""
Terminal coordinator.

One `Engine` per running terminal. It owns the in-memory collections, the
offline write queue, the stock ledger, the realtime subscription for the
active business, and the checkout. Presentation code talks to this object
only; async failures are caught and classified here.

    engine = Engine(PgRemoteStore(url), LocalCache("pos_cache.sqlite"))
    async with engine.session(business_id):
        co = engine.checkout
        ...
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Iterable, Optional

from pydantic import ValidationError

from pos_terminal.app.checkout import Checkout
from pos_terminal.app.collection import CollectionSet
from pos_terminal.app.config import settings
from pos_terminal.app.errors import CheckoutValidationError, TerminalError
from pos_terminal.app.local_cache import LocalCache
from pos_terminal.app.logs import json_log
from pos_terminal.app.models import AuthResult, SyncDiagnostic, SystemUser, parse_record, scope_of
from pos_terminal.app.remote import RemoteStore, call_remote
from pos_terminal.app.stock_ledger import StockLedger
from pos_terminal.workers.change_merge import ChangeStream, RemoteChangeMerge
from pos_terminal.workers.diagnostics import DiagnosticsReporter
from pos_terminal.workers.outbox import Outbox

# Sales are immutable once committed; only Completed -> Refunded is allowed.
WRITE_PROTECTED = frozenset({"transactions"})


class Engine:
    def __init__(
        self,
        remote: RemoteStore,
        cache: Optional[LocalCache] = None,
        *,
        tables: Optional[Iterable[str]] = None,
        timeout_s: Optional[float] = None,
        tax_rate: Optional[Decimal] = None,
    ):
        self.remote = remote
        self._owns_cache = cache is None
        self.cache = cache if cache is not None else LocalCache(settings.cache_path)
        self.tables = list(tables or settings.monitored_tables)
        self.timeout_s = timeout_s or settings.remote_timeout_s
        self.tax_rate = settings.tax_rate if tax_rate is None else tax_rate

        self.collections = CollectionSet(self.tables)
        self.outbox = Outbox(remote, self.cache, self.collections, timeout_s=self.timeout_s)
        self.ledger = StockLedger(self.outbox, self.collections["products"])
        self.diagnostics = DiagnosticsReporter(remote, self.outbox, self.collections, timeout_s=self.timeout_s)

        self.business_id: Optional[str] = None
        self._stream: Optional[ChangeStream] = None
        self._merge: Optional[RemoteChangeMerge] = None
        self._merge_task: Optional[asyncio.Task] = None
        self._checkout: Optional[Checkout] = None

    # -- lifecycle --

    async def init(self, business_id: str) -> dict[str, str]:
        """
        Activate a business: replay the queue, load every table (concurrently),
        then subscribe to realtime changes. Returns table -> "remote" | "cache"
        telling where each table was loaded from.
        """
        business_id = str(business_id or "").strip()
        if not business_id:
            raise ValueError("business_id is required")
        if self.business_id is not None:
            await self._release()

        self.business_id = business_id
        self.outbox.business_id = business_id
        self.collections.clear()
        self._checkout = None

        sources = await self.load_all()
        await self._subscribe()
        return sources

    async def switch_business(self, business_id: str) -> dict[str, str]:
        return await self.init(business_id)

    async def dispose(self):
        await self._release()
        self.business_id = None
        self.outbox.business_id = None
        self._checkout = None
        if self._owns_cache:
            self.cache.close()

    @asynccontextmanager
    async def session(self, business_id: str):
        await self.init(business_id)
        try:
            yield self
        finally:
            await self.dispose()

    async def _subscribe(self) -> bool:
        stream = ChangeStream(self.remote, self.tables, self.business_id, timeout_s=self.timeout_s)
        try:
            await stream.open()
        except TerminalError as ex:
            # Still usable offline; the next init/switch will try again.
            json_log("warn", "subscribe_failed", business_id=self.business_id, code=ex.code, error=str(ex))
            await stream.close()
            return False
        self._stream = stream
        self._merge = RemoteChangeMerge(self.collections, self.cache, self.business_id)
        self._merge_task = asyncio.create_task(self._merge.run(stream))
        return True

    async def _release(self):
        stream, task = self._stream, self._merge_task
        self._stream = self._merge_task = self._merge = None
        if stream is not None:
            await stream.close()
        if task is not None:
            try:
                await task
            except Exception as ex:
                json_log("warn", "change_merge_stopped", business_id=self.business_id, error=str(ex))

    @property
    def subscribed(self) -> bool:
        return self._stream is not None and self._stream.is_open

    # -- loading --

    def _valid_rows(self, table: str, rows) -> list:
        out = []
        for raw in rows or []:
            try:
                rec = parse_record(table, raw)
            except ValidationError as ex:
                json_log("warn", "record_rejected", table=table, error=str(ex)[:500])
                continue
            if scope_of(table, rec) not in (None, self.business_id):
                continue
            out.append(rec)
        return out

    def _overlay_pending(self, table: str):
        # Queued writes are still the terminal's view of the world; keep them
        # visible on top of whatever snapshot was loaded.
        coll = self.collections[table]
        for action in self.outbox.list_pending(table):
            if action.business_id not in (None, self.business_id):
                continue
            if action.op == "Delete":
                coll.remove(action.record_id)
                continue
            try:
                coll.upsert(action.payload)
            except ValidationError:
                continue

    async def load_table(self, table: str) -> str:
        coll = self.collections[table]
        try:
            rows = await call_remote(
                self.remote.fetch(table, self.business_id),
                timeout_s=self.timeout_s,
                op=f"fetch {table}",
            )
        except TerminalError as ex:
            json_log("warn", "initial_load_fallback", table=table, code=ex.code, error=str(ex))
            coll.replace_all(self._valid_rows(table, self.cache.get_table(table, self.business_id)))
            self._overlay_pending(table)
            return "cache"
        coll.replace_all(self._valid_rows(table, rows))
        self._overlay_pending(table)
        self.outbox.persist(table)
        return "remote"

    async def load_all(self) -> dict[str, str]:
        # Queued writes go out before the snapshot is taken.
        await self.outbox.sync_pending()
        results = await asyncio.gather(*(self.load_table(t) for t in self.tables))
        return dict(zip(self.tables, results))

    async def reconnect(self) -> dict[str, int]:
        return await self.outbox.sync_pending()

    # -- mutations --

    def _require_business(self):
        if not self.business_id:
            raise RuntimeError("engine has no active business; call init() first")

    def _require_writable(self, table: str):
        self._require_business()
        if table in WRITE_PROTECTED:
            raise CheckoutValidationError(f"{table} are written by checkout and refunds only")

    async def save_record(self, table: str, record):
        self._require_writable(table)
        return await self.outbox.upsert(table, record)

    async def save_many(self, table: str, records):
        self._require_writable(table)
        return await self.outbox.upsert_many(table, records)

    async def delete_record(self, table: str, record_id) -> bool:
        self._require_writable(table)
        return await self.outbox.delete(table, record_id)

    async def save_product(self, product):
        return await self.save_record("products", product)

    async def delete_product(self, product_id) -> bool:
        return await self.delete_record("products", product_id)

    async def refund_transaction(self, transaction_id):
        self._require_business()
        tx = self.collections["transactions"].get(transaction_id)
        if tx is None:
            raise CheckoutValidationError(f"unknown transaction {transaction_id}")
        return await self.outbox.upsert("transactions", tx.refunded())

    async def restock(self, product_id, qty: int):
        self._require_business()
        return await self.ledger.restock(product_id, qty)

    @property
    def checkout(self) -> Checkout:
        self._require_business()
        if self._checkout is None:
            self._checkout = Checkout(
                self.collections["products"],
                self.ledger,
                self.outbox,
                tax_rate=self.tax_rate,
            )
        return self._checkout

    # -- diagnostics --

    async def get_sync_diagnostics(self) -> list[SyncDiagnostic]:
        self._require_business()
        return await self.diagnostics.report()

    async def force_resync(self, table: str) -> SyncDiagnostic:
        self._require_business()
        return await self.diagnostics.force_resync(table)

    # -- session --

    async def authenticate(self, email: str, password: str) -> AuthResult:
        try:
            raw = await call_remote(
                self.remote.authenticate(email, password),
                timeout_s=self.timeout_s,
                op="authenticate",
            )
        except TerminalError as ex:
            return AuthResult(success=False, error=str(ex), code=ex.code)
        try:
            res = AuthResult.model_validate(raw)
        except ValidationError:
            return AuthResult(success=False, error="malformed authentication response", code="REMOTE_ERROR")
        if res.success and res.data is None:
            return AuthResult(success=False, error="authentication response has no user", code="REMOTE_ERROR")
        if res.success:
            self.cache.session_user_id = res.data.user.id
        return res

    def logout(self):
        self.cache.session_user_id = None

    def session_user(self) -> Optional[SystemUser]:
        uid = self.cache.session_user_id
        if not uid or "users" not in self.collections:
            return None
        return self.collections["users"].get(uid)

    @property
    def setup_complete(self) -> bool:
        return self.cache.setup_complete

    def mark_setup_complete(self, done: bool = True):
        self.cache.setup_complete = done
