"""
Remote store backed by the cloud Postgres database (psycopg 3, async).

Tables hold one column per record field plus `business_id`. Realtime changes
arrive as `NOTIFY <table>_changes, '{"table": ..., "event": ..., "data": {...}}'`,
typically emitted by a row trigger on the cloud side.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from pos_terminal.app.config import settings
from pos_terminal.app.errors import NetworkError
from pos_terminal.app.logs import json_log
from pos_terminal.app.models import TABLE_MODELS, SystemUser
from pos_terminal.app.remote import ChangeCallback
from pos_terminal.app.security import normalize_email, verify_password

# businesses are scoped by their own id, everything else by business_id.
SCOPE_COLUMN = {"businesses": "id"}


def scope_column(table: str) -> str:
    return SCOPE_COLUMN.get(table, "business_id")


def channel_name(table: str) -> str:
    return f"{table}_changes"


async def set_business_context(conn, business_id: str):
    # `SET ... = %s` is not valid with the extended query protocol; set_config()
    # keeps the value parameterized. is_local=true scopes it to the transaction.
    await conn.execute("SELECT set_config('app.current_business_id', %s::text, true)", (business_id,))


def _adapt(v):
    if isinstance(v, (dict, list)):
        return Jsonb(v)
    return v


class _ListenHandle:
    def __init__(self, table: str, conn, task: asyncio.Task):
        self.table = table
        self._conn = conn
        self._task = task

    async def close(self):
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except psycopg.Error as ex:
            # Listener already died (dropped connection); still release the socket.
            json_log("warn", "listen_task_failed", table=self.table, error=str(ex))
        await self._conn.close()


class PgRemoteStore:
    def __init__(self, conninfo: Optional[str] = None, *, min_size: int = 1, max_size: int = 4, tables=None):
        self.conninfo = conninfo or settings.database_url
        self.tables = set(tables or TABLE_MODELS)
        self._pool = AsyncConnectionPool(
            conninfo=self.conninfo,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
            open=False,
        )

    async def open(self):
        await self._pool.open()

    async def close(self):
        await self._pool.close()

    def _ident(self, table: str) -> sql.Identifier:
        if table not in self.tables:
            raise ValueError(f"table not allowed: {table}")
        return sql.Identifier(table)

    @asynccontextmanager
    async def _conn(self, business_id: Optional[str] = None):
        try:
            async with self._pool.connection() as conn:
                if business_id:
                    await set_business_context(conn, business_id)
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as ex:
            raise NetworkError(str(ex)) from ex

    async def fetch(self, table: str, business_id: str) -> list[dict]:
        q = sql.SQL("SELECT * FROM {t} WHERE {c} = %s").format(t=self._ident(table), c=sql.Identifier(scope_column(table)))
        async with self._conn(business_id) as conn:
            cur = await conn.execute(q, (business_id,))
            return [dict(r) for r in await cur.fetchall()]

    async def count(self, table: str, business_id: str) -> int:
        q = sql.SQL("SELECT COUNT(1) AS n FROM {t} WHERE {c} = %s").format(t=self._ident(table), c=sql.Identifier(scope_column(table)))
        async with self._conn(business_id) as conn:
            cur = await conn.execute(q, (business_id,))
            row = await cur.fetchone()
            return int((row or {}).get("n") or 0)

    def _upsert_query(self, table: str, cols: list[str]) -> sql.Composed:
        updates = [sql.SQL("{c} = EXCLUDED.{c}").format(c=sql.Identifier(c)) for c in cols if c != "id"]
        conflict = sql.SQL("DO UPDATE SET {u}").format(u=sql.SQL(", ").join(updates)) if updates else sql.SQL("DO NOTHING")
        return sql.SQL("INSERT INTO {t} ({cols}) VALUES ({vals}) ON CONFLICT (id) {conflict}").format(
            t=self._ident(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            vals=sql.SQL(", ").join([sql.Placeholder()] * len(cols)),
            conflict=conflict,
        )

    def _with_scope(self, table: str, record: dict, business_id: Optional[str]) -> dict:
        rec = dict(record or {})
        if not rec.get("id"):
            raise ValueError(f"{table} record is missing id")
        if business_id and table != "businesses" and not rec.get("business_id"):
            rec["business_id"] = business_id
        return rec

    async def upsert(self, table: str, record: dict, business_id: Optional[str] = None) -> bool:
        rec = self._with_scope(table, record, business_id)
        cols = list(rec.keys())
        async with self._conn(business_id or rec.get("business_id")) as conn:
            await conn.execute(self._upsert_query(table, cols), [_adapt(rec[c]) for c in cols])
        return True

    async def upsert_many(self, table: str, records: list[dict]) -> bool:
        recs = [self._with_scope(table, r, None) for r in records or []]
        if not recs:
            return True
        # One transaction for the whole batch: either every row lands or none.
        async with self._conn(recs[0].get("business_id")) as conn:
            for rec in recs:
                cols = list(rec.keys())
                await conn.execute(self._upsert_query(table, cols), [_adapt(rec[c]) for c in cols])
        return True

    async def delete(self, table: str, record_id: str) -> bool:
        q = sql.SQL("DELETE FROM {t} WHERE id = %s").format(t=self._ident(table))
        async with self._conn() as conn:
            await conn.execute(q, (str(record_id),))
        return True

    async def authenticate(self, email: str, password: str) -> dict:
        em = normalize_email(email)
        if not em or not password:
            return {"success": False, "error": "email and password are required", "code": "INVALID_CREDENTIALS"}
        async with self._conn() as conn:
            cur = await conn.execute("SELECT * FROM users WHERE lower(email) = %s LIMIT 1", (em,))
            user = await cur.fetchone()
            if not user or not verify_password(password, user.get("password_hash")):
                return {"success": False, "error": "Identity not verified", "code": "INVALID_CREDENTIALS"}
            if str(user.get("status") or "Active").strip().lower() != "active":
                return {"success": False, "error": "Account access limited.", "code": "ACCOUNT_DISABLED"}
            business = None
            if user.get("business_id"):
                cur = await conn.execute("SELECT * FROM businesses WHERE id = %s", (user["business_id"],))
                row = await cur.fetchone()
                business = dict(row) if row else None
        # Drop password columns before the row leaves this module.
        safe_user = SystemUser.model_validate(dict(user)).model_dump(mode="json")
        return {"success": True, "data": {"user": safe_user, "business": business}}

    async def _listen(self, conn, table: str, business_id: str, callback: ChangeCallback):
        async for n in conn.notifies():
            try:
                msg = json.loads(n.payload or "{}")
            except ValueError:
                json_log("warn", "notify_payload_invalid", channel=n.channel)
                continue
            data = msg.get("data") or {}
            scope = data.get(scope_column(table))
            if scope is not None and str(scope) != str(business_id):
                continue
            callback({"table": msg.get("table") or table, "event": msg.get("event"), "data": data})

    async def subscribe_to_changes(self, tables: list[str], business_id: str, callback: ChangeCallback) -> list[_ListenHandle]:
        handles: list[_ListenHandle] = []
        try:
            for table in tables:
                self._ident(table)
                conn = await psycopg.AsyncConnection.connect(self.conninfo, autocommit=True)
                await conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(channel_name(table))))
                task = asyncio.create_task(self._listen(conn, table, business_id, callback))
                handles.append(_ListenHandle(table, conn, task))
        except psycopg.OperationalError as ex:
            for h in handles:
                await h.close()
            raise NetworkError(str(ex)) from ex
        return handles
