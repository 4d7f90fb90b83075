from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Protocol

from pos_terminal.app.errors import NetworkError, RemoteError, TerminalError

ChangeCallback = Callable[[dict], None]


class ChannelHandle(Protocol):
    async def close(self) -> None: ...


class RemoteStore(Protocol):
    """
    Authoritative store consumed by the terminal. Every method is scoped by
    business id where it makes sense; implementations may raise on transport
    errors or return False for a refused write.
    """

    async def fetch(self, table: str, business_id: str) -> list[dict]: ...

    async def upsert(self, table: str, record: dict, business_id: Optional[str] = None) -> bool: ...

    async def upsert_many(self, table: str, records: list[dict]) -> bool: ...

    async def delete(self, table: str, record_id: str) -> bool: ...

    async def count(self, table: str, business_id: str) -> int: ...

    async def subscribe_to_changes(
        self, tables: list[str], business_id: str, callback: ChangeCallback
    ) -> list[ChannelHandle]: ...

    async def authenticate(self, email: str, password: str) -> dict: ...


async def call_remote(aw: Awaitable[Any], *, timeout_s: float, op: str) -> Any:
    """
    Await a remote call with a hard timeout and classify failures:
    transport problems and timeouts become NetworkError, anything else the
    remote raises becomes RemoteError. A False result is a refused write.
    """
    try:
        res = await asyncio.wait_for(aw, timeout=timeout_s)
    except asyncio.TimeoutError as ex:
        raise NetworkError(f"{op}: no response after {timeout_s:g}s") from ex
    except (ConnectionError, OSError) as ex:
        raise NetworkError(f"{op}: {ex}") from ex
    except TerminalError:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as ex:
        raise RemoteError(f"{op}: {ex}") from ex
    if res is False:
        raise RemoteError(f"{op}: rejected by remote")
    return res
