from __future__ import annotations

from typing import Iterable, Iterator, Optional

from pydantic import BaseModel

from pos_terminal.app.models import RECENCY_ORDERED, parse_record


class Collection:
    """
    In-memory view of one table for the active business.

    Records are replaced by id, so applying the same upsert or delete twice is
    harmless.
    """

    def __init__(self, table: str, records: Iterable = (), *, prepend: Optional[bool] = None):
        self.table = table
        self.prepend = (table in RECENCY_ORDERED) if prepend is None else prepend
        self._rows: list[BaseModel] = []
        self.replace_all(records)

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[BaseModel]:
        return iter(list(self._rows))

    def __contains__(self, record_id) -> bool:
        return self.get(record_id) is not None

    def records(self) -> list[BaseModel]:
        return list(self._rows)

    def ids(self) -> list[str]:
        return [r.id for r in self._rows]

    def get(self, record_id) -> Optional[BaseModel]:
        rid = str(record_id)
        for r in self._rows:
            if r.id == rid:
                return r
        return None

    def upsert(self, record) -> BaseModel:
        rec = parse_record(self.table, record)
        for i, r in enumerate(self._rows):
            if r.id == rec.id:
                self._rows[i] = rec
                return rec
        if self.prepend:
            self._rows.insert(0, rec)
        else:
            self._rows.append(rec)
        return rec

    def remove(self, record_id) -> bool:
        rid = str(record_id)
        before = len(self._rows)
        self._rows = [r for r in self._rows if r.id != rid]
        return len(self._rows) != before

    def replace_all(self, records: Iterable) -> None:
        rows: list[BaseModel] = []
        seen: dict[str, int] = {}
        for raw in records or []:
            rec = parse_record(self.table, raw)
            if rec.id in seen:
                rows[seen[rec.id]] = rec
                continue
            seen[rec.id] = len(rows)
            rows.append(rec)
        self._rows = rows


class CollectionSet:
    def __init__(self, tables: Iterable[str]):
        self._by_table: dict[str, Collection] = {t: Collection(t) for t in tables}

    def __getitem__(self, table: str) -> Collection:
        try:
            return self._by_table[table]
        except KeyError:
            raise ValueError(f"table is not monitored: {table}") from None

    def __contains__(self, table: str) -> bool:
        return table in self._by_table

    def tables(self) -> list[str]:
        return list(self._by_table.keys())

    def clear(self) -> None:
        for c in self._by_table.values():
            c.replace_all([])
