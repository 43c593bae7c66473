"""
Shared tracker plumbing: table reads, keyed upserts and wholesale rewrites.
"""

from datetime import date, datetime
from typing import Callable, Hashable, List, Optional, Sequence, Tuple

import structlog

from commerce_tracking.coordination import KeyedLock
from commerce_tracking.store.base import Row, TabularStore
from commerce_tracking.store.schemas import Table

from .formatting import utcnow

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


class BaseTracker:
    """
    Base class for the domain trackers.

    Each tracker owns a store (one spreadsheet), a clock returning naive UTC
    datetimes and a ``KeyedLock`` under which every read-modify-write of a
    natural key runs.
    """

    def __init__(
        self,
        store: TabularStore,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.store = store
        self.clock = clock or utcnow
        self.locks = locks or KeyedLock()

    def today(self) -> date:
        return self.clock().date()

    async def read_rows(self, table: Table, store: Optional[TabularStore] = None) -> List[List[str]]:
        """All non-empty data rows of a table, padded to its width"""
        values = await (store or self.store).get_values(table.full_range)
        return [table.pad(row) for row in values[1:] if any(cell != "" for cell in row)]

    async def find(
        self,
        table: Table,
        predicate: Callable[[List[str]], bool],
    ) -> Optional[Tuple[int, List[str]]]:
        found = await self.store.find_row(table.name, lambda row: predicate(table.pad(row)))
        if found is None:
            return None
        row_number, row = found
        return row_number, table.pad(row)

    async def find_by_key(self, table: Table, key: str, key_column: int = 0) -> Optional[List[str]]:
        found = await self.find(table, lambda row: row[key_column] == str(key))
        return found[1] if found else None

    async def upsert(self, table: Table, key: str, row: Row, key_column: int = 0) -> bool:
        """
        Overwrite the row for ``key`` or append it.

        Callers hold the key's lock. Returns True when the row was added.
        """
        updated = await self.store.find_and_update_row(table.name, key_column, str(key), row)
        if not updated:
            await self.store.append_rows(table.name, [row])
        return not updated

    async def upsert_by_date(self, table: Table, day: date, row: Row) -> bool:
        key = day.isoformat()
        async with self.locks.hold((table.name, key)):
            return await self.upsert(table, key, row)

    async def rewrite(
        self,
        table: Table,
        rows: Sequence[Row],
        keep: Optional[Callable[[List[str]], bool]] = None,
    ) -> int:
        """
        Replace the table's data wholesale.

        Rows matching ``keep`` survive (used to recompute one date while
        preserving history); everything else is cleared and ``rows`` are
        appended after the survivors.
        """
        async with self.locks.hold((table.name, "*")):
            survivors = [row for row in await self.read_rows(table) if keep(row)] if keep else []
            await self.store.clear_range(table.data_range)
            if survivors or rows:
                await self.store.append_rows(table.name, [*survivors, *rows])
        logger.debug("Table rewritten", table=table.name, kept=len(survivors), written=len(rows))
        return len(rows)

    def lock(self, *key: Hashable):
        return self.locks.hold(key)
