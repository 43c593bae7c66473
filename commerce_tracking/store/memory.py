"""
In-process tabular store

Keeps sheets as lists of string rows and mimics what the Sheets API
returns: every cell reads back as a string, trailing empty cells and
trailing empty rows are dropped.
"""

import asyncio
from typing import Dict, List, Sequence

from commerce_tracking.errors import StoreError

from .a1 import parse_range
from .base import Row, TabularStore


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return str(value)


def _trim(row: List[str]) -> List[str]:
    end = len(row)
    while end and row[end - 1] == "":
        end -= 1
    return row[:end]


class InMemoryStore(TabularStore):
    """Store backend for development and tests"""

    def __init__(self, spreadsheet_id: str = "memory"):
        super().__init__(spreadsheet_id)
        self._sheets: Dict[str, List[List[str]]] = {}
        self._lock = asyncio.Lock()

    def _grid(self, sheet: str) -> List[List[str]]:
        try:
            return self._sheets[sheet]
        except KeyError:
            raise StoreError(f"Unable to parse range: sheet '{sheet}' does not exist") from None

    def rows(self, sheet: str) -> List[List[str]]:
        """Data rows of a sheet without the header, as stored"""
        return [_trim(row) for row in self._grid(sheet)[1:] if _trim(row)]

    async def ensure_sheet(self, sheet: str, headers: Sequence[str]) -> None:
        async with self._lock:
            grid = self._sheets.setdefault(sheet, [])
            if not grid:
                grid.append([])
            grid[0] = [_cell(h) for h in headers]

    async def get_values(self, range_: str) -> List[List[str]]:
        grid_range = parse_range(range_)
        async with self._lock:
            grid = self._grid(grid_range.sheet)
            end_row = grid_range.end_row if grid_range.end_row is not None else len(grid)
            values = []
            for row in grid[grid_range.start_row:end_row]:
                end_col = grid_range.end_col if grid_range.end_col is not None else len(row)
                values.append(_trim(row[grid_range.start_col:end_col]))

        while values and not values[-1]:
            values.pop()
        return values

    async def append_rows(self, sheet: str, rows: Sequence[Row]) -> None:
        async with self._lock:
            grid = self._grid(sheet)
            while len(grid) > 1 and not _trim(grid[-1]):
                grid.pop()
            for row in rows:
                grid.append([_cell(value) for value in row])

    async def update_range(self, range_: str, rows: Sequence[Row]) -> None:
        grid_range = parse_range(range_)
        async with self._lock:
            grid = self._grid(grid_range.sheet)
            for offset, row in enumerate(rows):
                row_index = grid_range.start_row + offset
                while len(grid) <= row_index:
                    grid.append([])
                target = grid[row_index]
                needed = grid_range.start_col + len(row)
                if len(target) < needed:
                    target.extend([""] * (needed - len(target)))
                for col_offset, value in enumerate(row):
                    target[grid_range.start_col + col_offset] = _cell(value)

    async def clear_range(self, range_: str) -> None:
        grid_range = parse_range(range_)
        async with self._lock:
            grid = self._grid(grid_range.sheet)
            end_row = grid_range.end_row if grid_range.end_row is not None else len(grid)
            for row in grid[grid_range.start_row:end_row]:
                end_col = grid_range.end_col if grid_range.end_col is not None else len(row)
                for index in range(grid_range.start_col, min(end_col, len(row))):
                    row[index] = ""
