"""
Tabular Store Client

Uniform async contract over the backing spreadsheet service. Trackers only
ever talk to a ``TabularStore``; concrete backends implement the five
primitive range operations and inherit the scan-based lookups.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Sequence, Tuple

import structlog

from .a1 import column_letter, quote_sheet

logger = structlog.get_logger(__name__)

Row = Sequence[Any]

# Widest range used for whole-sheet scans
SCAN_LAST_COLUMN = "ZZ"


class TabularStore(ABC):
    """
    Abstract spreadsheet-backed store bound to one spreadsheet.

    None of the operations are atomic with respect to each other: an
    upsert is a scan followed by a write, so callers serialize writers
    per key themselves.
    """

    def __init__(self, spreadsheet_id: str):
        self.spreadsheet_id = spreadsheet_id

    @abstractmethod
    async def get_values(self, range_: str) -> List[List[str]]:
        """Read a range; returns ``[]`` when it holds no values"""

    @abstractmethod
    async def append_rows(self, sheet: str, rows: Sequence[Row]) -> None:
        """Append rows after the last row of the sheet's table"""

    @abstractmethod
    async def update_range(self, range_: str, rows: Sequence[Row]) -> None:
        """Overwrite cells starting at the range's top-left corner"""

    @abstractmethod
    async def clear_range(self, range_: str) -> None:
        """Blank every cell in the range"""

    @abstractmethod
    async def ensure_sheet(self, sheet: str, headers: Sequence[str]) -> None:
        """Create the sheet if missing and write its header row"""

    async def close(self) -> None:
        """Release backend resources"""

    async def find_row(
        self,
        sheet: str,
        predicate: Callable[[List[str]], bool],
    ) -> Optional[Tuple[int, List[str]]]:
        """
        Find the first data row matching ``predicate``.

        Returns:
            ``(row_number, row)`` with a 1-based sheet row number, or None
        """
        rows = await self.get_values(f"{quote_sheet(sheet)}!A:{SCAN_LAST_COLUMN}")
        # Row 0 is the header
        for index, row in enumerate(rows[1:], start=1):
            if predicate(row):
                return index + 1, row
        return None

    async def find_and_update_row(
        self,
        sheet: str,
        key_column: int,
        key_value: str,
        new_row: Row,
    ) -> bool:
        """
        Overwrite the first data row whose ``key_column`` equals ``key_value``.

        Returns:
            True if a row was updated, False if no row matched
        """
        key_value = str(key_value)
        found = await self.find_row(
            sheet,
            lambda row: len(row) > key_column and row[key_column] == key_value,
        )
        if found is None:
            return False

        row_number, _ = found
        last_column = column_letter(len(new_row))
        await self.update_range(
            f"{quote_sheet(sheet)}!A{row_number}:{last_column}{row_number}",
            [new_row],
        )
        logger.debug("Row updated", sheet=sheet, row=row_number, key=key_value)
        return True
