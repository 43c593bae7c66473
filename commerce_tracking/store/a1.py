"""
A1 notation helpers

Ranges look like ``Orders!A:V``, ``'Daily Summary'!A2:K1000`` or
``Orders!A5:V5``. Columns and rows in ``GridRange`` are zero-based with
exclusive ends; ``None`` means unbounded.
"""

import re
from dataclasses import dataclass
from typing import Optional

from commerce_tracking.errors import StoreError

_RANGE_RE = re.compile(
    r"^(?:'(?P<quoted>(?:[^']|'')+)'|(?P<plain>[^!]+))"
    r"(?:!(?P<c1>[A-Z]*)(?P<r1>\d*)(?::(?P<c2>[A-Z]*)(?P<r2>\d*))?)?$"
)


@dataclass(frozen=True)
class GridRange:
    sheet: str
    start_col: int = 0
    start_row: int = 0
    end_col: Optional[int] = None
    end_row: Optional[int] = None


def column_letter(number: int) -> str:
    """1-based column number to letters: 1 -> A, 26 -> Z, 27 -> AA"""
    if number < 1:
        raise ValueError("column numbers start at 1")
    letters = ""
    while number > 0:
        number, remainder = divmod(number - 1, 26)
        letters = chr(65 + remainder) + letters
    return letters


def column_number(letters: str) -> int:
    """Letters to 1-based column number: A -> 1, AA -> 27"""
    number = 0
    for char in letters:
        number = number * 26 + (ord(char) - 64)
    return number


def quote_sheet(name: str) -> str:
    """Quote a sheet name for use in a range"""
    if re.fullmatch(r"[A-Za-z0-9_]+", name):
        return name
    return "'" + name.replace("'", "''") + "'"


def parse_range(range_: str) -> GridRange:
    match = _RANGE_RE.match(range_)
    if not match:
        raise StoreError(f"Invalid range: {range_}")

    sheet = match.group("quoted")
    sheet = sheet.replace("''", "'") if sheet is not None else match.group("plain")

    c1, r1 = match.group("c1") or "", match.group("r1") or ""
    c2, r2 = match.group("c2"), match.group("r2")

    start_col = column_number(c1) - 1 if c1 else 0
    start_row = int(r1) - 1 if r1 else 0

    if c2 is None and r2 is None:
        # Single cell or whole sheet
        end_col = start_col + 1 if c1 else None
        end_row = start_row + 1 if r1 else None
    else:
        end_col = column_number(c2) if c2 else None
        end_row = int(r2) if r2 else None

    return GridRange(sheet, start_col, start_row, end_col, end_row)
