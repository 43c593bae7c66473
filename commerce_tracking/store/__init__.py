"""
Tabular Store Module
"""
from .a1 import column_letter, parse_range, quote_sheet
from .base import TabularStore
from .initializer import initialize_workbooks
from .memory import InMemoryStore
from .schemas import WORKBOOKS, Table, Workbook

__all__ = [
    "TabularStore",
    "InMemoryStore",
    "Table",
    "Workbook",
    "WORKBOOKS",
    "column_letter",
    "parse_range",
    "quote_sheet",
    "initialize_workbooks",
]
