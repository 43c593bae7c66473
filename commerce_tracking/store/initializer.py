"""
Spreadsheet initialization

Creates every table of every workbook with its header row. Safe to run
repeatedly: existing sheets keep their data, only row 1 is rewritten.
"""

from typing import Dict, Iterable, Optional

import structlog

from .base import TabularStore
from .schemas import WORKBOOKS

logger = structlog.get_logger(__name__)


async def initialize_workbooks(
    stores: Dict[str, TabularStore],
    domains: Optional[Iterable[str]] = None,
) -> Dict[str, int]:
    """
    Ensure all tables exist.

    Args:
        stores: Store per workbook domain
        domains: Restrict to these domains (defaults to all)

    Returns:
        Number of tables ensured per domain
    """
    ensured: Dict[str, int] = {}
    for domain in domains or WORKBOOKS.keys():
        workbook = WORKBOOKS[domain]
        store = stores[domain]
        for table in workbook.tables:
            await store.ensure_sheet(table.name, table.headers)
        ensured[domain] = len(workbook.tables)
        logger.info(
            "Workbook initialized",
            domain=domain,
            title=workbook.title,
            spreadsheet_id=store.spreadsheet_id,
            tables=len(workbook.tables),
        )
    return ensured
