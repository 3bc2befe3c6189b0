"""Import class rosters from a sheet tab into the local database."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import db
from core.sheets_client import SheetsClient, SheetsClientError

logger = logging.getLogger(__name__)

HOUSE_COLUMN = 0
NAME_COLUMN = 1
IDENTIFIER_COLUMN = 2


class RosterImportError(Exception):
    """Raised when a roster cannot be read or stored."""


@dataclass
class RosterImportResult:
    kind: str
    class_id: str
    sheet_name: str
    imported: int = 0
    skipped_rows: List[int] = field(default_factory=list)
    student_ids: List[str] = field(default_factory=list)


def _cell(row: Sequence[str], index: int) -> str:
    if index < len(row):
        return str(row[index] or "").strip()
    return ""


def parse_roster_rows(values: Sequence[Sequence[str]], start_row: int) -> List[Dict[str, Any]]:
    """Turn ``A:C`` values (house, name, identifier) into roster rows.

    Rows without a name are left out; row numbers follow the sheet, so blank
    lines keep their gap.
    """

    rows: List[Dict[str, Any]] = []
    for offset, row in enumerate(values):
        name = _cell(row, NAME_COLUMN)
        if not name:
            continue
        rows.append(
            {
                "house": _cell(row, HOUSE_COLUMN),
                "student_name": name,
                "student_identifier": _cell(row, IDENTIFIER_COLUMN),
                "row_number": start_row + offset,
            }
        )
    return rows


def import_roster(
    client: SheetsClient,
    class_id: str,
    *,
    kind: str = db.ATTENDANCE,
    sheet_name: Optional[str] = None,
    start_row: int = 4,
    end_row: int = 20,
    replace: bool = False,
) -> RosterImportResult:
    """Read ``A{start_row}:C{end_row}`` of the class tab into the roster.

    ``replace`` deletes the class's existing roster rows first.  Guardian
    links and evaluations that pointed at the old rows are left for
    :mod:`core.reconciliation` to re-attach.
    """

    if start_row < 1 or end_row < start_row:
        raise RosterImportError(f"Invalid roster rows {start_row}..{end_row}")
    class_row = db.fetch_class(class_id)
    if class_row is None:
        raise RosterImportError(f"Class {class_id} not found")
    tab = (sheet_name or class_row.get("sheet_name") or "").strip()
    if not tab:
        raise RosterImportError("The class has no sheet name to import from")

    try:
        values = client.read_values(tab, f"A{start_row}:C{end_row}")
    except SheetsClientError as exc:
        raise RosterImportError(f"Could not read roster from {tab}: {exc}") from exc

    rows = parse_roster_rows(values, start_row)
    result = RosterImportResult(kind=kind, class_id=class_id, sheet_name=tab)
    named = {row["row_number"] for row in rows}
    result.skipped_rows = [
        start_row + offset for offset in range(len(values)) if start_row + offset not in named
    ]
    result.student_ids = db.replace_roster(kind, class_id, rows, replace=replace)
    result.imported = len(result.student_ids)
    logger.info(
        "Imported %d %s roster rows for class %s from %s%s",
        result.imported,
        kind,
        class_id,
        tab,
        " (replaced)" if replace else "",
    )
    return result


__all__ = [
    "RosterImportError",
    "RosterImportResult",
    "import_roster",
    "parse_roster_rows",
]
