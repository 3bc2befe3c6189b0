"""Cell address helpers for the attendance and evaluation mirrors.

Everything in this module is a pure function of its arguments.  Attendance
sheets hold one column per week starting at the layout's base column, while
evaluation sheets reserve a four column block per chapter (or per week when
evaluations are dated) ordered Discipline, Behaviour, Homework, Active
Participation.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, List, Optional, Union

from settings import SheetLayout

DateLike = Union[date, datetime, str]

CATEGORY_ORDER = ("D", "B", "HW", "AP")
CATEGORY_OFFSETS: Dict[str, int] = {
    "D": 0,
    "DISCIPLINE": 0,
    "B": 1,
    "BEHAVIOUR": 1,
    "BEHAVIOR": 1,
    "HW": 2,
    "HOMEWORK": 2,
    "AP": 3,
    "PARTICIPATION": 3,
    "ACTIVE PARTICIPATION": 3,
}

_LETTERS_RE = re.compile(r"^[A-Z]+$")


class AddressError(ValueError):
    """Raised when a record cannot be mapped onto a spreadsheet cell."""


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not text:
        raise AddressError("A date is required to compute the column")
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise AddressError(f"Invalid date {value!r}") from exc


def weeks_elapsed(origin: DateLike, target: DateLike) -> int:
    """Return the number of whole weeks between ``origin`` and ``target``."""

    start = _as_date(origin)
    end = _as_date(target)
    days = (end - start).days
    if days < 0:
        raise AddressError(f"{end.isoformat()} is before the term origin {start.isoformat()}")
    return days // 7


def column_for_date(
    origin: DateLike,
    target: DateLike,
    *,
    base_column: int = 1,
    block_width: int = 1,
) -> int:
    """Return the first column of the week block containing ``target``."""

    if base_column < 1 or block_width < 1:
        raise AddressError("base_column and block_width must be >= 1")
    return base_column + weeks_elapsed(origin, target) * block_width


def category_offset(category_key: str) -> int:
    key = " ".join(str(category_key or "").split()).upper()
    try:
        return CATEGORY_OFFSETS[key]
    except KeyError:
        raise AddressError(f"Unknown evaluation category {category_key!r}") from None


def column_for_category(base_column: int, category_key: str) -> int:
    return base_column + category_offset(category_key)


def column_letter(index: int) -> str:
    """Return the spreadsheet column letter for a 1-indexed column index."""

    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: List[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def column_number(letter: str) -> int:
    """Inverse of :func:`column_letter` (``"A"`` -> 1, ``"AA"`` -> 27)."""

    text = (letter or "").strip().upper()
    if not _LETTERS_RE.match(text):
        raise ValueError(f"Invalid column letter {letter!r}")
    number = 0
    for char in text:
        number = number * 26 + (ord(char) - 64)
    return number


def quote_sheet_name(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if not safe:
        raise AddressError("Sheet name is empty")
    if len(safe) >= 2 and safe[0] == safe[-1] and safe[0] in {"'", '"'}:
        safe = safe[1:-1].replace("''", "'")
    return "'" + safe.replace("'", "''") + "'"


@dataclass(frozen=True)
class CellAddress:
    sheet_name: str
    row: int
    column: int

    def __post_init__(self) -> None:
        if self.row < 1:
            raise AddressError("Row must be >= 1")
        if self.column < 1:
            raise AddressError("Column must be >= 1")
        if not (self.sheet_name or "").strip():
            raise AddressError("Sheet name is empty")

    @property
    def column_letter(self) -> str:
        return column_letter(self.column)

    @property
    def a1(self) -> str:
        return f"{quote_sheet_name(self.sheet_name)}!{self.column_letter}{self.row}"


def attendance_column(layout: SheetLayout, attendance_date: DateLike) -> int:
    return column_for_date(
        layout.origin_date,
        attendance_date,
        base_column=layout.attendance_base_column,
        block_width=layout.attendance_block_width,
    )


def evaluation_column(
    layout: SheetLayout,
    category: str,
    *,
    chapter: Optional[int] = None,
    evaluation_date: Optional[DateLike] = None,
) -> int:
    """Return the column for an evaluation.

    Chapter numbers take precedence: chapter ``n`` occupies the ``n``-th block
    after the base column.  Dated evaluations without a chapter use the week
    elapsed since the origin date instead.
    """

    width = layout.evaluation_block_width
    if chapter is not None:
        try:
            chapter_number = int(chapter)
        except (TypeError, ValueError):
            raise AddressError(f"Invalid chapter number {chapter!r}") from None
        if chapter_number < 1:
            raise AddressError("Chapter numbers start at 1")
        block_start = layout.evaluation_base_column + (chapter_number - 1) * width
    elif evaluation_date is not None:
        block_start = column_for_date(
            layout.origin_date,
            evaluation_date,
            base_column=layout.evaluation_base_column,
            block_width=width,
        )
    else:
        raise AddressError("Evaluation has neither a chapter nor a date")
    return column_for_category(block_start, category)


__all__ = [
    "AddressError",
    "CATEGORY_OFFSETS",
    "CATEGORY_ORDER",
    "CellAddress",
    "attendance_column",
    "category_offset",
    "column_for_category",
    "column_for_date",
    "column_letter",
    "column_number",
    "evaluation_column",
    "quote_sheet_name",
    "weeks_elapsed",
]
