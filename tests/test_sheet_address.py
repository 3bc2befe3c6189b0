from __future__ import annotations

from datetime import date

import pytest

from core.sheet_address import (
    AddressError,
    CellAddress,
    attendance_column,
    category_offset,
    column_for_category,
    column_for_date,
    column_letter,
    column_number,
    evaluation_column,
    quote_sheet_name,
    weeks_elapsed,
)
from settings import SheetLayout

LAYOUT = SheetLayout(origin_date=date(2025, 9, 7))


def test_dated_homework_evaluation_lands_in_column_p() -> None:
    column = evaluation_column(LAYOUT, "HW", evaluation_date="2025-09-21")

    assert column == 16
    assert column_letter(column) == "P"


def test_weeks_elapsed_uses_whole_weeks() -> None:
    assert weeks_elapsed("2025-09-07", "2025-09-07") == 0
    assert weeks_elapsed("2025-09-07", "2025-09-13") == 0
    assert weeks_elapsed("2025-09-07", "2025-09-14") == 1
    assert weeks_elapsed(date(2025, 9, 7), date(2025, 12, 1)) == 12


def test_date_before_origin_is_rejected() -> None:
    with pytest.raises(AddressError):
        attendance_column(LAYOUT, "2025-09-06")


def test_attendance_columns_are_one_per_week() -> None:
    assert attendance_column(LAYOUT, "2025-09-07") == 4
    assert attendance_column(LAYOUT, "2025-09-13") == 4
    assert attendance_column(LAYOUT, "2025-09-14") == 5
    assert column_for_date("2025-09-07", "2025-09-28", base_column=6, block_width=4) == 18


def test_chapter_blocks_are_four_columns_wide() -> None:
    assert evaluation_column(LAYOUT, "D", chapter=1) == 6
    assert evaluation_column(LAYOUT, "AP", chapter=1) == 9
    assert evaluation_column(LAYOUT, "B", chapter=2) == 11
    assert evaluation_column(LAYOUT, "AP", chapter=3) == 17


def test_chapter_takes_precedence_over_date() -> None:
    assert evaluation_column(LAYOUT, "D", chapter=1, evaluation_date="2025-10-30") == 6


def test_evaluation_needs_chapter_or_date() -> None:
    with pytest.raises(AddressError):
        evaluation_column(LAYOUT, "D")
    with pytest.raises(AddressError):
        evaluation_column(LAYOUT, "D", chapter=0)


def test_category_offsets_accept_names_and_codes() -> None:
    assert category_offset("D") == 0
    assert category_offset("behaviour") == 1
    assert category_offset("Homework") == 2
    assert category_offset(" active  participation ") == 3
    assert column_for_category(6, "hw") == 8
    with pytest.raises(AddressError):
        category_offset("attitude")


def test_column_letters_are_bijective_base26() -> None:
    assert column_letter(1) == "A"
    assert column_letter(26) == "Z"
    assert column_letter(27) == "AA"
    assert column_letter(52) == "AZ"
    assert column_letter(703) == "AAA"
    for index in range(1, 2000):
        assert column_number(column_letter(index)) == index


def test_column_helpers_reject_invalid_input() -> None:
    with pytest.raises(ValueError):
        column_letter(0)
    with pytest.raises(ValueError):
        column_number("A1")
    with pytest.raises(ValueError):
        column_number("")


def test_cell_address_quotes_sheet_names() -> None:
    address = CellAddress("O'Brien Class", 5, 16)

    assert address.column_letter == "P"
    assert address.a1 == "'O''Brien Class'!P5"
    assert quote_sheet_name("'Year 7'") == "'Year 7'"


def test_cell_address_validates_coordinates() -> None:
    with pytest.raises(AddressError):
        CellAddress("7A", 0, 1)
    with pytest.raises(AddressError):
        CellAddress("  ", 1, 1)
