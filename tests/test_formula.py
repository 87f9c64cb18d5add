"""Tests for the spreadsheet formula engine."""

import pytest

from notebase.services.formula import (CellGrid, CellKind, CellRange, CellRef,
                                       CellValue, RangeKind, col_to_letters,
                                       evaluate, letters_to_col)


@pytest.fixture
def grid():
    g = CellGrid()
    g.set_input("A1", "5")
    g.set_input("A2", "15")
    g.set_input("A3", "hello")
    g.set_input("B1", "2")
    g.set_input("B2", "")
    return g


class TestAddresses:
    """Tests for column letters, cell refs and ranges."""

    @pytest.mark.parametrize(
        "col,letters", [(0, "A"), (25, "Z"), (26, "AA"), (701, "ZZ"), (702, "AAA")]
    )
    def test_column_letters(self, col, letters):
        assert col_to_letters(col) == letters
        assert letters_to_col(letters) == col

    def test_invalid_letters(self):
        assert letters_to_col("A1") is None
        assert letters_to_col("") is None

    def test_cell_ref_parse(self):
        assert CellRef.parse("b12") == CellRef(1, 12)
        assert CellRef.parse("A0") is None
        assert str(CellRef(27, 3)) == "AB3"

    def test_range_kinds(self):
        assert CellRange.parse("A1:B2").kind is RangeKind.RANGE
        assert CellRange.parse("C:C").kind is RangeKind.COLUMN
        assert CellRange.parse("3:3").kind is RangeKind.ROW
        assert CellRange.parse("A1").kind is RangeKind.SINGLE
        assert CellRange.parse("1:2") is None

    def test_column_range_cells(self):
        cells = CellRange.parse("A:B").cells(max_row=2)
        assert [str(c) for c in cells] == ["A1", "A2", "B1", "B2"]


class TestArithmetic:
    """Tests for operators and precedence."""

    def test_precedence(self):
        assert evaluate("=1+2*3").value == 7
        assert evaluate("=(1+2)*3").value == 9
        assert evaluate("=-2*3").value == -6

    def test_cell_arithmetic(self, grid):
        assert grid.evaluate("=A2-A1").value == 10
        assert grid.evaluate("A1*B1").value == 10

    def test_empty_cell_is_zero(self, grid):
        assert grid.evaluate("=A1+B2").value == 5

    def test_division_by_zero(self):
        result = evaluate("=1/0")
        assert result.is_error
        assert result.value == "division by zero"

    def test_text_in_arithmetic_is_error(self, grid):
        assert grid.evaluate("=A3+1").is_error

    def test_comparisons(self, grid):
        assert grid.evaluate("=A1<A2").value == 1
        assert grid.evaluate("=A1>=A2").value == 0
        assert grid.evaluate('=A3="HELLO"').value == 1
        assert grid.evaluate("=A1<>5").value == 0

    def test_booleans(self):
        assert evaluate("=TRUE+TRUE").value == 2
        assert evaluate("=FALSE").value == 0

    def test_syntax_errors_never_raise(self):
        for formula in ("=1+", "=SUM(", "=A1 A2", "=@", "="):
            assert evaluate(formula).is_error

    def test_unknown_function(self):
        result = evaluate("=NOPE(1)")
        assert result.is_error
        assert "NOPE" in result.value


class TestAggregates:
    """Tests for SUM, AVG, MIN, MAX, COUNT and COUNTA."""

    def test_sum_range_skips_text(self, grid):
        assert grid.evaluate("=SUM(A1:A3)").value == 20

    def test_sum_column(self, grid):
        assert grid.evaluate("=SUM(A:A)").value == 20

    def test_avg_of_two_cells(self, grid):
        assert grid.evaluate("=AVG(A1:A2)").value == 10
        assert grid.evaluate("=AVERAGE(A1, A2)").value == 10

    def test_avg_of_empty_grid_is_error(self):
        result = CellGrid().evaluate("=AVG(A:A)")
        assert result.is_error
        assert result.value == "division by zero"

    def test_count_on_empty_grid_is_zero(self):
        result = CellGrid().evaluate("=COUNT(A:A)")
        assert result.kind is CellKind.NUMBER
        assert result.value == 0

    def test_min_max(self, grid):
        assert grid.evaluate("=MIN(A1:A3)").value == 5
        assert grid.evaluate("=MAX(A1:B2)").value == 15
        assert CellGrid().evaluate("=MAX(A:A)").value == 0

    def test_count_and_counta(self, grid):
        assert grid.evaluate("=COUNT(A1:A3)").value == 2
        assert grid.evaluate("=COUNTA(A1:A3)").value == 3
        assert grid.evaluate("=COUNTA(B1:B2)").value == 1

    def test_literal_arguments(self):
        assert evaluate("=SUM(1, 2, 3)").value == 6


class TestFunctions:
    """Tests for numeric, text, logical and date functions."""

    def test_round_half_up(self):
        assert evaluate("=ROUND(2.5)").value == 3
        assert evaluate("=ROUND(2.675, 2)").value == 2.68
        assert evaluate("=ROUND(-2.5)").value == -3

    def test_abs(self):
        assert evaluate("=ABS(-4)").value == 4

    def test_if_is_lazy(self, grid):
        assert grid.evaluate('=IF(A1>1, "big", 1/0)').value == "big"
        assert grid.evaluate("=IF(0, 1)").value == 0

    def test_text_functions(self, grid):
        assert evaluate('=CONCAT("a", 1, "b")').value == "a1b"
        assert evaluate('=UPPER("abc")').value == "ABC"
        assert evaluate('=TRIM("  a   b ")').value == "a b"
        assert evaluate('=LEN("hola")').value == 4
        assert evaluate('=LEFT("hello", 2)').value == "he"
        assert evaluate('=RIGHT("hello", 3)').value == "llo"
        assert evaluate('=MID("hello", 2, 3)').value == "ell"
        assert evaluate('=REPLACE("hello", 1, 1, "J")').value == "Jello"
        assert evaluate('=SUBSTITUTE("a-b-c", "-", "+")').value == "a+b+c"
        assert evaluate('=SUBSTITUTE("a-b-c", "-", "+", 2)').value == "a-b+c"
        assert evaluate('=REPT("ab", 3)').value == "ababab"
        assert evaluate('=TEXT(3.14159, "0.00")').value == "3.14"

    def test_date_parts(self):
        assert evaluate('=YEAR("2024-03-15")').value == 2024
        assert evaluate('=MONTH("2024-03-15")').value == 3
        assert evaluate('=DAY("2024-03-15")').value == 15
        assert evaluate('=HOUR("2024-03-15 13:45")').value == 13
        assert evaluate('=MINUTE("2024-03-15 13:45")').value == 45

    def test_weekday_and_weeknum_are_iso(self):
        assert evaluate('=WEEKDAY("2024-03-17")').value == 7
        assert evaluate('=WEEKNUM("2024-01-01")').value == 1

    def test_datedif(self):
        assert evaluate('=DATEDIF("2024-01-01", "2024-03-01", "D")').value == 60
        assert evaluate('=DATEDIF("2024-01-31", "2024-03-30", "M")').value == 1
        assert evaluate('=DATEDIF("2020-05-01", "2024-04-30", "Y")').value == 3
        assert evaluate('=DATEDIF("2024-01-01", "2024-01-02", "H")').value == 24

    def test_dateformat_and_eomonth(self):
        assert evaluate('=DATEFORMAT("2024-03-05", "DD/MM/YYYY")').value == "05/03/2024"
        assert evaluate('=EOMONTH("2024-01-15", 1)').value == "2024-02-29"

    def test_invalid_date_is_error(self):
        assert evaluate('=YEAR("not a date")').is_error


class TestExtremeArguments:
    """Huge or non-finite arguments produce error values instead of raising."""

    HUGE = "9" * 400

    @pytest.mark.parametrize(
        "template",
        [
            '=LEFT("abc", {n})',
            '=RIGHT("abc", {n})',
            '=MID("abc", {n}, 1)',
            '=MID("abc", 1, {n})',
            '=REPLACE("abc", {n}, 1, "x")',
            '=REPT("x", {n})',
            "=ROUND(1, {n})",
            "=ROUND(1, -{n})",
            '=SUBSTITUTE("a-b", "-", "+", {n})',
            '=EOMONTH("2024-01-15", {n})',
        ],
    )
    def test_infinite_integer_argument(self, template):
        result = evaluate(template.format(n=self.HUGE))
        assert result.is_error
        assert "finite" in result.value

    def test_rept_output_is_capped(self):
        assert evaluate('=REPT("x", 1000000000000)').is_error
        assert evaluate('=REPT("ab", 0)').value == ""

    def test_eomonth_out_of_range(self):
        assert evaluate('=EOMONTH("2024-01-15", 1000000000000)').is_error

    def test_round_with_many_digits(self):
        assert evaluate("=ROUND(1.25, 400)").value == 1.25
        assert evaluate("=ROUND(123, -400)").value == 0
        assert evaluate(f"=ROUND({self.HUGE}, 2)").is_error


class TestFormulaCells:
    """Tests for formula cells and reference cycles."""

    def test_formula_cell_chain(self):
        g = CellGrid()
        g.set_input("A1", "2")
        g.set_input("A2", "=A1*10")
        g.set_input("A3", "=A2+1")
        assert g.get("A3").value == 21

    def test_self_reference_is_circular(self):
        g = CellGrid()
        g.set_formula("A1", "=A1+1")
        result = g.get("A1")
        assert result.is_error
        assert result.value == "circular"

    def test_indirect_cycle_is_circular(self):
        g = CellGrid()
        g.set_formula("A1", "=B1")
        g.set_formula("B1", "=A1")
        assert g.evaluate("=A1").value == "circular"

    def test_error_propagates_through_sum(self):
        g = CellGrid()
        g.set_formula("A1", "=1/0")
        g.set_input("A2", "3")
        assert g.evaluate("=SUM(A1:A2)").is_error


class TestCellValue:
    """Tests for CellValue conversions."""

    def test_from_input(self):
        assert CellValue.from_input("12") == CellValue.number(12)
        assert CellValue.from_input("12€").kind is CellKind.TEXT
        assert CellValue.from_input("  ").is_empty

    def test_str(self):
        assert str(CellValue.number(60)) == "60"
        assert str(CellValue.number(2.5)) == "2.5"
        assert str(CellValue.error("circular")) == "#ERROR: circular"
        assert str(CellValue.empty()) == ""
